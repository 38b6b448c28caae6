from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from labkeeper.config import settings
from labkeeper.db import get_db
from labkeeper.models import STAFF_ROLES, User

ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 12

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as seen by the service layer."""

    user_id: int
    role: str
    lab_id: Optional[int] = None
    email: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(user_id=user.id, role=user.role, lab_id=user.lab_id, email=user.email)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = db.query(User).filter(User.id == int(user_id)).first()
    if not user or not user.is_active:
        raise credentials_exception
    return user


def get_identity(current_user: User = Depends(get_current_user)) -> Identity:
    return Identity.from_user(current_user)


def require_roles(*roles: str):
    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{identity.role}' is not allowed here",
            )
        return identity

    return dependency


def require_lab_staff(identity: Identity = Depends(require_roles(*STAFF_ROLES))) -> Identity:
    if identity.lab_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Lab access denied")
    return identity


def require_staff(identity: Identity = Depends(require_roles(*STAFF_ROLES))) -> Identity:
    """Lab staff, or a super admin acting across labs without a home lab."""
    if identity.lab_id is None and identity.role != "super_admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Lab access denied")
    return identity
