import logging
from typing import Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from labkeeper.config import settings
from labkeeper.errors import ConflictError


logger = logging.getLogger(__name__)

T = TypeVar("T")

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_transaction(
    db: Session,
    operation: Callable[..., T],
    *args,
    attempts: int | None = None,
    **kwargs,
) -> T:
    """Run ``operation(db, ...)`` as one all-or-nothing unit and commit it.

    Any error rolls the whole unit back. A concurrent writer winning the
    optimistic version check surfaces as ``StaleDataError``; the unit is then
    replayed from scratch so it re-reads the committed counters.
    """
    max_attempts = attempts or settings.STOCK_RETRY_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        try:
            result = operation(db, *args, **kwargs)
            db.commit()
            return result
        except StaleDataError:
            db.rollback()
            logger.warning(
                "Concurrent update detected in %s (attempt %s/%s)",
                getattr(operation, "__name__", operation),
                attempt,
                max_attempts,
            )
            if attempt == max_attempts:
                raise ConflictError("The record was modified concurrently. Please retry.")
        except Exception:
            db.rollback()
            raise
    raise ConflictError("The record was modified concurrently. Please retry.")
