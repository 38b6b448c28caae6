from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from labkeeper.db import get_db


router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
