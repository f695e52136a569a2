import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from database.base import get_db


router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/health")
async def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database_ok = True
    except Exception as exc:
        logger.warning("health_database_unavailable error=%s", exc)
        database_ok = False

    return {"ok": database_ok, "database": "ok" if database_ok else "unavailable"}
