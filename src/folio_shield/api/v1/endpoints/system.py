"""Health endpoints. Their paths are whitelisted from rate limiting."""

from __future__ import annotations

import time
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from folio_shield.core.settings import settings
from folio_shield.db.session import get_db

router = APIRouter(tags=["system"])

SessionDep = Annotated[Session, Depends(get_db)]


@router.get("/health")
async def get_health(db: SessionDep) -> dict[str, object]:
    """Service and database status for load balancers and monitoring.

    Args:
        db: Database session

    Returns:
        Dictionary with overall status, database status and version
    """
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as e:
        db_status = f"unhealthy: {e}"

    return {
        "status": "ok" if db_status == "healthy" else "degraded",
        "timestamp": int(time.time()),
        "components": {"database": db_status},
        "version": settings.app_version,
    }
