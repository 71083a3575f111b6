"""
Health check route (no account context required).

Reports database reachability and whether any credit ledger has been
halted after an inconsistency.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from entitlement_engine.database.session import get_db_session
from entitlement_engine.monitoring.alerts import check_ledger_health

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    database: str
    halted_accounts: int = 0
    checks: List[Dict[str, Any]] = []


@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db_session)):
    """Liveness plus ledger health."""
    try:
        db.execute(text("SELECT 1"))
        ledger = check_ledger_health(db)
    except SQLAlchemyError as e:
        logger.error("Health check database query failed", extra={"error": str(e)})
        return HealthResponse(status="degraded", database="unavailable")

    return HealthResponse(
        status="ok" if ledger.healthy else "degraded",
        database="ok",
        halted_accounts=ledger.halted_accounts,
        checks=ledger.checks,
    )
