"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from payroll_versioning import __version__
from payroll_versioning.api.dependencies import DbSession
from payroll_versioning.models import PendingActionStatus, PendingCriticalAction, ReceiptVersion

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    database: str
    version: str
    pending_critical_actions: int | None = None


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DbSession) -> HealthResponse:
    """Database connectivity plus the number of actions awaiting a second approver."""
    database = "healthy"
    pending = None
    try:
        await db.execute(text("SELECT 1"))
        pending = (
            await db.execute(
                select(func.count()).select_from(PendingCriticalAction).where(
                    PendingCriticalAction.status == PendingActionStatus.PENDING.value
                )
            )
        ).scalar_one()
    except SQLAlchemyError as exc:
        logger.warning("Database health check failed: %s", exc)
        database = "unhealthy"

    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=database,
        version=__version__,
        pending_critical_actions=pending,
    )


@router.get("/ready")
async def readiness_check(db: DbSession, response: Response) -> dict[str, str]:
    """Ready once the versioning schema is reachable."""
    try:
        await db.execute(select(ReceiptVersion.receipt_id).limit(1))
    except SQLAlchemyError as exc:
        logger.warning("Readiness check failed: %s", exc)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
