"""API routes."""

from payroll_versioning.api.routes.actions import router as actions_router
from payroll_versioning.api.routes.health import router as health_router
from payroll_versioning.api.routes.periods import router as periods_router
from payroll_versioning.api.routes.receipts import router as receipts_router

__all__ = ["actions_router", "health_router", "periods_router", "receipts_router"]
