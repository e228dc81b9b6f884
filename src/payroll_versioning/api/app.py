"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payroll_versioning import __version__
from payroll_versioning.api.routes import (
    actions_router,
    health_router,
    periods_router,
    receipts_router,
)
from payroll_versioning.database import dispose_db, init_db
from payroll_versioning.exceptions import (
    ConcurrentModificationError,
    DuplicateSnapshotError,
    ImmutableRecordError,
    IntegrityViolationError,
    LockTimeoutError,
    NotFoundError,
    PayrollVersioningError,
    StateConflictError,
    ValidationError,
)
from payroll_versioning.providers.base import ReceiptCalculator, StampingProvider
from payroll_versioning.providers.stub import StubStampingProvider

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[PayrollVersioningError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (LockTimeoutError, status.HTTP_423_LOCKED),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (DuplicateSnapshotError, status.HTTP_409_CONFLICT),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (ImmutableRecordError, status.HTTP_409_CONFLICT),
    (IntegrityViolationError, 422),
]


def status_for(exc: PayrollVersioningError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    init_db()
    yield
    await dispose_db()


def create_app(
    calculator: ReceiptCalculator | None = None,
    stamping_provider: StampingProvider | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Payroll Versioning API",
        description="Receipt versions, fiscal ruleset snapshots and stamping authorization",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.calculator = calculator
    app.state.stamping_provider = stamping_provider or StubStampingProvider()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayrollVersioningError)
    async def domain_exception_handler(
        request: Request, exc: PayrollVersioningError
    ) -> JSONResponse:
        """Map domain errors to HTTP with a stable code."""
        code = status_for(exc)
        if isinstance(exc, IntegrityViolationError):
            logger.error("Integrity violation surfaced to %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={
                "detail": exc.message,
                "code": exc.code,
                "retryable": exc.retryable,
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(periods_router, prefix="/api/v1")
    app.include_router(receipts_router, prefix="/api/v1")
    app.include_router(actions_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
