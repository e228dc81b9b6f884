"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_versioning.database import init_db
from payroll_versioning.providers.base import ReceiptCalculator, StampingProvider
from payroll_versioning.services.authorization_gate import AuthorizationGate
from payroll_versioning.services.diff_engine import ReceiptComparator
from payroll_versioning.services.lifecycle_service import ReceiptLifecycleService
from payroll_versioning.services.version_store import VersionStore


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_calculator(request: Request) -> ReceiptCalculator | None:
    return request.app.state.calculator


def get_stamping_provider(request: Request) -> StampingProvider:
    return request.app.state.stamping_provider


Calculator = Annotated[ReceiptCalculator | None, Depends(get_calculator)]
Stamper = Annotated[StampingProvider, Depends(get_stamping_provider)]


def get_version_store(db: DbSession, calculator: Calculator) -> VersionStore:
    return VersionStore(db, calculator)


Store = Annotated[VersionStore, Depends(get_version_store)]


def get_lifecycle(db: DbSession, store: Store) -> ReceiptLifecycleService:
    return ReceiptLifecycleService(db, store)


def get_gate(db: DbSession, store: Store) -> AuthorizationGate:
    return AuthorizationGate(db, store)


def get_comparator(store: Store) -> ReceiptComparator:
    return ReceiptComparator(store)


Lifecycle = Annotated[ReceiptLifecycleService, Depends(get_lifecycle)]
Gate = Annotated[AuthorizationGate, Depends(get_gate)]
Comparator = Annotated[ReceiptComparator, Depends(get_comparator)]
