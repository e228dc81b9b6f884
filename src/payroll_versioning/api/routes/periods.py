"""Payroll period endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from payroll_versioning.api.dependencies import DbSession, Gate, Store
from payroll_versioning.api.schemas import (
    AuthorizationResponse,
    EligibilityResponse,
    ErrorResponse,
    IntegrityResponse,
    PeriodCreate,
    PeriodIntegrityResponse,
    PeriodResponse,
    ReceiptCreate,
    ReceiptResponse,
)

router = APIRouter(prefix="/periods", tags=["periods"])


# ============================================================================
# Periods & receipts
# ============================================================================


@router.post(
    "",
    response_model=PeriodResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def open_period(db: DbSession, store: Store, payload: PeriodCreate) -> PeriodResponse:
    """Open a payroll period."""
    period = await store.open_period(payload.code)
    await db.commit()
    return PeriodResponse.model_validate(period)


@router.get(
    "/{period_id}",
    response_model=PeriodResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_period(store: Store, period_id: Annotated[UUID, Path()]) -> PeriodResponse:
    return PeriodResponse.model_validate(await store.get_period(period_id))


@router.post(
    "/{period_id}/receipts",
    response_model=ReceiptResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def open_receipt(
    db: DbSession,
    store: Store,
    period_id: Annotated[UUID, Path()],
    payload: ReceiptCreate,
) -> ReceiptResponse:
    """Register an employee's receipt in the period."""
    receipt = await store.open_receipt(period_id, payload.employee_id)
    await db.commit()
    return ReceiptResponse.model_validate(receipt)


@router.get(
    "/{period_id}/receipts",
    response_model=list[ReceiptResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_receipts(store: Store, period_id: Annotated[UUID, Path()]) -> list[ReceiptResponse]:
    await store.get_period(period_id)
    statuses = await store.period_statuses(period_id)
    receipts = await store.list_receipts(period_id)
    return [
        ReceiptResponse(
            receipt_id=r.receipt_id,
            period_id=r.period_id,
            employee_id=r.employee_id,
            current_version=r.current_version,
            status=statuses[r.receipt_id],
        )
        for r in receipts
    ]


# ============================================================================
# Stamping authorization & integrity
# ============================================================================


@router.get(
    "/{period_id}/stamping-eligibility",
    response_model=EligibilityResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_stamping_eligibility(
    db: DbSession, gate: Gate, period_id: Annotated[UUID, Path()]
) -> EligibilityResponse:
    """Whether the period's receipts may enter stamping."""
    eligibility = await gate.get_stamping_eligibility(period_id)
    # Verification may have recorded integrity alerts
    await db.commit()
    return EligibilityResponse.model_validate(eligibility)


@router.get(
    "/{period_id}/authorizations",
    response_model=list[AuthorizationResponse],
)
async def get_authorization_history(
    gate: Gate, period_id: Annotated[UUID, Path()]
) -> list[AuthorizationResponse]:
    """Stamping authorizations of the period, newest first."""
    history = await gate.get_authorization_history(period_id)
    return [AuthorizationResponse.model_validate(a) for a in history]


@router.post(
    "/{period_id}/verify",
    response_model=PeriodIntegrityResponse,
    responses={404: {"model": ErrorResponse}},
)
async def verify_period(
    db: DbSession, store: Store, period_id: Annotated[UUID, Path()]
) -> PeriodIntegrityResponse:
    """Verify the integrity of every current receipt version in the period."""
    report = await store.snapshots.verify_period(period_id, verified_by="api")
    await db.commit()
    return PeriodIntegrityResponse(
        period_id=report.period_id,
        total=report.total,
        verified=report.verified,
        corrupted=[IntegrityResponse.model_validate(r) for r in report.corrupted],
    )
