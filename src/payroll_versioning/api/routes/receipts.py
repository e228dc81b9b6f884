"""Receipt version, status and snapshot endpoints."""

import json
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payroll_versioning.api.dependencies import (
    Comparator,
    DbSession,
    Lifecycle,
    Stamper,
    Store,
)
from payroll_versioning.api.schemas import (
    ComparisonResponse,
    ErrorResponse,
    IntegrityResponse,
    ModificationCheckResponse,
    ReceiptResponse,
    RecalculateRequest,
    SnapshotComparisonResponse,
    SnapshotResponse,
    StampRequest,
    TransitionRequest,
    VersionCreate,
    VersionResponse,
    VersionStateResponse,
    VersionSummaryResponse,
)
from payroll_versioning.models import RulesetSnapshot

router = APIRouter(prefix="/receipts", tags=["receipts"])

ReceiptId = Annotated[UUID, Path()]
VersionNumber = Annotated[int, Path(ge=1)]


def _snapshot_response(snapshot: RulesetSnapshot) -> SnapshotResponse:
    return SnapshotResponse(
        receipt_id=snapshot.receipt_id,
        version=snapshot.version,
        content_hash=snapshot.content_hash,
        computed_at=snapshot.computed_at,
        payload=json.loads(snapshot.payload),
    )


# ============================================================================
# Receipt
# ============================================================================


@router.get(
    "/{receipt_id}",
    response_model=ReceiptResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_receipt(store: Store, receipt_id: ReceiptId) -> ReceiptResponse:
    receipt = await store.get_receipt(receipt_id)
    return ReceiptResponse(
        receipt_id=receipt.receipt_id,
        period_id=receipt.period_id,
        employee_id=receipt.employee_id,
        current_version=receipt.current_version,
        status=await store.get_status(receipt_id),
    )


@router.get(
    "/{receipt_id}/can-modify",
    response_model=ModificationCheckResponse,
    responses={404: {"model": ErrorResponse}},
)
async def can_modify(store: Store, receipt_id: ReceiptId) -> ModificationCheckResponse:
    return ModificationCheckResponse.model_validate(await store.check_modification(receipt_id))


# ============================================================================
# Versions
# ============================================================================


@router.post(
    "/{receipt_id}/versions",
    response_model=VersionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        423: {"model": ErrorResponse},
    },
)
async def create_version(
    db: DbSession, store: Store, receipt_id: ReceiptId, payload: VersionCreate
) -> VersionResponse:
    """Append a new version of the receipt."""
    version = await store.create_version(
        receipt_id,
        payload.reason,
        payload.to_computed(),
        created_by=payload.created_by,
        calculated=payload.calculated,
    )
    await db.commit()
    return VersionResponse.model_validate(version)


@router.post(
    "/{receipt_id}/recalculate",
    response_model=VersionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def recalculate(
    db: DbSession, store: Store, receipt_id: ReceiptId, payload: RecalculateRequest
) -> VersionResponse:
    """Recalculate via the tax calculation engine (modifiable receipts only)."""
    version = await store.recalculate(
        receipt_id, requested_by=payload.requested_by, reason=payload.reason
    )
    await db.commit()
    return VersionResponse.model_validate(version)


@router.get(
    "/{receipt_id}/versions",
    response_model=list[VersionResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_versions(store: Store, receipt_id: ReceiptId) -> list[VersionResponse]:
    return [VersionResponse.model_validate(v) for v in await store.get_versions(receipt_id)]


@router.get(
    "/{receipt_id}/versions/{version}",
    response_model=VersionResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_version(
    store: Store, receipt_id: ReceiptId, version: VersionNumber
) -> VersionResponse:
    return VersionResponse.model_validate(await store.get_version(receipt_id, version))


@router.get(
    "/{receipt_id}/history",
    response_model=list[VersionSummaryResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_version_history(
    store: Store, receipt_id: ReceiptId
) -> list[VersionSummaryResponse]:
    """Versions with their statuses, newest first."""
    history = await store.get_version_history(receipt_id)
    return [VersionSummaryResponse.model_validate(entry) for entry in history]


@router.get(
    "/{receipt_id}/compare",
    response_model=ComparisonResponse,
    responses={404: {"model": ErrorResponse}},
)
async def compare_versions(
    comparator: Comparator,
    receipt_id: ReceiptId,
    a: Annotated[int, Query(ge=1)],
    b: Annotated[int, Query(ge=1)],
) -> ComparisonResponse:
    """Line-item differences going from version ``a`` to version ``b``."""
    return ComparisonResponse.model_validate(await comparator.compare(receipt_id, a, b))


# ============================================================================
# Status
# ============================================================================


@router.post(
    "/{receipt_id}/transitions",
    response_model=VersionStateResponse,
    responses={409: {"model": ErrorResponse}, 423: {"model": ErrorResponse}},
)
async def transition(
    db: DbSession, lifecycle: Lifecycle, receipt_id: ReceiptId, payload: TransitionRequest
) -> VersionStateResponse:
    """Non-critical status transition of the current version."""
    state = await lifecycle.transition(
        receipt_id, payload.to_status, actor=payload.actor, reason=payload.reason
    )
    await db.commit()
    return VersionStateResponse.model_validate(state)


@router.post(
    "/{receipt_id}/stamp",
    response_model=VersionStateResponse,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def stamp(
    db: DbSession,
    lifecycle: Lifecycle,
    provider: Stamper,
    receipt_id: ReceiptId,
    payload: StampRequest,
) -> VersionStateResponse:
    """Submit a receipt in STAMPING to the stamping provider."""
    state = await lifecycle.submit_for_stamping(receipt_id, provider, actor=payload.actor)
    await db.commit()
    return VersionStateResponse.model_validate(state)


# ============================================================================
# Snapshots
# ============================================================================


@router.get(
    "/{receipt_id}/snapshots",
    response_model=list[SnapshotResponse],
)
async def get_all_snapshots(store: Store, receipt_id: ReceiptId) -> list[SnapshotResponse]:
    snapshots = await store.snapshots.get_all_snapshots(receipt_id)
    return [_snapshot_response(s) for s in snapshots]


@router.get(
    "/{receipt_id}/snapshots/compare",
    response_model=SnapshotComparisonResponse,
    responses={404: {"model": ErrorResponse}},
)
async def compare_snapshots(
    store: Store,
    receipt_id: ReceiptId,
    a: Annotated[int, Query(ge=1)],
    b: Annotated[int, Query(ge=1)],
) -> SnapshotComparisonResponse:
    comparison = await store.snapshots.compare_snapshots(receipt_id, a, b)
    return SnapshotComparisonResponse.model_validate(comparison)


@router.get(
    "/{receipt_id}/versions/{version}/snapshot",
    response_model=SnapshotResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_snapshot(
    store: Store, receipt_id: ReceiptId, version: VersionNumber
) -> SnapshotResponse:
    return _snapshot_response(await store.snapshots.get_snapshot(receipt_id, version))


@router.post(
    "/{receipt_id}/versions/{version}/verify",
    response_model=IntegrityResponse,
    responses={404: {"model": ErrorResponse}},
)
async def verify_integrity(
    db: DbSession, store: Store, receipt_id: ReceiptId, version: VersionNumber
) -> IntegrityResponse:
    """Recompute and compare the stored hashes of a version."""
    report = await store.snapshots.verify_integrity(receipt_id, version, verified_by="api")
    await db.commit()
    return IntegrityResponse.model_validate(report)
