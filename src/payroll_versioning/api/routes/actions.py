"""Critical action endpoints (dual-control authorization gate)."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Response, status

from payroll_versioning.api.dependencies import DbSession, Gate
from payroll_versioning.api.schemas import (
    ActionRecordResponse,
    ActionRequest,
    ActionResponse,
    ConfirmRequest,
    ErrorResponse,
    PendingActionResponse,
    RejectRequest,
)
from payroll_versioning.services.authorization_gate import ActionResult

router = APIRouter(prefix="/critical-actions", tags=["critical-actions"])


def _action_response(outcome: ActionResult) -> ActionResponse:
    return ActionResponse(
        status=outcome.status,
        record=ActionRecordResponse.model_validate(outcome.record) if outcome.record else None,
        pending=PendingActionResponse.model_validate(outcome.pending) if outcome.pending else None,
    )


@router.post(
    "",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        202: {"model": ActionResponse},
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def request_action(
    db: DbSession, gate: Gate, payload: ActionRequest, response: Response
) -> ActionResponse:
    """Request a critical action; 202 when it awaits a second approver."""
    outcome = await gate.request_action(
        payload.action,
        payload.target_id,
        payload.requested_by,
        payload.justification,
        second_approver=payload.second_approver,
        details=payload.details,
    )
    await db.commit()
    if outcome.record is None:
        response.status_code = status.HTTP_202_ACCEPTED
    return _action_response(outcome)


@router.get("", response_model=list[ActionRecordResponse])
async def get_action_log(
    gate: Gate,
    target_id: UUID | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[ActionRecordResponse]:
    """Critical action ledger, newest first."""
    records = await gate.get_action_log(target_id, limit=limit)
    return [ActionRecordResponse.model_validate(r) for r in records]


@router.get("/pending", response_model=list[PendingActionResponse])
async def get_pending_actions(
    gate: Gate, target_id: UUID | None = None
) -> list[PendingActionResponse]:
    pending = await gate.get_pending_actions(target_id)
    return [PendingActionResponse.model_validate(p) for p in pending]


@router.post(
    "/pending/{pending_action_id}/confirm",
    response_model=ActionResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def confirm_action(
    db: DbSession,
    gate: Gate,
    pending_action_id: Annotated[UUID, Path()],
    payload: ConfirmRequest,
) -> ActionResponse:
    """Second approver confirms a pending action, which then runs."""
    outcome = await gate.confirm_action(pending_action_id, payload.approver)
    await db.commit()
    return _action_response(outcome)


@router.post(
    "/pending/{pending_action_id}/reject",
    response_model=ActionRecordResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def reject_action(
    db: DbSession,
    gate: Gate,
    pending_action_id: Annotated[UUID, Path()],
    payload: RejectRequest,
) -> ActionRecordResponse:
    record = await gate.reject_action(pending_action_id, payload.approver, payload.reason)
    await db.commit()
    return ActionRecordResponse.model_validate(record)
