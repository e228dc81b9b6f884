"""Dual-control authorization gate for critical actions.

Every critical action is checked against the policy table in
``config.DEFAULT_ACTION_POLICIES``:

- a non-empty written justification is always required
- dual-control actions need a second approver distinct from the requester;
  without one the request is parked as a ``PendingCriticalAction`` until
  another principal confirms or rejects it
- approved actions run their lifecycle effect inside a savepoint together
  with the APPROVED ledger record

Each decision lands in the append-only ``critical_action_record`` ledger.
Denials are committed before the error propagates, so a caller rolling
back its own work cannot erase them. Retryable errors (lock timeouts,
lost races) are not decisions and are not recorded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_versioning.config import (
    DEFAULT_ACTION_POLICIES,
    ActionPolicy,
    CriticalAction,
    get_settings,
)
from payroll_versioning.database import lock_row
from payroll_versioning.exceptions import (
    JustificationRequiredError,
    PayrollVersioningError,
    PendingActionNotFoundError,
    SelfApprovalError,
    StateConflictError,
    ValidationError,
)
from payroll_versioning.hashing import canonical_json
from payroll_versioning.models import (
    ActionOutcome,
    CriticalActionRecord,
    PendingActionStatus,
    PendingCriticalAction,
    ReceiptStatus,
    StampingAuthorization,
    as_utc,
    utcnow,
)
from payroll_versioning.services.lifecycle_service import (
    ReceiptLifecycleService,
    StampingEligibility,
)
from payroll_versioning.services.version_store import VersionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a gate request: executed, or waiting for a second approver."""

    record: CriticalActionRecord | None = None
    pending: PendingCriticalAction | None = None
    result: Any = None

    @property
    def status(self) -> str:
        return "PENDING_APPROVAL" if self.pending is not None and self.record is None else "APPROVED"


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class AuthorizationGate:
    """Approves or denies critical actions and keeps the action ledger."""

    def __init__(
        self,
        session: AsyncSession,
        store: VersionStore | None = None,
        *,
        policies: dict[CriticalAction, ActionPolicy] | None = None,
        pending_ttl: timedelta | None = None,
    ):
        self.session = session
        self.lifecycle = ReceiptLifecycleService(session, store)
        self.store = self.lifecycle.store
        self.policies = policies or DEFAULT_ACTION_POLICIES
        self.pending_ttl = pending_ttl or timedelta(
            hours=get_settings().pending_action_ttl_hours
        )

    def get_policy(self, action: CriticalAction | str) -> ActionPolicy:
        try:
            return self.policies[CriticalAction(action)]
        except (ValueError, KeyError):
            raise ValidationError(f"Unknown critical action {action!r}") from None

    # =========================================================================
    # Requests
    # =========================================================================

    async def request_action(
        self,
        action: CriticalAction | str,
        target_id: UUID,
        requested_by: str,
        justification: str,
        *,
        second_approver: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActionResult:
        """Request a critical action.

        Raises:
            JustificationRequiredError: empty or whitespace justification.
            SelfApprovalError: second approver is the requester.
            StateConflictError: the action is not possible right now.
        """
        policy = self.get_policy(action)
        if _blank(requested_by):
            raise ValidationError("requested_by is required")
        try:
            stored_details = self._normalize_details(details)
            self._validate(policy, requested_by, justification, second_approver)
        except ValidationError as exc:
            await self._deny(
                policy,
                target_id,
                requested_by,
                justification,
                second_approver=second_approver,
                reason=exc.message,
                details=None,
            )
            raise

        if policy.requires_dual_control and _blank(second_approver):
            pending = PendingCriticalAction(
                action=policy.action.value,
                target_id=target_id,
                requested_by=requested_by,
                justification=justification,
                details=stored_details,
                status=PendingActionStatus.PENDING.value,
                requested_at=utcnow(),
                expires_at=utcnow() + self.pending_ttl,
            )
            self.session.add(pending)
            await self.session.flush()
            logger.info(
                "%s on %s requested by %s; awaiting second approver",
                policy.action.value,
                target_id,
                requested_by,
            )
            return ActionResult(pending=pending)

        return await self._execute(
            policy,
            target_id,
            requested_by,
            justification,
            second_approver=second_approver,
            details=stored_details,
        )

    async def confirm_action(self, pending_action_id: UUID, approver: str) -> ActionResult:
        """Second approver confirms a pending dual-control action, which then runs."""
        pending = await self._lock_pending(pending_action_id)
        policy = self.get_policy(pending.action)

        if as_utc(pending.expires_at) <= utcnow():
            pending.status = PendingActionStatus.EXPIRED.value
            pending.resolved_at = utcnow()
            await self._deny(
                policy,
                pending.target_id,
                pending.requested_by,
                pending.justification,
                second_approver=approver,
                reason="Pending action expired",
                details=pending.details,
                pending_action_id=pending.pending_action_id,
            )
            raise StateConflictError(f"Pending action {pending_action_id} has expired")

        if _blank(approver) or approver.strip() == pending.requested_by.strip():
            await self._deny(
                policy,
                pending.target_id,
                pending.requested_by,
                pending.justification,
                second_approver=approver,
                reason="Requester attempted to approve their own action",
                details=pending.details,
                pending_action_id=pending.pending_action_id,
            )
            raise SelfApprovalError(policy.action.value, pending.requested_by)

        try:
            outcome = await self._execute(
                policy,
                pending.target_id,
                pending.requested_by,
                pending.justification,
                second_approver=approver,
                details=pending.details,
                pending=pending,
            )
        except PayrollVersioningError as exc:
            if exc.retryable:
                raise
            # _execute already recorded and committed the denial
            pending.status = PendingActionStatus.REJECTED.value
            pending.resolved_by = approver
            pending.resolved_at = utcnow()
            await self.session.commit()
            raise

        pending.status = PendingActionStatus.CONFIRMED.value
        pending.resolved_by = approver
        pending.resolved_at = outcome.record.decided_at
        await self.session.flush()
        return ActionResult(record=outcome.record, pending=pending, result=outcome.result)

    async def reject_action(
        self, pending_action_id: UUID, approver: str, reason: str
    ) -> CriticalActionRecord:
        """Reject a pending action. The requester may withdraw their own request."""
        pending = await self._lock_pending(pending_action_id)
        policy = self.get_policy(pending.action)
        if _blank(reason):
            raise JustificationRequiredError(policy.action.value)
        if _blank(approver):
            raise ValidationError("approver is required")

        now = utcnow()
        pending.status = PendingActionStatus.REJECTED.value
        pending.resolved_by = approver
        pending.resolved_at = now
        record = CriticalActionRecord(
            action=policy.action.value,
            target_id=pending.target_id,
            requested_by=pending.requested_by,
            justification=pending.justification,
            requires_dual_control=policy.requires_dual_control,
            second_approver=approver,
            decided_at=now,
            outcome=ActionOutcome.DENIED.value,
            denial_reason=reason,
            pending_action_id=pending.pending_action_id,
            details=pending.details,
        )
        self.session.add(record)
        await self.session.flush()
        logger.warning(
            "%s on %s rejected by %s: %s",
            policy.action.value,
            pending.target_id,
            approver,
            reason,
        )
        return record

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _validate(
        policy: ActionPolicy,
        requested_by: str,
        justification: str,
        second_approver: str | None,
    ) -> None:
        if policy.requires_justification and _blank(justification):
            raise JustificationRequiredError(policy.action.value)
        if second_approver is not None and second_approver.strip() == requested_by.strip():
            raise SelfApprovalError(policy.action.value, requested_by)

    @staticmethod
    def _normalize_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
        if details is None:
            return None
        return json.loads(canonical_json(details))

    async def _lock_pending(self, pending_action_id: UUID) -> PendingCriticalAction:
        pending = await lock_row(
            self.session,
            PendingCriticalAction,
            PendingCriticalAction.pending_action_id == pending_action_id,
            context=f"pending action {pending_action_id}",
        )
        if pending is None:
            raise PendingActionNotFoundError(pending_action_id)
        if pending.status != PendingActionStatus.PENDING:
            raise StateConflictError(
                f"Pending action {pending_action_id} is already {pending.status}"
            )
        return pending

    async def _execute(
        self,
        policy: ActionPolicy,
        target_id: UUID,
        requested_by: str,
        justification: str,
        *,
        second_approver: str | None,
        details: dict[str, Any] | None,
        pending: PendingCriticalAction | None = None,
    ) -> ActionResult:
        record = CriticalActionRecord(
            action=policy.action.value,
            target_id=target_id,
            requested_by=requested_by,
            justification=justification,
            requires_dual_control=policy.requires_dual_control,
            second_approver=second_approver,
            decided_at=utcnow(),
            outcome=ActionOutcome.APPROVED.value,
            pending_action_id=pending.pending_action_id if pending else None,
            details=details,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(record)
                await self.session.flush()
                result = await self._apply(policy.action, record, justification)
        except PayrollVersioningError as exc:
            if exc.retryable:
                raise
            await self._deny(
                policy,
                target_id,
                requested_by,
                justification,
                second_approver=second_approver,
                reason=exc.message,
                details=details,
                pending_action_id=pending.pending_action_id if pending else None,
            )
            raise

        logger.info(
            "%s on %s approved (requested by %s, second approver %s)",
            policy.action.value,
            target_id,
            requested_by,
            second_approver or "-",
        )
        return ActionResult(record=record, pending=pending, result=result)

    async def _apply(
        self, action: CriticalAction, record: CriticalActionRecord, justification: str
    ) -> Any:
        actor = record.requested_by
        target_id = record.target_id
        if action == CriticalAction.AUTHORIZE_STAMPING:
            return await self.lifecycle.authorize_stamping(
                target_id, actor=actor, justification=justification, authorization=record
            )
        if action == CriticalAction.REVOKE_AUTHORIZATION:
            return await self.lifecycle.revoke_stamping_authorization(
                target_id, actor=actor, reason=justification, authorization=record
            )
        if action == CriticalAction.CLOSE_PERIOD:
            return await self.lifecycle.close_period(target_id, actor=actor, authorization=record)
        if action == CriticalAction.RECALCULATE:
            return await self.lifecycle.recalculate(target_id, actor=actor, authorization=record)
        if action == CriticalAction.CANCEL_CFDI:
            return await self.lifecycle.transition(
                target_id,
                ReceiptStatus.CANCELLED,
                actor=actor,
                reason=justification,
                authorization=record,
            )
        if action == CriticalAction.RETRY_STAMPING:
            return await self.lifecycle.transition(
                target_id,
                ReceiptStatus.STAMPING,
                actor=actor,
                reason=justification,
                authorization=record,
            )
        raise ValidationError(f"No handler for critical action {action.value}")

    async def _deny(
        self,
        policy: ActionPolicy,
        target_id: UUID,
        requested_by: str,
        justification: str | None,
        *,
        second_approver: str | None,
        reason: str,
        details: dict[str, Any] | None,
        pending_action_id: UUID | None = None,
    ) -> CriticalActionRecord:
        record = CriticalActionRecord(
            action=policy.action.value,
            target_id=target_id,
            requested_by=requested_by,
            justification=justification or "",
            requires_dual_control=policy.requires_dual_control,
            second_approver=second_approver,
            decided_at=utcnow(),
            outcome=ActionOutcome.DENIED.value,
            denial_reason=reason,
            pending_action_id=pending_action_id,
            details=details,
        )
        self.session.add(record)
        await self.session.commit()
        logger.warning(
            "%s on %s requested by %s denied: %s",
            policy.action.value,
            target_id,
            requested_by,
            reason,
        )
        return record

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_stamping_eligibility(self, period_id: UUID) -> StampingEligibility:
        return await self.lifecycle.check_stamping_eligibility(period_id)

    async def get_authorization_history(self, period_id: UUID) -> list[StampingAuthorization]:
        """All authorizations of a period, newest first."""
        result = await self.session.execute(
            select(StampingAuthorization)
            .where(StampingAuthorization.period_id == period_id)
            .order_by(StampingAuthorization.authorized_at.desc())
        )
        return list(result.scalars().all())

    async def get_action_log(
        self, target_id: UUID | None = None, limit: int = 100
    ) -> list[CriticalActionRecord]:
        """Ledger entries, newest first."""
        query = select(CriticalActionRecord)
        if target_id is not None:
            query = query.where(CriticalActionRecord.target_id == target_id)
        result = await self.session.execute(
            query.order_by(CriticalActionRecord.decided_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def get_pending_actions(self, target_id: UUID | None = None) -> list[PendingCriticalAction]:
        """Unexpired actions still waiting for a second approver."""
        query = select(PendingCriticalAction).where(
            PendingCriticalAction.status == PendingActionStatus.PENDING.value
        )
        if target_id is not None:
            query = query.where(PendingCriticalAction.target_id == target_id)
        result = await self.session.execute(query.order_by(PendingCriticalAction.requested_at))
        now = utcnow()
        return [p for p in result.scalars().all() if as_utc(p.expires_at) > now]
