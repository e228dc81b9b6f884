"""Receipt and period lifecycle transitions.

Applies the receipt state machine to stored status rows and performs the
period-level effects of critical actions (stamping authorization,
revocation, closing). Transitions guarded by a critical action require
the APPROVED ``CriticalActionRecord`` produced by the authorization gate.

Anything that can move a receipt into STAMPING, and any change to a
period's stamping authorization, holds the period row lock so the two
are serialized.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_versioning.config import CriticalAction
from payroll_versioning.database import flush_or_raise, lock_row
from payroll_versioning.exceptions import (
    IntegrityViolationError,
    InvalidTransitionError,
    PeriodNotFoundError,
    StateConflictError,
)
from payroll_versioning.models import (
    ActionOutcome,
    CriticalActionRecord,
    PayrollPeriod,
    PeriodStatus,
    ReceiptStatus,
    ReceiptVersion,
    ReceiptVersionState,
    StampingAuthorization,
    utcnow,
)
from payroll_versioning.providers.base import StampingError, StampingProvider
from payroll_versioning.services.state_machine import ReceiptStateMachine
from payroll_versioning.services.version_store import VersionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StampingIssue:
    code: str
    severity: str
    message: str
    resolution: str


@dataclass(frozen=True)
class StampingEligibility:
    period_id: UUID
    eligible: bool
    authorization: StampingAuthorization | None = None
    corrupted_receipts: list[UUID] = field(default_factory=list)
    issues: list[StampingIssue] = field(default_factory=list)


class ReceiptLifecycleService:
    """Service for receipt status transitions and period-level effects."""

    def __init__(self, session: AsyncSession, store: VersionStore | None = None):
        self.session = session
        self.store = store or VersionStore(session)

    # =========================================================================
    # Locks & lookups
    # =========================================================================

    async def lock_period(self, period_id: UUID) -> PayrollPeriod:
        period = await lock_row(
            self.session,
            PayrollPeriod,
            PayrollPeriod.period_id == period_id,
            context=f"period {period_id}",
        )
        if period is None:
            raise PeriodNotFoundError(period_id)
        return period

    async def get_active_authorization(self, period_id: UUID) -> StampingAuthorization | None:
        result = await self.session.execute(
            select(StampingAuthorization).where(
                StampingAuthorization.period_id == period_id,
                StampingAuthorization.revoked_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _require_approval(
        record: CriticalActionRecord | None, action: CriticalAction, target_id: UUID
    ) -> None:
        if (
            record is None
            or record.outcome != ActionOutcome.APPROVED
            or record.action != action
            or record.target_id != target_id
        ):
            raise StateConflictError(
                f"{action.value} on {target_id} requires an approved critical action"
            )

    # =========================================================================
    # Eligibility
    # =========================================================================

    async def check_stamping_eligibility(
        self, period_id: UUID, *, record_alerts: bool = False
    ) -> StampingEligibility:
        """Eligible iff the period has an active authorization and no
        current receipt version fails integrity verification.

        Read-only unless ``record_alerts`` is set, so polling it does not
        pile up integrity alerts.
        """
        if await self.session.get(PayrollPeriod, period_id) is None:
            raise PeriodNotFoundError(period_id)
        authorization = await self.get_active_authorization(period_id)
        integrity = await self.store.snapshots.verify_period(
            period_id, record_alerts=record_alerts
        )
        corrupted = [report.receipt_id for report in integrity.corrupted]

        issues = []
        if authorization is None:
            issues.append(
                StampingIssue(
                    code="NO_AUTHORIZATION",
                    severity="ERROR",
                    message="Period has no active stamping authorization",
                    resolution="Request AUTHORIZE_STAMPING for the period",
                )
            )
        if corrupted:
            issues.append(
                StampingIssue(
                    code="INTEGRITY_VIOLATION",
                    severity="CRITICAL",
                    message=f"{len(corrupted)} receipt(s) failed integrity verification",
                    resolution="Administrative review of the corrupted receipts is required",
                )
            )
        return StampingEligibility(
            period_id=period_id,
            eligible=not issues,
            authorization=authorization,
            corrupted_receipts=corrupted,
            issues=issues,
        )

    # =========================================================================
    # Receipt transitions
    # =========================================================================

    async def transition(
        self,
        receipt_id: UUID,
        to_status: ReceiptStatus | str,
        *,
        actor: str,
        reason: str | None = None,
        authorization: CriticalActionRecord | None = None,
    ) -> ReceiptVersionState:
        """Move the receipt's current version to ``to_status``.

        Raises:
            InvalidTransitionError: not allowed from the current status,
                missing critical-action approval, or not eligible for stamping.
        """
        target = ReceiptStatus(to_status)
        receipt = await self.store.lock_receipt(receipt_id)
        if receipt.current_version == 0:
            raise InvalidTransitionError(
                ReceiptStatus.PENDING.value, target.value, "receipt has no version yet"
            )
        state = await self.store.get_state(receipt_id, receipt.current_version)
        current = ReceiptStatus(state.status)
        ReceiptStateMachine.validate_transition(current, target)
        if ReceiptStateMachine.is_provider_only(current, target):
            raise InvalidTransitionError(
                current.value, target.value, "set only by the stamping provider's response"
            )

        required = ReceiptStateMachine.required_action(current, target)
        if required is not None:
            try:
                self._require_approval(authorization, required, receipt_id)
            except StateConflictError:
                raise InvalidTransitionError(
                    current.value, target.value, f"requires approved {required.value}"
                ) from None

        if target == ReceiptStatus.STAMPING:
            await self.lock_period(receipt.period_id)
            eligibility = await self.check_stamping_eligibility(receipt.period_id)
            if not eligibility.eligible:
                raise InvalidTransitionError(
                    current.value,
                    target.value,
                    "; ".join(issue.message for issue in eligibility.issues),
                )

        now = utcnow()
        state.status = target.value
        state.updated_at = now
        state.updated_by = actor
        state.status_reason = reason
        await flush_or_raise(self.session, f"receipt {receipt_id} status")
        logger.info(
            "Receipt %s version %d: %s -> %s by %s",
            receipt_id,
            receipt.current_version,
            current.value,
            target.value,
            actor,
        )
        return state

    async def submit_for_stamping(
        self,
        receipt_id: UUID,
        provider: StampingProvider,
        *,
        actor: str,
    ) -> ReceiptVersionState:
        """Call the stamping provider for a receipt in STAMPING.

        A provider rejection moves the receipt to STAMP_ERROR and is
        returned, not raised; retrying is the RETRY_STAMPING critical action.
        """
        receipt = await self.store.lock_receipt(receipt_id)
        version = receipt.current_version
        state = await self.store.get_state(receipt_id, version) if version else None
        current = ReceiptStatus(state.status) if state else ReceiptStatus.PENDING
        if current != ReceiptStatus.STAMPING:
            raise InvalidTransitionError(
                current.value, ReceiptStatus.STAMP_OK.value, "receipt is not in STAMPING"
            )

        eligibility = await self.check_stamping_eligibility(receipt.period_id)
        if receipt_id in eligibility.corrupted_receipts:
            raise IntegrityViolationError(receipt_id, version)
        if not eligibility.eligible:
            raise StateConflictError(
                "Period is not eligible for stamping: "
                + "; ".join(issue.message for issue in eligibility.issues)
            )

        now = utcnow()
        state.stamping_attempts += 1
        state.last_stamping_attempt_at = now
        state.updated_at = now
        state.updated_by = actor
        try:
            result = provider.stamp(receipt_id, version)
        except StampingError as exc:
            state.status = ReceiptStatus.STAMP_ERROR.value
            state.stamping_error_code = exc.code
            state.stamping_error_message = exc.message
            state.status_reason = f"Stamping failed: {exc.code}"
            logger.warning(
                "Stamping of receipt %s version %d failed (%s): %s",
                receipt_id,
                version,
                exc.code,
                exc.message,
            )
        else:
            state.status = ReceiptStatus.STAMP_OK.value
            state.stamp_uuid = result.uuid
            state.stamp_xml_sha256 = hashlib.sha256(result.xml.encode("utf-8")).hexdigest()
            state.stamping_error_code = None
            state.stamping_error_message = None
            state.status_reason = None
            logger.info(
                "Receipt %s version %d stamped by %s as %s",
                receipt_id,
                version,
                getattr(provider, "provider_name", type(provider).__name__),
                result.uuid,
            )
        await flush_or_raise(self.session, f"receipt {receipt_id} stamping")
        return state

    # =========================================================================
    # Critical action effects
    # =========================================================================

    async def recalculate(
        self,
        receipt_id: UUID,
        *,
        actor: str,
        authorization: CriticalActionRecord,
    ) -> ReceiptVersion:
        """Recalculate a receipt even if stamped, paid or in a closed period.

        The period's stamping authorization must have been revoked first.
        """
        self._require_approval(authorization, CriticalAction.RECALCULATE, receipt_id)
        receipt = await self.store.get_receipt(receipt_id)
        if await self.get_active_authorization(receipt.period_id) is not None:
            raise StateConflictError(
                "Revoke the period's stamping authorization before recalculating"
            )
        return await self.store.recalculate(receipt_id, requested_by=actor, override=True)

    async def authorize_stamping(
        self,
        period_id: UUID,
        *,
        actor: str,
        justification: str,
        authorization: CriticalActionRecord,
    ) -> StampingAuthorization:
        self._require_approval(authorization, CriticalAction.AUTHORIZE_STAMPING, period_id)
        period = await self.lock_period(period_id)
        if period.status != PeriodStatus.OPEN:
            raise StateConflictError(f"Period {period.code} is closed")
        if await self.get_active_authorization(period_id) is not None:
            raise StateConflictError(f"Period {period.code} already has an active authorization")
        statuses = await self.store.period_statuses(period_id)
        calculating = [
            rid for rid, status in statuses.items() if status in ReceiptStateMachine.IN_CALCULATION
        ]
        if calculating:
            raise StateConflictError(
                f"{len(calculating)} receipt(s) in period {period.code} are still being calculated",
                {"receipt_ids": [str(rid) for rid in calculating]},
            )

        grant = StampingAuthorization(
            period_id=period_id,
            authorized_by=actor,
            justification=justification,
            authorized_at=utcnow(),
        )
        self.session.add(grant)
        await flush_or_raise(self.session, f"period {period_id} authorization")
        logger.info("Stamping authorized for period %s by %s", period.code, actor)
        return grant

    async def revoke_stamping_authorization(
        self,
        period_id: UUID,
        *,
        actor: str,
        reason: str,
        authorization: CriticalActionRecord,
    ) -> StampingAuthorization:
        self._require_approval(authorization, CriticalAction.REVOKE_AUTHORIZATION, period_id)
        period = await self.lock_period(period_id)
        active = await self.get_active_authorization(period_id)
        if active is None:
            raise StateConflictError(f"Period {period.code} has no active authorization")
        statuses = await self.store.period_statuses(period_id)
        in_flight = [rid for rid, s in statuses.items() if s == ReceiptStatus.STAMPING]
        if in_flight:
            raise StateConflictError(
                f"{len(in_flight)} receipt(s) in period {period.code} are being stamped",
                {"receipt_ids": [str(rid) for rid in in_flight]},
            )

        active.revoked_at = utcnow()
        active.revoked_by = actor
        active.revoke_reason = reason
        await flush_or_raise(self.session, f"period {period_id} authorization")
        logger.info("Stamping authorization for period %s revoked by %s", period.code, actor)
        return active

    async def close_period(
        self,
        period_id: UUID,
        *,
        actor: str,
        authorization: CriticalActionRecord,
    ) -> PayrollPeriod:
        self._require_approval(authorization, CriticalAction.CLOSE_PERIOD, period_id)
        period = await self.lock_period(period_id)
        if period.status == PeriodStatus.CLOSED:
            raise StateConflictError(f"Period {period.code} is already closed")
        statuses = await self.store.period_statuses(period_id)
        unsettled = [
            rid for rid, status in statuses.items() if status not in ReceiptStateMachine.SETTLED
        ]
        if unsettled:
            raise StateConflictError(
                f"{len(unsettled)} receipt(s) in period {period.code} are not stamped, paid or cancelled",
                {"receipt_ids": [str(rid) for rid in unsettled]},
            )

        period.status = PeriodStatus.CLOSED.value
        period.closed_at = utcnow()
        period.closed_by = actor
        await flush_or_raise(self.session, f"period {period_id}")
        logger.info("Period %s closed by %s", period.code, actor)
        return period
