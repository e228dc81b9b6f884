"""Append-only ledger of receipt versions.

The only writer of versions, line items and ruleset snapshots. A new
version is written under an exclusive lock on the receipt row:

1. Read the receipt's current version pointer and status, and re-read
   the period under a shared lock so it cannot be closed concurrently
2. Allocate ``current_version + 1``
3. Insert version, line items, snapshot and status row
4. Mark the predecessor SUPERSEDED
5. Advance the pointer with a conditional update

Everything happens in the caller's transaction; the pointer only moves
when that transaction commits, so rolled-back attempts never leave gaps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_versioning.database import flush_or_raise, lock_row
from payroll_versioning.exceptions import (
    CalculationFailedError,
    ConcurrentModificationError,
    PeriodNotFoundError,
    ReceiptNotFoundError,
    StateConflictError,
    ValidationError,
    VersionNotFoundError,
)
from payroll_versioning.hashing import compute_hash
from payroll_versioning.models import (
    CreationReason,
    LineItemKind,
    PayrollPeriod,
    PayrollReceipt,
    PeriodStatus,
    ReceiptLineItem,
    ReceiptStatus,
    ReceiptVersion,
    ReceiptVersionState,
    utcnow,
)
from payroll_versioning.providers.base import (
    CalculationError,
    ComputedReceipt,
    FiscalParameters,
    ReceiptCalculator,
)
from payroll_versioning.services.snapshot_service import RulesetSnapshotManager
from payroll_versioning.services.state_machine import ReceiptStateMachine

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_amount(value: Decimal, field_name: str) -> Decimal:
    """Quantize a money/days value to two places, rejecting floats."""
    if isinstance(value, float) or not isinstance(value, (Decimal, int)):
        raise ValidationError(
            f"{field_name} must be a Decimal, got {type(value).__name__}",
            {"field": field_name},
        )
    amount = Decimal(value)
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite", {"field": field_name})
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ModificationCheck:
    """Whether a receipt can still be changed, and why not."""

    receipt_id: UUID
    can_modify: bool
    current_status: ReceiptStatus
    current_version: int
    reason: str | None = None


@dataclass(frozen=True)
class VersionSummary:
    version: int
    status: ReceiptStatus
    created_reason: str
    created_at: datetime
    created_by: str
    net_pay: Decimal
    is_current: bool


class VersionStore:
    """Service writing and reading receipt versions."""

    def __init__(
        self,
        session: AsyncSession,
        calculator: ReceiptCalculator | None = None,
    ):
        self.session = session
        self.calculator = calculator
        self.snapshots = RulesetSnapshotManager(session)

    # =========================================================================
    # Periods & receipts
    # =========================================================================

    async def open_period(self, code: str) -> PayrollPeriod:
        """Create an OPEN payroll period."""
        if not code or not code.strip():
            raise ValidationError("Period code is required")
        period = PayrollPeriod(code=code.strip(), status=PeriodStatus.OPEN.value)
        self.session.add(period)
        await flush_or_raise(self.session, f"period {code}")
        return period

    async def get_period(self, period_id: UUID) -> PayrollPeriod:
        period = await self.session.get(PayrollPeriod, period_id)
        if period is None:
            raise PeriodNotFoundError(period_id)
        return period

    async def share_lock_period(self, period_id: UUID) -> PayrollPeriod:
        """Reload the period under a shared lock so it cannot be closed underneath us."""
        period = await lock_row(
            self.session,
            PayrollPeriod,
            PayrollPeriod.period_id == period_id,
            context=f"period {period_id}",
            shared=True,
        )
        if period is None:
            raise PeriodNotFoundError(period_id)
        return period

    async def open_receipt(self, period_id: UUID, employee_id: UUID) -> PayrollReceipt:
        """Register an employee's receipt in a period (status PENDING, no version)."""
        period = await self.get_period(period_id)
        if period.status != PeriodStatus.OPEN:
            raise StateConflictError(f"Period {period.code} is closed")
        receipt = PayrollReceipt(period_id=period_id, employee_id=employee_id, current_version=0)
        self.session.add(receipt)
        await flush_or_raise(self.session, f"receipt for employee {employee_id}")
        return receipt

    async def get_receipt(self, receipt_id: UUID) -> PayrollReceipt:
        receipt = await self.session.get(PayrollReceipt, receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id)
        return receipt

    async def lock_receipt(self, receipt_id: UUID) -> PayrollReceipt:
        """Load the receipt with an exclusive row lock (bounded wait)."""
        receipt = await lock_row(
            self.session,
            PayrollReceipt,
            PayrollReceipt.receipt_id == receipt_id,
            context=f"receipt {receipt_id}",
        )
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id)
        return receipt

    async def list_receipts(self, period_id: UUID) -> list[PayrollReceipt]:
        result = await self.session.execute(
            select(PayrollReceipt)
            .where(PayrollReceipt.period_id == period_id)
            .order_by(PayrollReceipt.created_at, PayrollReceipt.receipt_id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Status
    # =========================================================================

    async def get_state(self, receipt_id: UUID, version: int) -> ReceiptVersionState:
        state = await self.session.get(ReceiptVersionState, (receipt_id, version))
        if state is None:
            raise VersionNotFoundError(receipt_id, version)
        return state

    async def get_status(self, receipt_id: UUID) -> ReceiptStatus:
        """Status of the receipt's current version (PENDING before the first)."""
        receipt = await self.get_receipt(receipt_id)
        return await self._status_of(receipt)

    async def _status_of(self, receipt: PayrollReceipt) -> ReceiptStatus:
        if receipt.current_version == 0:
            return ReceiptStatus.PENDING
        state = await self.get_state(receipt.receipt_id, receipt.current_version)
        return ReceiptStatus(state.status)

    async def period_statuses(self, period_id: UUID) -> dict[UUID, ReceiptStatus]:
        """Current status of every receipt in a period."""
        return {
            receipt.receipt_id: await self._status_of(receipt)
            for receipt in await self.list_receipts(period_id)
        }

    async def can_modify(self, receipt_id: UUID) -> bool:
        """True only while the current status is PENDING, CALCULATED or APPROVED."""
        return (await self.check_modification(receipt_id)).can_modify

    async def check_modification(self, receipt_id: UUID) -> ModificationCheck:
        receipt = await self.get_receipt(receipt_id)
        status = await self._status_of(receipt)
        reason = None
        if not ReceiptStateMachine.can_modify(status):
            reason = f"Current version {receipt.current_version} is {status.value}"
        else:
            period = await self.get_period(receipt.period_id)
            if period.status == PeriodStatus.CLOSED:
                reason = f"Period {period.code} is closed"
        return ModificationCheck(
            receipt_id=receipt_id,
            can_modify=reason is None,
            current_status=status,
            current_version=receipt.current_version,
            reason=reason,
        )

    # =========================================================================
    # Writing versions
    # =========================================================================

    async def create_version(
        self,
        receipt_id: UUID,
        reason: CreationReason | str,
        computed: ComputedReceipt,
        fiscal_parameters: FiscalParameters | None = None,
        *,
        created_by: str,
        calculated: bool = False,
        override: bool = False,
    ) -> ReceiptVersion:
        """Append a new version of a receipt.

        Args:
            reason: why the version exists (INITIAL, RECALCULATION, ...).
            computed: amounts and line items.
            fiscal_parameters: rules used; defaults to ``computed.fiscal_parameters``.
            calculated: amounts come from a synchronous calculation, so the
                version starts CALCULATED instead of PENDING.
            override: allow writing over a stamped/paid receipt or into a
                closed period. Only the RECALCULATE critical action sets it.

        Raises:
            StateConflictError: the receipt or its period is immutable.
            ConcurrentModificationError: another writer took the version slot.
            LockTimeoutError: the receipt lock was not granted in time.
        """
        try:
            creation_reason = CreationReason(reason)
        except ValueError:
            raise ValidationError(f"Unknown creation reason {reason!r}") from None
        if not created_by or not created_by.strip():
            raise ValidationError("created_by is required")
        parameters = fiscal_parameters or computed.fiscal_parameters
        if parameters is None:
            raise ValidationError("Fiscal parameters are required to create a version")

        receipt = await self.lock_receipt(receipt_id)
        # Receipt before period, the same order transition() uses
        period = await self.share_lock_period(receipt.period_id)
        previous_version = receipt.current_version
        previous_state = (
            await self.get_state(receipt_id, previous_version) if previous_version else None
        )
        previous_status = (
            ReceiptStatus(previous_state.status) if previous_state else ReceiptStatus.PENDING
        )

        if previous_status == ReceiptStatus.STAMPING:
            raise StateConflictError(
                f"Receipt {receipt_id} version {previous_version} is being stamped"
            )
        if not override:
            if period.status == PeriodStatus.CLOSED:
                raise StateConflictError(
                    f"Period {period.code} is closed; recalculation requires authorization"
                )
            if ReceiptStateMachine.blocks_new_version(previous_status):
                raise StateConflictError(
                    f"Receipt {receipt_id} version {previous_version} is "
                    f"{previous_status.value}; recalculation requires authorization"
                )

        next_version = previous_version + 1
        now = utcnow()
        version = self._build_version(
            receipt_id, next_version, creation_reason, computed, created_by, now
        )
        self.session.add(version)
        await flush_or_raise(self.session, f"receipt {receipt_id} version {next_version}")

        await self.snapshots.capture_snapshot(receipt_id, next_version, parameters)
        initial = ReceiptStatus.CALCULATED if calculated else ReceiptStatus.PENDING
        self.session.add(
            ReceiptVersionState(
                receipt_id=receipt_id,
                version=next_version,
                status=initial.value,
                updated_at=now,
                updated_by=created_by,
                stamping_attempts=0,
            )
        )

        if previous_state is not None and ReceiptStateMachine.is_supersedable(previous_status):
            previous_state.status = ReceiptStatus.SUPERSEDED.value
            previous_state.superseded_at = now
            previous_state.updated_at = now
            previous_state.updated_by = created_by
            previous_state.status_reason = f"Superseded by version {next_version}"

        result = await self.session.execute(
            update(PayrollReceipt)
            .where(
                PayrollReceipt.receipt_id == receipt_id,
                PayrollReceipt.current_version == previous_version,
            )
            .values(current_version=next_version, updated_at=now)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Receipt {receipt_id} moved past version {previous_version}, retry"
            )
        await flush_or_raise(self.session, f"receipt {receipt_id} version {next_version}")

        logger.info(
            "Created receipt %s version %d (%s, %s) by %s",
            receipt_id,
            next_version,
            creation_reason.value,
            initial.value,
            created_by,
        )
        if previous_state is not None:
            logger.info(
                "Receipt %s version %d is now %s",
                receipt_id,
                previous_version,
                previous_state.status,
            )
        return version

    def _build_version(
        self,
        receipt_id: UUID,
        number: int,
        reason: CreationReason,
        computed: ComputedReceipt,
        created_by: str,
        now: datetime,
    ) -> ReceiptVersion:
        version = ReceiptVersion(
            receipt_id=receipt_id,
            version=number,
            net_pay=to_amount(computed.net_pay, "net_pay"),
            total_perceptions=to_amount(computed.total_perceptions, "total_perceptions"),
            total_deductions=to_amount(computed.total_deductions, "total_deductions"),
            worked_days=to_amount(computed.worked_days, "worked_days"),
            created_reason=reason.value,
            created_at=now,
            created_by=created_by,
        )
        items = []
        for position, item in enumerate(computed.line_items, start=1):
            if not item.concept_code:
                raise ValidationError(f"Line item {position} has no concept code")
            try:
                kind = LineItemKind(item.kind)
            except ValueError:
                raise ValidationError(f"Line item {position} has unknown kind {item.kind!r}") from None
            items.append(
                ReceiptLineItem(
                    receipt_id=receipt_id,
                    version=number,
                    position=position,
                    concept_code=item.concept_code,
                    concept_name=item.concept_name,
                    amount=to_amount(item.amount, f"line_items[{position}].amount"),
                    kind=kind.value,
                )
            )
        version.line_items = items
        version.content_hash = compute_hash(version.hash_payload())
        return version

    async def recalculate(
        self,
        receipt_id: UUID,
        *,
        requested_by: str,
        reason: CreationReason | str = CreationReason.RECALCULATION,
        override: bool = False,
    ) -> ReceiptVersion:
        """Run the tax calculation engine and store its result as a new version."""
        if self.calculator is None:
            raise ValidationError("No receipt calculator configured")
        receipt = await self.get_receipt(receipt_id)
        try:
            computed = self.calculator.compute_receipt(receipt.employee_id, receipt.period_id)
        except CalculationError as exc:
            raise CalculationFailedError(
                f"Calculation of receipt {receipt_id} failed: {exc.message}",
                {"employee_id": str(receipt.employee_id)},
            ) from exc
        return await self.create_version(
            receipt_id,
            reason,
            computed,
            created_by=requested_by,
            calculated=True,
            override=override,
        )

    # =========================================================================
    # Reading versions
    # =========================================================================

    async def get_versions(self, receipt_id: UUID) -> list[ReceiptVersion]:
        """All versions of a receipt, oldest first."""
        await self.get_receipt(receipt_id)
        result = await self.session.execute(
            select(ReceiptVersion)
            .where(ReceiptVersion.receipt_id == receipt_id)
            .order_by(ReceiptVersion.version)
        )
        return list(result.scalars().all())

    async def get_version(self, receipt_id: UUID, version: int) -> ReceiptVersion:
        result = await self.session.get(ReceiptVersion, (receipt_id, version))
        if result is None:
            raise VersionNotFoundError(receipt_id, version)
        return result

    async def get_current_version(self, receipt_id: UUID) -> ReceiptVersion | None:
        receipt = await self.get_receipt(receipt_id)
        if receipt.current_version == 0:
            return None
        return await self.get_version(receipt_id, receipt.current_version)

    async def get_version_history(self, receipt_id: UUID) -> list[VersionSummary]:
        """Versions with their statuses, newest first."""
        receipt = await self.get_receipt(receipt_id)
        result = await self.session.execute(
            select(ReceiptVersion, ReceiptVersionState)
            .join(
                ReceiptVersionState,
                (ReceiptVersionState.receipt_id == ReceiptVersion.receipt_id)
                & (ReceiptVersionState.version == ReceiptVersion.version),
            )
            .where(ReceiptVersion.receipt_id == receipt_id)
            .order_by(ReceiptVersion.version.desc())
        )
        return [
            VersionSummary(
                version=version.version,
                status=ReceiptStatus(state.status),
                created_reason=version.created_reason,
                created_at=version.created_at,
                created_by=version.created_by,
                net_pay=version.net_pay,
                is_current=version.version == receipt.current_version,
            )
            for version, state in result.all()
        ]
