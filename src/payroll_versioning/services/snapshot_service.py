"""Ruleset snapshot capture, verification and comparison.

Each receipt version records the fiscal parameters it was computed under
as canonical JSON plus its SHA-256. Verification recomputes both the
snapshot hash and the version's own content hash; a mismatch is reported
as CORRUPTED, written to ``integrity_alert`` and logged at ERROR. Nothing
is ever repaired automatically.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_versioning.exceptions import (
    DuplicateSnapshotError,
    IntegrityViolationError,
    PeriodNotFoundError,
    SerializationError,
    SnapshotNotFoundError,
)
from payroll_versioning.hashing import canonical_json, compute_hash, hash_bytes
from payroll_versioning.models import (
    IntegrityAlert,
    IntegrityEntity,
    IntegrityStatus,
    PayrollPeriod,
    PayrollReceipt,
    ReceiptLineItem,
    ReceiptVersion,
    RulesetSnapshot,
    utcnow,
)
from payroll_versioning.providers.base import FiscalParameters

logger = logging.getLogger(__name__)


class DifferenceType(str, Enum):
    FISCAL_VALUE = "FISCAL_VALUE"
    TABLE_VERSION = "TABLE_VERSION"
    FORMULA = "FORMULA"
    CONFIGURATION = "CONFIGURATION"


class ImpactLevel(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class IntegrityReport:
    receipt_id: UUID
    version: int
    status: IntegrityStatus
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_verified(self) -> bool:
        return self.status == IntegrityStatus.VERIFIED


@dataclass(frozen=True)
class SnapshotDifference:
    field: str
    type: DifferenceType
    old_value: Any
    new_value: Any


@dataclass(frozen=True)
class SnapshotComparison:
    receipt_id: UUID
    version_a: int
    version_b: int
    differences: list[SnapshotDifference]
    impact_level: ImpactLevel

    @property
    def has_differences(self) -> bool:
        return bool(self.differences)


@dataclass(frozen=True)
class PeriodIntegrityReport:
    period_id: UUID
    total: int
    verified: int
    corrupted: list[IntegrityReport]

    @property
    def all_verified(self) -> bool:
        return not self.corrupted


def _flatten(payload: dict[str, Any]) -> dict[str, Any]:
    """Flatten a snapshot payload into dotted field paths."""
    flat: dict[str, Any] = {}
    for key, value in payload.items():
        if key == "formulas":
            for formula in value or []:
                flat[f"formulas.{formula['concept_code']}"] = formula["expression"]
        elif isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[f"{key}.{sub_key}"] = sub_value
        else:
            flat[key] = value
    return flat


def _classify(field_path: str) -> DifferenceType:
    if field_path.startswith("reference_values."):
        return DifferenceType.FISCAL_VALUE
    if field_path.startswith("formulas."):
        return DifferenceType.FORMULA
    if field_path.endswith("_table_id"):
        return DifferenceType.TABLE_VERSION
    return DifferenceType.CONFIGURATION


def impact_of(differences: list[SnapshotDifference]) -> ImpactLevel:
    """Fiscal impact of a set of snapshot differences."""
    if not differences:
        return ImpactLevel.NONE
    kinds = {d.type for d in differences}
    fiscal = DifferenceType.FISCAL_VALUE in kinds
    formula = DifferenceType.FORMULA in kinds
    tables = DifferenceType.TABLE_VERSION in kinds
    if fiscal and formula:
        return ImpactLevel.CRITICAL
    if fiscal or tables:
        return ImpactLevel.HIGH
    if formula:
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


class RulesetSnapshotManager:
    """Captures and verifies the fiscal rules behind each receipt version."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # =========================================================================
    # Capture
    # =========================================================================

    async def capture_snapshot(
        self,
        receipt_id: UUID,
        version: int,
        fiscal_parameters: FiscalParameters,
    ) -> RulesetSnapshot:
        """Serialize, hash and persist the parameters for a version.

        Runs inside the caller's transaction so the version and its snapshot
        become visible together.
        """
        existing = await self._find(receipt_id, version)
        if existing is not None:
            raise DuplicateSnapshotError(receipt_id, version)

        payload = canonical_json(fiscal_parameters.to_payload())
        snapshot = RulesetSnapshot(
            receipt_id=receipt_id,
            version=version,
            payload=payload,
            content_hash=hash_bytes(payload.encode("utf-8")),
            computed_at=utcnow(),
        )
        self.session.add(snapshot)
        return snapshot

    # =========================================================================
    # Queries
    # =========================================================================

    async def _find(
        self, receipt_id: UUID, version: int, *, fresh: bool = False
    ) -> RulesetSnapshot | None:
        stmt = select(RulesetSnapshot).where(
            RulesetSnapshot.receipt_id == receipt_id,
            RulesetSnapshot.version == version,
        )
        if fresh:
            # Re-read the row; the identity map may hold pre-tampering values
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_snapshot(self, receipt_id: UUID, version: int) -> RulesetSnapshot:
        snapshot = await self._find(receipt_id, version)
        if snapshot is None:
            raise SnapshotNotFoundError(receipt_id, version)
        return snapshot

    async def get_all_snapshots(self, receipt_id: UUID) -> list[RulesetSnapshot]:
        """All snapshots of a receipt, oldest version first."""
        result = await self.session.execute(
            select(RulesetSnapshot)
            .where(RulesetSnapshot.receipt_id == receipt_id)
            .order_by(RulesetSnapshot.version)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_integrity(
        self,
        receipt_id: UUID,
        version: int,
        *,
        verified_by: str = "system",
        record_alerts: bool = True,
    ) -> IntegrityReport:
        """Recompute stored hashes and compare them to the recorded ones.

        Each failure is logged; with ``record_alerts`` it is also stored as
        an ``IntegrityAlert``.
        """
        snapshot = await self._find(receipt_id, version, fresh=True)
        if snapshot is None:
            raise SnapshotNotFoundError(receipt_id, version)
        details: dict[str, Any] = {"snapshot_hash": snapshot.content_hash}
        failures: list[tuple[IntegrityEntity, str, str | None, str]] = []

        actual = self._rehash_payload(snapshot.payload)
        details["snapshot_recomputed_hash"] = actual
        if actual != snapshot.content_hash:
            failures.append(
                (
                    IntegrityEntity.SNAPSHOT,
                    snapshot.content_hash,
                    actual,
                    "Ruleset snapshot payload does not match its recorded hash",
                )
            )

        receipt_version = await self.session.get(
            ReceiptVersion, (receipt_id, version), populate_existing=True
        )
        if receipt_version is not None:
            line_items = await self.session.execute(
                select(ReceiptLineItem)
                .where(
                    ReceiptLineItem.receipt_id == receipt_id,
                    ReceiptLineItem.version == version,
                )
                .order_by(ReceiptLineItem.position)
                .execution_options(populate_existing=True)
            )
            try:
                version_hash: str | None = compute_hash(
                    receipt_version.hash_payload(list(line_items.scalars().all()))
                )
            except SerializationError:
                version_hash = None
            details["version_hash"] = receipt_version.content_hash
            details["version_recomputed_hash"] = version_hash
            if version_hash != receipt_version.content_hash:
                failures.append(
                    (
                        IntegrityEntity.VERSION,
                        receipt_version.content_hash,
                        version_hash,
                        "Receipt version amounts do not match their recorded hash",
                    )
                )

        if not failures:
            return IntegrityReport(receipt_id, version, IntegrityStatus.VERIFIED, details)

        details["failures"] = [entity.value for entity, *_ in failures]
        for entity, expected, actual_hash, message in failures:
            logger.error(
                "Integrity violation on receipt %s version %s (%s): expected %s, got %s",
                receipt_id,
                version,
                entity.value,
                expected,
                actual_hash,
            )
            if not record_alerts:
                continue
            self.session.add(
                IntegrityAlert(
                    receipt_id=receipt_id,
                    version=version,
                    entity=entity.value,
                    expected_hash=expected,
                    actual_hash=actual_hash,
                    message=message,
                    detected_at=utcnow(),
                    detected_by=verified_by,
                )
            )
        await self.session.flush()
        return IntegrityReport(receipt_id, version, IntegrityStatus.CORRUPTED, details)

    @staticmethod
    def _rehash_payload(payload: str) -> str | None:
        """Hash of the stored payload after re-canonicalization.

        Returns None when the stored text is no longer parseable.
        """
        try:
            parsed = json.loads(payload, parse_float=_reject_float)
            return compute_hash(parsed)
        except (ValueError, SerializationError):
            return None

    async def verify_period(
        self, period_id: UUID, *, verified_by: str = "system", record_alerts: bool = True
    ) -> PeriodIntegrityReport:
        """Verify the current version of every receipt in a period."""
        if await self.session.get(PayrollPeriod, period_id) is None:
            raise PeriodNotFoundError(period_id)
        result = await self.session.execute(
            select(PayrollReceipt.receipt_id, PayrollReceipt.current_version).where(
                PayrollReceipt.period_id == period_id,
                PayrollReceipt.current_version > 0,
            )
        )
        rows = result.all()
        corrupted = []
        for receipt_id, version in rows:
            report = await self.verify_integrity(
                receipt_id, version, verified_by=verified_by, record_alerts=record_alerts
            )
            if not report.is_verified:
                corrupted.append(report)
        if corrupted:
            logger.error(
                "Period %s has %d corrupted receipt(s) out of %d",
                period_id,
                len(corrupted),
                len(rows),
            )
        return PeriodIntegrityReport(
            period_id=period_id,
            total=len(rows),
            verified=len(rows) - len(corrupted),
            corrupted=corrupted,
        )

    # =========================================================================
    # Audit review
    # =========================================================================

    async def compare_snapshots(
        self, receipt_id: UUID, version_a: int, version_b: int
    ) -> SnapshotComparison:
        """Field-level diff of two snapshots; B is treated as the later one."""
        snapshot_a = await self.get_snapshot(receipt_id, version_a)
        snapshot_b = await self.get_snapshot(receipt_id, version_b)
        flat_a = _flatten(json.loads(snapshot_a.payload))
        flat_b = _flatten(json.loads(snapshot_b.payload))

        differences = [
            SnapshotDifference(
                field=path,
                type=_classify(path),
                old_value=flat_a.get(path),
                new_value=flat_b.get(path),
            )
            for path in sorted(flat_a.keys() | flat_b.keys())
            if flat_a.get(path) != flat_b.get(path)
        ]
        return SnapshotComparison(
            receipt_id=receipt_id,
            version_a=version_a,
            version_b=version_b,
            differences=differences,
            impact_level=impact_of(differences),
        )

    async def get_calculation_context(self, receipt_id: UUID, version: int) -> FiscalParameters:
        """Fiscal parameters to reproduce a historical calculation.

        Raises:
            IntegrityViolationError: the snapshot failed verification.
        """
        report = await self.verify_integrity(receipt_id, version)
        if not report.is_verified:
            raise IntegrityViolationError(receipt_id, version, report.details)
        snapshot = await self.get_snapshot(receipt_id, version)
        return FiscalParameters.from_payload(json.loads(snapshot.payload))


def _reject_float(text: str) -> Any:
    raise SerializationError(f"Float literal {text} in stored payload")
