"""Tests for ruleset snapshots and integrity verification."""

import json
from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, text

from payroll_versioning.exceptions import (
    DuplicateSnapshotError,
    IntegrityViolationError,
    PeriodNotFoundError,
    SnapshotNotFoundError,
)
from payroll_versioning.hashing import compute_hash
from payroll_versioning.models import IntegrityAlert, IntegrityStatus
from payroll_versioning.providers import Formula
from payroll_versioning.services.snapshot_service import (
    DifferenceType,
    ImpactLevel,
    SnapshotDifference,
    impact_of,
)


@pytest.fixture
async def versioned_receipt(session, store, receipt, make_computed):
    """Receipt with one committed version."""
    await store.create_version(
        receipt.receipt_id, "INITIAL", make_computed("1000.00"), created_by="calc-engine"
    )
    await session.commit()
    return receipt


async def _alerts(session, receipt_id) -> list[IntegrityAlert]:
    result = await session.execute(
        select(IntegrityAlert).where(IntegrityAlert.receipt_id == receipt_id)
    )
    return list(result.scalars().all())


class TestCapture:
    """Snapshot capture."""

    async def test_payload_is_canonical_json(self, store, versioned_receipt, fiscal_parameters):
        snapshot = await store.snapshots.get_snapshot(versioned_receipt.receipt_id, 1)

        payload = json.loads(snapshot.payload)
        assert payload["tax_table_id"] == "ISR-2024-Q"
        assert payload["effective_date"] == "2024-01-01"
        assert payload["reference_values"] == {"SMG": "248.93", "UMA": "108.57"}
        assert snapshot.content_hash == compute_hash(fiscal_parameters.to_payload())
        assert snapshot.payload == json.dumps(payload, sort_keys=True, separators=(",", ":"))

    async def test_duplicate_snapshot_rejected(self, store, versioned_receipt, fiscal_parameters):
        with pytest.raises(DuplicateSnapshotError):
            await store.snapshots.capture_snapshot(
                versioned_receipt.receipt_id, 1, fiscal_parameters
            )

    async def test_missing_snapshot(self, store, receipt):
        with pytest.raises(SnapshotNotFoundError):
            await store.snapshots.get_snapshot(receipt.receipt_id, 1)

    async def test_all_snapshots_oldest_first(self, session, store, versioned_receipt, make_computed):
        receipt_id = versioned_receipt.receipt_id
        await store.create_version(receipt_id, "CORRECTION", make_computed("950"), created_by="calc")
        await session.commit()

        snapshots = await store.snapshots.get_all_snapshots(receipt_id)
        assert [s.version for s in snapshots] == [1, 2]


class TestVerifyIntegrity:
    """Hash verification and tamper detection."""

    async def test_fresh_version_verifies(self, session, store, versioned_receipt):
        report = await store.snapshots.verify_integrity(versioned_receipt.receipt_id, 1)

        assert report.status == IntegrityStatus.VERIFIED
        assert report.is_verified
        assert report.details["snapshot_hash"] == report.details["snapshot_recomputed_hash"]
        assert report.details["version_hash"] == report.details["version_recomputed_hash"]
        assert await _alerts(session, versioned_receipt.receipt_id) == []

    async def test_tampered_snapshot_detected(self, session, store, versioned_receipt):
        receipt_id = versioned_receipt.receipt_id
        snapshot = await store.snapshots.get_snapshot(receipt_id, 1)
        tampered = snapshot.payload.replace('"UMA":"108.57"', '"UMA":"99.99"')
        assert tampered != snapshot.payload

        await session.execute(
            text(
                "UPDATE ruleset_snapshot SET payload = :payload "
                "WHERE receipt_id = :receipt_id AND version = 1"
            ),
            {"payload": tampered, "receipt_id": receipt_id.hex},
        )
        await session.commit()

        report = await store.snapshots.verify_integrity(receipt_id, 1, verified_by="auditor")
        await session.commit()

        assert report.status == IntegrityStatus.CORRUPTED
        assert report.details["failures"] == ["SNAPSHOT"]
        alerts = await _alerts(session, receipt_id)
        assert len(alerts) == 1
        assert alerts[0].entity == "SNAPSHOT"
        assert alerts[0].detected_by == "auditor"
        assert alerts[0].expected_hash == report.details["snapshot_hash"]

    async def test_tampered_amount_detected(self, session, store, versioned_receipt):
        receipt_id = versioned_receipt.receipt_id
        await session.execute(
            text(
                "UPDATE payroll_receipt_version SET net_pay = 1500.00 "
                "WHERE receipt_id = :receipt_id AND version = 1"
            ),
            {"receipt_id": receipt_id.hex},
        )
        await session.commit()

        report = await store.snapshots.verify_integrity(receipt_id, 1)
        await session.commit()

        assert report.status == IntegrityStatus.CORRUPTED
        assert report.details["failures"] == ["VERSION"]
        assert [a.entity for a in await _alerts(session, receipt_id)] == ["VERSION"]

    async def test_tampered_line_item_detected(self, session, store, versioned_receipt):
        receipt_id = versioned_receipt.receipt_id
        await session.execute(
            text(
                "UPDATE payroll_receipt_line_item SET amount = 1.00 "
                "WHERE receipt_id = :receipt_id AND version = 1 AND position = 2"
            ),
            {"receipt_id": receipt_id.hex},
        )
        await session.commit()

        report = await store.snapshots.verify_integrity(receipt_id, 1)

        assert report.status == IntegrityStatus.CORRUPTED
        assert report.details["failures"] == ["VERSION"]

    async def test_unparseable_payload_is_corrupted(self, session, store, versioned_receipt):
        receipt_id = versioned_receipt.receipt_id
        await session.execute(
            text(
                "UPDATE ruleset_snapshot SET payload = '{not json' "
                "WHERE receipt_id = :receipt_id AND version = 1"
            ),
            {"receipt_id": receipt_id.hex},
        )
        await session.commit()

        report = await store.snapshots.verify_integrity(receipt_id, 1)

        assert report.status == IntegrityStatus.CORRUPTED
        assert report.details["snapshot_recomputed_hash"] is None

    async def test_corruption_is_never_repaired(self, session, store, versioned_receipt):
        receipt_id = versioned_receipt.receipt_id
        await session.execute(
            text(
                "UPDATE payroll_receipt_version SET net_pay = 1500.00 "
                "WHERE receipt_id = :receipt_id AND version = 1"
            ),
            {"receipt_id": receipt_id.hex},
        )
        await session.commit()

        first = await store.snapshots.verify_integrity(receipt_id, 1)
        await session.commit()
        second = await store.snapshots.verify_integrity(receipt_id, 1)
        await session.commit()

        assert first.status == second.status == IntegrityStatus.CORRUPTED
        assert len(await _alerts(session, receipt_id)) == 2

    async def test_verify_period(self, session, store, period, versioned_receipt, make_computed):
        receipt_id = versioned_receipt.receipt_id
        other = await store.open_receipt(period.period_id, uuid4())
        await store.create_version(other.receipt_id, "INITIAL", make_computed(), created_by="calc")
        await session.commit()
        await session.execute(
            text(
                "UPDATE payroll_receipt_version SET net_pay = 1500.00 "
                "WHERE receipt_id = :receipt_id AND version = 1"
            ),
            {"receipt_id": receipt_id.hex},
        )
        await session.commit()

        report = await store.snapshots.verify_period(period.period_id)

        assert report.total == 2
        assert report.verified == 1
        assert [r.receipt_id for r in report.corrupted] == [receipt_id]
        assert report.all_verified is False

    async def test_verify_unknown_period(self, store):
        with pytest.raises(PeriodNotFoundError):
            await store.snapshots.verify_period(uuid4())


class TestCalculationContext:
    """Reproducing a historical calculation."""

    async def test_returns_original_parameters(self, store, versioned_receipt, fiscal_parameters):
        context = await store.snapshots.get_calculation_context(versioned_receipt.receipt_id, 1)

        assert context == fiscal_parameters
        assert context.reference_values["UMA"] == Decimal("108.57")

    async def test_corrupted_snapshot_raises(self, session, store, versioned_receipt):
        receipt_id = versioned_receipt.receipt_id
        await session.execute(
            text(
                "UPDATE ruleset_snapshot SET content_hash = :digest "
                "WHERE receipt_id = :receipt_id AND version = 1"
            ),
            {"digest": "0" * 64, "receipt_id": receipt_id.hex},
        )
        await session.commit()

        with pytest.raises(IntegrityViolationError):
            await store.snapshots.get_calculation_context(receipt_id, 1)


class TestCompareSnapshots:
    """Field-level comparison and impact."""

    async def test_identical_parameters(self, session, store, versioned_receipt, make_computed):
        receipt_id = versioned_receipt.receipt_id
        await store.create_version(receipt_id, "CORRECTION", make_computed("950"), created_by="calc")
        await session.commit()

        comparison = await store.snapshots.compare_snapshots(receipt_id, 1, 2)

        assert comparison.differences == []
        assert comparison.impact_level == ImpactLevel.NONE

    async def test_fiscal_value_and_formula_changes_are_critical(
        self, session, store, versioned_receipt, make_computed, fiscal_parameters
    ):
        receipt_id = versioned_receipt.receipt_id
        changed = replace(
            fiscal_parameters,
            reference_values={**fiscal_parameters.reference_values, "UMA": Decimal("113.14")},
            formulas=(
                Formula("P001", "salario_diario * dias_trabajados"),
                Formula("D001", "isr_2025(base_gravable)"),
            ),
        )
        await store.create_version(
            receipt_id,
            "RECALCULATION",
            make_computed("990", parameters=changed),
            created_by="calc",
        )
        await session.commit()

        comparison = await store.snapshots.compare_snapshots(receipt_id, 1, 2)

        by_field = {d.field: d for d in comparison.differences}
        assert set(by_field) == {"reference_values.UMA", "formulas.D001"}
        assert by_field["reference_values.UMA"].type == DifferenceType.FISCAL_VALUE
        assert by_field["reference_values.UMA"].old_value == "108.57"
        assert by_field["reference_values.UMA"].new_value == "113.14"
        assert by_field["formulas.D001"].type == DifferenceType.FORMULA
        assert comparison.impact_level == ImpactLevel.CRITICAL

    async def test_table_change_is_high(
        self, session, store, versioned_receipt, make_computed, fiscal_parameters
    ):
        receipt_id = versioned_receipt.receipt_id
        changed = replace(fiscal_parameters, tax_table_id="ISR-2024-Q-R1")
        await store.create_version(
            receipt_id, "RECALCULATION", make_computed(parameters=changed), created_by="calc"
        )
        await session.commit()

        comparison = await store.snapshots.compare_snapshots(receipt_id, 1, 2)

        assert [d.type for d in comparison.differences] == [DifferenceType.TABLE_VERSION]
        assert comparison.impact_level == ImpactLevel.HIGH


class TestImpactOf:
    """Impact classification rules."""

    def _diff(self, kind: DifferenceType) -> SnapshotDifference:
        return SnapshotDifference(field="x", type=kind, old_value="a", new_value="b")

    def test_levels(self):
        assert impact_of([]) == ImpactLevel.NONE
        assert impact_of([self._diff(DifferenceType.CONFIGURATION)]) == ImpactLevel.LOW
        assert impact_of([self._diff(DifferenceType.FORMULA)]) == ImpactLevel.MEDIUM
        assert impact_of([self._diff(DifferenceType.TABLE_VERSION)]) == ImpactLevel.HIGH
        assert impact_of([self._diff(DifferenceType.FISCAL_VALUE)]) == ImpactLevel.HIGH
        assert (
            impact_of(
                [self._diff(DifferenceType.FISCAL_VALUE), self._diff(DifferenceType.FORMULA)]
            )
            == ImpactLevel.CRITICAL
        )
