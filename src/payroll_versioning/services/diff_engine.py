"""Line-item comparison between two receipt versions."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable
from uuid import UUID

from payroll_versioning.models import LineItemKind, ReceiptLineItem, ReceiptVersion
from payroll_versioning.services.version_store import VersionStore


class ChangeType(str, Enum):
    ADDED = "ADDED"
    REMOVED = "REMOVED"
    MODIFIED = "MODIFIED"


@dataclass(frozen=True)
class LineItemChange:
    type: ChangeType
    concept_code: str
    concept_name: str
    old_amount: Decimal | None = None
    new_amount: Decimal | None = None
    amount: Decimal | None = None


@dataclass(frozen=True)
class VersionComparison:
    receipt_id: UUID
    version_a: int
    version_b: int
    net_pay_difference: Decimal
    perceptions_difference: Decimal
    deductions_difference: Decimal
    worked_days_difference: Decimal
    perceptions_diff: list[LineItemChange] = field(default_factory=list)
    deductions_diff: list[LineItemChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.net_pay_difference
            or self.perceptions_difference
            or self.deductions_difference
            or self.worked_days_difference
            or self.perceptions_diff
            or self.deductions_diff
        )


def _by_concept(items: Iterable[ReceiptLineItem], kind: LineItemKind) -> dict[str, tuple[str, Decimal]]:
    """Map concept code to (name, total amount); repeated codes are summed."""
    totals: dict[str, tuple[str, Decimal]] = {}
    for item in items:
        if item.kind != kind:
            continue
        name, amount = totals.get(item.concept_code, (item.concept_name, Decimal("0")))
        totals[item.concept_code] = (name, amount + item.amount)
    return totals


def diff_line_items(
    items_a: Iterable[ReceiptLineItem],
    items_b: Iterable[ReceiptLineItem],
    kind: LineItemKind,
) -> list[LineItemChange]:
    """Changes from A to B for one kind of line item, sorted by concept code."""
    before = _by_concept(items_a, kind)
    after = _by_concept(items_b, kind)
    changes = []
    for code in sorted(before.keys() | after.keys()):
        if code not in before:
            name, amount = after[code]
            changes.append(
                LineItemChange(ChangeType.ADDED, code, name, new_amount=amount, amount=amount)
            )
        elif code not in after:
            name, amount = before[code]
            changes.append(
                LineItemChange(ChangeType.REMOVED, code, name, old_amount=amount, amount=amount)
            )
        else:
            name, old = before[code]
            _, new = after[code]
            if old != new:
                changes.append(
                    LineItemChange(
                        ChangeType.MODIFIED,
                        code,
                        name,
                        old_amount=old,
                        new_amount=new,
                        amount=new - old,
                    )
                )
    return changes


def compare_versions(version_a: ReceiptVersion, version_b: ReceiptVersion) -> VersionComparison:
    """Compare two loaded versions; B is "after" A whatever their numbers."""
    return VersionComparison(
        receipt_id=version_a.receipt_id,
        version_a=version_a.version,
        version_b=version_b.version,
        net_pay_difference=version_b.net_pay - version_a.net_pay,
        perceptions_difference=version_b.total_perceptions - version_a.total_perceptions,
        deductions_difference=version_b.total_deductions - version_a.total_deductions,
        worked_days_difference=version_b.worked_days - version_a.worked_days,
        perceptions_diff=diff_line_items(
            version_a.line_items, version_b.line_items, LineItemKind.PERCEPTION
        ),
        deductions_diff=diff_line_items(
            version_a.line_items, version_b.line_items, LineItemKind.DEDUCTION
        ),
    )


class ReceiptComparator:
    """Compares stored versions of a receipt."""

    def __init__(self, store: VersionStore):
        self.store = store

    async def compare(self, receipt_id: UUID, version_a: int, version_b: int) -> VersionComparison:
        a = await self.store.get_version(receipt_id, version_a)
        b = await self.store.get_version(receipt_id, version_b)
        return compare_versions(a, b)
