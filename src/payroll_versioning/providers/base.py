"""Protocols and types for the external collaborators.

The tax calculation engine produces receipt amounts together with the
fiscal parameters it used; the stamping provider turns a receipt version
into a legally valid electronic tax document (CFDI). Both live outside
this package; adapters implement the protocols below.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from payroll_versioning.models.receipt import LineItemKind


@dataclass(frozen=True)
class Formula:
    """Calculation rule for one concept."""

    concept_code: str
    expression: str


@dataclass(frozen=True)
class FiscalParameters:
    """Fiscal rules in effect for one calculation."""

    tax_table_id: str
    social_security_table_id: str
    effective_date: datetime.date
    reference_values: dict[str, Decimal] = field(default_factory=dict)
    subsidy_table_id: str | None = None
    fiscal_year: int | None = None
    period_type: str | None = None
    rounding_mode: str = "HALF_UP"
    decimal_scale: int = 2
    formulas: tuple[Formula, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Plain mapping suitable for canonical serialization."""
        return {
            "tax_table_id": self.tax_table_id,
            "social_security_table_id": self.social_security_table_id,
            "subsidy_table_id": self.subsidy_table_id,
            "effective_date": self.effective_date,
            "reference_values": dict(self.reference_values),
            "fiscal_year": self.fiscal_year,
            "period_type": self.period_type,
            "rounding_mode": self.rounding_mode,
            "decimal_scale": self.decimal_scale,
            "formulas": [
                {"concept_code": f.concept_code, "expression": f.expression}
                for f in self.formulas
            ],
            "extra": dict(self.extra),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FiscalParameters:
        """Rebuild parameters from a stored (parsed) snapshot payload."""
        return cls(
            tax_table_id=payload["tax_table_id"],
            social_security_table_id=payload["social_security_table_id"],
            subsidy_table_id=payload.get("subsidy_table_id"),
            effective_date=datetime.date.fromisoformat(payload["effective_date"]),
            reference_values={
                name: Decimal(value)
                for name, value in payload.get("reference_values", {}).items()
            },
            fiscal_year=payload.get("fiscal_year"),
            period_type=payload.get("period_type"),
            rounding_mode=payload.get("rounding_mode", "HALF_UP"),
            decimal_scale=payload.get("decimal_scale", 2),
            formulas=tuple(
                Formula(f["concept_code"], f["expression"])
                for f in payload.get("formulas", [])
            ),
            extra=dict(payload.get("extra", {})),
        )


@dataclass(frozen=True)
class LineItem:
    """One perception or deduction of a computed receipt."""

    concept_code: str
    concept_name: str
    amount: Decimal
    kind: LineItemKind


@dataclass(frozen=True)
class ComputedReceipt:
    """Amounts produced by the tax calculation engine."""

    net_pay: Decimal
    total_perceptions: Decimal
    total_deductions: Decimal
    worked_days: Decimal
    line_items: tuple[LineItem, ...] = ()
    fiscal_parameters: FiscalParameters | None = None


class CalculationError(Exception):
    """Raised by a calculator that cannot produce a receipt."""

    def __init__(self, message: str, employee_id: UUID | None = None):
        self.message = message
        self.employee_id = employee_id
        super().__init__(message)


class ReceiptCalculator(Protocol):
    """Protocol for the tax calculation engine."""

    def compute_receipt(self, employee_id: UUID, period_id: UUID) -> ComputedReceipt:
        """Compute one employee's receipt for a period.

        The result must carry the fiscal parameters used.

        Raises:
            CalculationError: the receipt cannot be computed.
        """
        ...


@dataclass(frozen=True)
class StampResult:
    """Successful stamping response."""

    uuid: str
    xml: str


class StampingError(Exception):
    """Raised by a stamping provider when it rejects or fails a request."""

    def __init__(self, code: str, message: str = "", retryable: bool = False):
        self.code = code
        self.message = message or code
        self.retryable = retryable
        super().__init__(f"{code}: {self.message}")


class StampingProvider(Protocol):
    """Protocol for the stamping provider client."""

    provider_name: str

    def stamp(self, receipt_id: UUID, version: int) -> StampResult:
        """Stamp a receipt version.

        Raises:
            StampingError: provider rejected or failed the request.
        """
        ...
