"""External collaborator protocols and stub implementations."""

from payroll_versioning.providers.base import (
    CalculationError,
    ComputedReceipt,
    FiscalParameters,
    Formula,
    LineItem,
    ReceiptCalculator,
    StampingError,
    StampingProvider,
    StampResult,
)
from payroll_versioning.providers.stub import StaticReceiptCalculator, StubStampingProvider

__all__ = [
    "CalculationError",
    "ComputedReceipt",
    "FiscalParameters",
    "Formula",
    "LineItem",
    "ReceiptCalculator",
    "StampResult",
    "StampingError",
    "StampingProvider",
    "StaticReceiptCalculator",
    "StubStampingProvider",
]
