"""Stub collaborators for local development and testing.

Replace with adapters for the real tax calculation engine and stamping
provider (PAC) in production.
"""

from __future__ import annotations

import hashlib
from uuid import UUID

from payroll_versioning.providers.base import (
    CalculationError,
    ComputedReceipt,
    StampingError,
    StampResult,
)


class StaticReceiptCalculator:
    """Calculator returning preconfigured results.

    Results are keyed by employee; ``queue`` lets a test hand out a
    different result on each call for the same employee.
    """

    def __init__(self, default: ComputedReceipt | None = None):
        self.default = default
        self._queued: dict[UUID, list[ComputedReceipt]] = {}
        self.calls: list[tuple[UUID, UUID]] = []

    def queue(self, employee_id: UUID, *results: ComputedReceipt) -> None:
        self._queued.setdefault(employee_id, []).extend(results)

    def compute_receipt(self, employee_id: UUID, period_id: UUID) -> ComputedReceipt:
        self.calls.append((employee_id, period_id))
        queued = self._queued.get(employee_id)
        if queued:
            return queued.pop(0)
        if self.default is None:
            raise CalculationError(
                f"No calculation configured for employee {employee_id}", employee_id
            )
        return self.default


class StubStampingProvider:
    """Stamping provider that succeeds deterministically.

    ``fail_with`` makes the next stamp calls raise the given error codes in
    order, e.g. ``["PAC_TEMPORARY"]`` to fail once and then succeed.
    """

    provider_name = "pac_stub"

    def __init__(self, fail_with: list[str] | None = None):
        self._failures = list(fail_with or [])
        self.stamped: list[tuple[UUID, int]] = []

    def stamp(self, receipt_id: UUID, version: int) -> StampResult:
        if self._failures:
            code = self._failures.pop(0)
            raise StampingError(
                code,
                f"Stub provider rejected receipt {receipt_id} v{version}",
                retryable=code in ("PAC_TEMPORARY", "NETWORK"),
            )
        digest = hashlib.sha256(f"{receipt_id}:{version}".encode()).hexdigest()
        stamp_uuid = f"{digest[:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}".upper()
        xml = (
            f'<cfdi:Comprobante Version="4.0">'
            f'<tfd:TimbreFiscalDigital UUID="{stamp_uuid}"/>'
            f"</cfdi:Comprobante>"
        )
        self.stamped.append((receipt_id, version))
        return StampResult(uuid=stamp_uuid, xml=xml)
