"""Error taxonomy for payroll versioning.

Every error carries a stable ``code`` so that callers (the API layer, a
retrying client) can tell failure modes apart without parsing messages.
``retryable`` marks the errors a caller may safely retry a bounded number
of times.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class PayrollVersioningError(Exception):
    """Base exception for all payroll versioning errors."""

    code: str = "PAYROLL_VERSIONING_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ===== Validation =====


class ValidationError(PayrollVersioningError):
    """Bad input."""

    code = "VALIDATION_ERROR"


class JustificationRequiredError(ValidationError):
    """A critical action was requested without a written justification."""

    code = "JUSTIFICATION_REQUIRED"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Action {action} requires a non-empty justification")


class SelfApprovalError(ValidationError):
    """The requester tried to act as their own second approver."""

    code = "SELF_APPROVAL"

    def __init__(self, action: str, principal: str):
        self.action = action
        self.principal = principal
        super().__init__(
            f"Action {action} requires a second approver distinct from {principal!r}"
        )


class SerializationError(ValidationError):
    """Payload cannot be canonicalized for hashing."""

    code = "SERIALIZATION_ERROR"


class CalculationFailedError(ValidationError):
    """The tax calculation engine could not compute the receipt."""

    code = "CALCULATION_FAILED"


# ===== Not found =====


class NotFoundError(PayrollVersioningError):
    """Requested entity does not exist."""

    code = "NOT_FOUND"


class PeriodNotFoundError(NotFoundError):
    code = "PERIOD_NOT_FOUND"

    def __init__(self, period_id: UUID):
        self.period_id = period_id
        super().__init__(f"Payroll period {period_id} not found")


class ReceiptNotFoundError(NotFoundError):
    code = "RECEIPT_NOT_FOUND"

    def __init__(self, receipt_id: UUID):
        self.receipt_id = receipt_id
        super().__init__(f"Receipt {receipt_id} not found")


class VersionNotFoundError(NotFoundError):
    code = "VERSION_NOT_FOUND"

    def __init__(self, receipt_id: UUID, version: int):
        self.receipt_id = receipt_id
        self.version = version
        super().__init__(f"Receipt {receipt_id} has no version {version}")


class SnapshotNotFoundError(NotFoundError):
    code = "SNAPSHOT_NOT_FOUND"

    def __init__(self, receipt_id: UUID, version: int):
        self.receipt_id = receipt_id
        self.version = version
        super().__init__(f"No ruleset snapshot for receipt {receipt_id} version {version}")


class PendingActionNotFoundError(NotFoundError):
    code = "PENDING_ACTION_NOT_FOUND"

    def __init__(self, pending_action_id: UUID):
        self.pending_action_id = pending_action_id
        super().__init__(f"Pending critical action {pending_action_id} not found")


# ===== State =====


class StateConflictError(PayrollVersioningError):
    """Operation is not legal in the entity's current state."""

    code = "STATE_CONFLICT"


class InvalidTransitionError(StateConflictError):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(
            msg, {"from_status": from_status, "to_status": to_status, "reason": reason}
        )


class ImmutableRecordError(PayrollVersioningError):
    """An insert-only record was modified or deleted."""

    code = "IMMUTABLE_RECORD"

    def __init__(self, entity: str, operation: str):
        self.entity = entity
        self.operation = operation
        super().__init__(f"{entity} rows are insert-only; {operation} is not allowed")


class DuplicateSnapshotError(PayrollVersioningError):
    """A snapshot already exists for the (receipt, version) pair."""

    code = "DUPLICATE_SNAPSHOT"

    def __init__(self, receipt_id: UUID, version: int):
        self.receipt_id = receipt_id
        self.version = version
        super().__init__(
            f"Ruleset snapshot for receipt {receipt_id} version {version} already exists"
        )


# ===== Concurrency =====


class ConcurrentModificationError(PayrollVersioningError):
    """Lost the race for a version slot or a conditional update."""

    code = "CONCURRENT_MODIFICATION"
    retryable = True


class LockTimeoutError(PayrollVersioningError):
    """A row lock could not be acquired within the configured timeout."""

    code = "LOCK_TIMEOUT"
    retryable = True


# ===== Integrity =====


class IntegrityViolationError(PayrollVersioningError):
    """Stored content no longer matches its recorded hash.

    Never retried; requires administrative review.
    """

    code = "INTEGRITY_VIOLATION"

    def __init__(self, receipt_id: UUID, version: int, details: dict[str, Any] | None = None):
        self.receipt_id = receipt_id
        self.version = version
        super().__init__(
            f"Integrity check failed for receipt {receipt_id} version {version}",
            details,
        )
