"""Receipt version state machine with transition validation."""

from __future__ import annotations

from payroll_versioning.config import CriticalAction
from payroll_versioning.exceptions import InvalidTransitionError
from payroll_versioning.models.receipt import ReceiptStatus


class ReceiptStateMachine:
    """State machine for receipt version status transitions.

    Allowed transitions:
    - PENDING → CALCULATING
    - CALCULATING → CALCULATED
    - CALCULATED → APPROVED
    - APPROVED → STAMPING
    - STAMPING → STAMP_OK | STAMP_ERROR (set from the provider's response only)
    - STAMP_OK → PAID
    - STAMP_ERROR → STAMPING (retry, critical)
    - PENDING | CALCULATED | APPROVED → CANCELLED (administrative)
    - STAMP_OK → CANCELLED (stamped document cancellation, critical)

    SUPERSEDED is never reached through a transition; the version store
    sets it when a newer version is written.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        ReceiptStatus.PENDING: [ReceiptStatus.CALCULATING, ReceiptStatus.CANCELLED],
        ReceiptStatus.CALCULATING: [ReceiptStatus.CALCULATED],
        ReceiptStatus.CALCULATED: [ReceiptStatus.APPROVED, ReceiptStatus.CANCELLED],
        ReceiptStatus.APPROVED: [ReceiptStatus.STAMPING, ReceiptStatus.CANCELLED],
        ReceiptStatus.STAMPING: [ReceiptStatus.STAMP_OK, ReceiptStatus.STAMP_ERROR],
        ReceiptStatus.STAMP_OK: [ReceiptStatus.PAID, ReceiptStatus.CANCELLED],
        ReceiptStatus.STAMP_ERROR: [ReceiptStatus.STAMPING],
        ReceiptStatus.PAID: [],  # Terminal
        ReceiptStatus.CANCELLED: [],  # Terminal
        ReceiptStatus.SUPERSEDED: [],  # Terminal
    }

    # Transitions that only an approved critical action may perform
    CRITICAL_TRANSITIONS: dict[tuple[str, str], CriticalAction] = {
        (ReceiptStatus.STAMP_ERROR, ReceiptStatus.STAMPING): CriticalAction.RETRY_STAMPING,
        (ReceiptStatus.STAMP_OK, ReceiptStatus.CANCELLED): CriticalAction.CANCEL_CFDI,
    }

    # Statuses where the receipt may still be changed by a new version
    MODIFIABLE = {
        ReceiptStatus.PENDING,
        ReceiptStatus.CALCULATED,
        ReceiptStatus.APPROVED,
    }

    # Statuses that block a new version unless overridden by RECALCULATE
    VERSION_LOCKED = {
        ReceiptStatus.STAMP_OK,
        ReceiptStatus.PAID,
    }

    # Statuses a superseded predecessor keeps (never overwritten)
    NOT_SUPERSEDABLE = {
        ReceiptStatus.PAID,
        ReceiptStatus.CANCELLED,
    }

    # Statuses that count as finished when closing a period
    SETTLED = {
        ReceiptStatus.STAMP_OK,
        ReceiptStatus.PAID,
        ReceiptStatus.CANCELLED,
    }

    # Statuses that block stamping authorization (calculation still running)
    IN_CALCULATION = {
        ReceiptStatus.CALCULATING,
    }

    # Outcomes only the stamping provider's response may set
    PROVIDER_ONLY = {
        (ReceiptStatus.STAMPING, ReceiptStatus.STAMP_OK),
        (ReceiptStatus.STAMPING, ReceiptStatus.STAMP_ERROR),
    }

    TERMINAL = {
        ReceiptStatus.PAID,
        ReceiptStatus.CANCELLED,
        ReceiptStatus.SUPERSEDED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def required_action(cls, from_status: str, to_status: str) -> CriticalAction | None:
        """Critical action that must authorize this transition, if any."""
        return cls.CRITICAL_TRANSITIONS.get(
            (ReceiptStatus(from_status), ReceiptStatus(to_status))
        )

    @classmethod
    def is_provider_only(cls, from_status: str, to_status: str) -> bool:
        """True when only a stamping provider response may make this move."""
        return (ReceiptStatus(from_status), ReceiptStatus(to_status)) in cls.PROVIDER_ONLY

    @classmethod
    def can_modify(cls, status: str) -> bool:
        """Check if a receipt in this status may still be changed."""
        return status in cls.MODIFIABLE

    @classmethod
    def blocks_new_version(cls, status: str) -> bool:
        return status in cls.VERSION_LOCKED

    @classmethod
    def is_supersedable(cls, status: str) -> bool:
        return status not in cls.NOT_SUPERSEDABLE

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])
