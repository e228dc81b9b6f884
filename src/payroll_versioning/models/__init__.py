"""SQLAlchemy models for payroll versioning."""

from payroll_versioning.models.base import Base, TimestampMixin, as_utc, utcnow
from payroll_versioning.models.receipt import (
    CreationReason,
    LineItemKind,
    PayrollPeriod,
    PayrollReceipt,
    PeriodStatus,
    ReceiptLineItem,
    ReceiptStatus,
    ReceiptVersion,
    ReceiptVersionState,
)
from payroll_versioning.models.snapshot import (
    IntegrityAlert,
    IntegrityEntity,
    IntegrityStatus,
    RulesetSnapshot,
)
from payroll_versioning.models.authorization import (
    ActionOutcome,
    CriticalActionRecord,
    PendingActionStatus,
    PendingCriticalAction,
    StampingAuthorization,
)
from payroll_versioning.models.immutability import register_immutability_listeners

register_immutability_listeners()

__all__ = [
    "ActionOutcome",
    "Base",
    "CreationReason",
    "CriticalActionRecord",
    "IntegrityAlert",
    "IntegrityEntity",
    "IntegrityStatus",
    "LineItemKind",
    "PayrollPeriod",
    "PayrollReceipt",
    "PendingActionStatus",
    "PendingCriticalAction",
    "PeriodStatus",
    "ReceiptLineItem",
    "ReceiptStatus",
    "ReceiptVersion",
    "ReceiptVersionState",
    "RulesetSnapshot",
    "StampingAuthorization",
    "TimestampMixin",
    "as_utc",
    "utcnow",
]
