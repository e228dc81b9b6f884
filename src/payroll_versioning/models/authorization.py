"""Stamping authorization and critical action models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from payroll_versioning.config import CriticalAction
from payroll_versioning.models.base import Base, utcnow


class ActionOutcome(str, Enum):
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class PendingActionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


_ACTIONS = ", ".join(f"'{a.value}'" for a in CriticalAction)


class StampingAuthorization(Base):
    """Permission for a period's receipts to enter stamping.

    At most one active (unrevoked) row per period. Only the ``revoked_*``
    columns may ever change, and only once.
    """

    __tablename__ = "stamping_authorization"

    authorization_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.period_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    authorized_by: Mapped[str] = mapped_column(String(128), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    authorized_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked_by: Mapped[str | None] = mapped_column(String(128))
    revoke_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "length(trim(justification)) > 0",
            name="stamping_authorization_justification_check",
        ),
        Index(
            "stamping_authorization_one_active",
            "period_id",
            unique=True,
            postgresql_where=text("revoked_at IS NULL"),
            sqlite_where=text("revoked_at IS NULL"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


class CriticalActionRecord(Base):
    """Decision on a critical action. Append-only audit ledger."""

    __tablename__ = "critical_action_record"

    record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    requested_by: Mapped[str] = mapped_column(String(128), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    requires_dual_control: Mapped[bool] = mapped_column(Boolean, nullable=False)
    second_approver: Mapped[str | None] = mapped_column(String(128))
    decided_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    denial_reason: Mapped[str | None] = mapped_column(Text)
    pending_action_id: Mapped[UUID | None] = mapped_column()
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    __table_args__ = (
        CheckConstraint(f"action IN ({_ACTIONS})", name="critical_action_action_check"),
        CheckConstraint(
            "outcome IN ('APPROVED', 'DENIED')", name="critical_action_outcome_check"
        ),
        CheckConstraint(
            "outcome <> 'APPROVED' OR requires_dual_control = false OR second_approver IS NOT NULL",
            name="critical_action_second_approver_check",
        ),
    )


class PendingCriticalAction(Base):
    """Dual-control request awaiting a second, distinct approver."""

    __tablename__ = "pending_critical_action"

    pending_action_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    requested_by: Mapped[str] = mapped_column(String(128), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PendingActionStatus.PENDING.value
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(String(128))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(f"action IN ({_ACTIONS})", name="pending_action_action_check"),
        CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'REJECTED', 'EXPIRED')",
            name="pending_action_status_check",
        ),
    )
