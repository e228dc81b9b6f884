"""Payroll period, receipt, version and line item models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_versioning.models.base import Base, TimestampMixin, utcnow


class PeriodStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ReceiptStatus(str, Enum):
    """Status of a single receipt version."""

    PENDING = "PENDING"
    CALCULATING = "CALCULATING"
    CALCULATED = "CALCULATED"
    APPROVED = "APPROVED"
    STAMPING = "STAMPING"
    STAMP_OK = "STAMP_OK"
    STAMP_ERROR = "STAMP_ERROR"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    SUPERSEDED = "SUPERSEDED"


class CreationReason(str, Enum):
    """Why a receipt version was created."""

    INITIAL = "INITIAL"
    RECALCULATION = "RECALCULATION"
    CORRECTION = "CORRECTION"
    INCIDENT_UPDATE = "INCIDENT_UPDATE"
    DATA_UPDATE = "DATA_UPDATE"


class LineItemKind(str, Enum):
    PERCEPTION = "PERCEPTION"
    DEDUCTION = "DEDUCTION"


def _in_check(column: str, enum: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum)
    return f"{column} IN ({values})"


# ===== Periods & Receipts =====


class PayrollPeriod(Base, TimestampMixin):
    """A payroll period; owner of receipts and stamping authorizations."""

    __tablename__ = "payroll_period"

    period_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PeriodStatus.OPEN.value
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by: Mapped[str | None] = mapped_column(String(128))

    __table_args__ = (
        CheckConstraint(_in_check("status", PeriodStatus), name="payroll_period_status_check"),
    )

    receipts: Mapped[list[PayrollReceipt]] = relationship(back_populates="period")


class PayrollReceipt(Base, TimestampMixin):
    """One employee's receipt for one period.

    ``current_version`` is the explicit pointer to the live version. It is
    0 until the first version is written and only the version store moves
    it, in the same transaction that writes the new version.
    """

    __tablename__ = "payroll_receipt"

    receipt_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.period_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[UUID] = mapped_column(nullable=False)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("period_id", "employee_id", name="payroll_receipt_period_employee_unique"),
        CheckConstraint("current_version >= 0", name="payroll_receipt_current_version_check"),
    )

    period: Mapped[PayrollPeriod] = relationship(back_populates="receipts")


# ===== Versions (insert-only) =====


class ReceiptVersion(Base):
    """Immutable computed amounts of a receipt at one point in time."""

    __tablename__ = "payroll_receipt_version"

    receipt_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_receipt.receipt_id", ondelete="RESTRICT"),
        primary_key=True,
    )
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    net_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_perceptions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    worked_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    created_reason: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        CheckConstraint("version >= 1", name="payroll_receipt_version_positive"),
        CheckConstraint(
            _in_check("created_reason", CreationReason),
            name="payroll_receipt_version_reason_check",
        ),
    )

    line_items: Mapped[list[ReceiptLineItem]] = relationship(
        order_by="ReceiptLineItem.position",
        lazy="selectin",
        cascade="save-update, merge",
    )

    def hash_payload(self, line_items: list[ReceiptLineItem] | None = None) -> dict:
        """Content covered by ``content_hash``."""
        items = self.line_items if line_items is None else line_items
        return {
            "receipt_id": self.receipt_id,
            "version": self.version,
            "net_pay": self.net_pay,
            "total_perceptions": self.total_perceptions,
            "total_deductions": self.total_deductions,
            "worked_days": self.worked_days,
            "created_reason": self.created_reason,
            "line_items": [item.hash_payload() for item in items],
        }


class ReceiptLineItem(Base):
    """One perception or deduction line of a receipt version."""

    __tablename__ = "payroll_receipt_line_item"

    receipt_id: Mapped[UUID] = mapped_column(primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    concept_code: Mapped[str] = mapped_column(String(32), nullable=False)
    concept_name: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)

    __table_args__ = (
        ForeignKeyConstraint(
            ["receipt_id", "version"],
            ["payroll_receipt_version.receipt_id", "payroll_receipt_version.version"],
            ondelete="RESTRICT",
        ),
        CheckConstraint(_in_check("kind", LineItemKind), name="payroll_line_item_kind_check"),
    )

    def hash_payload(self) -> dict:
        return {
            "position": self.position,
            "concept_code": self.concept_code,
            "concept_name": self.concept_name,
            "amount": self.amount,
            "kind": self.kind,
        }


# ===== Status projection (mutable) =====


class ReceiptVersionState(Base):
    """Mutable lifecycle status of one receipt version."""

    __tablename__ = "payroll_receipt_version_state"

    receipt_id: Mapped[UUID] = mapped_column(primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_by: Mapped[str] = mapped_column(String(128), nullable=False)
    status_reason: Mapped[str | None] = mapped_column(Text)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Stamping outcome
    stamp_uuid: Mapped[str | None] = mapped_column(String(64))
    stamp_xml_sha256: Mapped[str | None] = mapped_column(String(64))
    stamping_error_code: Mapped[str | None] = mapped_column(String(64))
    stamping_error_message: Mapped[str | None] = mapped_column(Text)
    stamping_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_stamping_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        ForeignKeyConstraint(
            ["receipt_id", "version"],
            ["payroll_receipt_version.receipt_id", "payroll_receipt_version.version"],
            ondelete="RESTRICT",
        ),
        CheckConstraint(_in_check("status", ReceiptStatus), name="payroll_version_state_status_check"),
    )
