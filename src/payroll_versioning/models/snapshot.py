"""Ruleset snapshot and integrity alert models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKeyConstraint,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from payroll_versioning.models.base import Base, utcnow


class IntegrityStatus(str, Enum):
    VERIFIED = "VERIFIED"
    CORRUPTED = "CORRUPTED"


class IntegrityEntity(str, Enum):
    SNAPSHOT = "SNAPSHOT"
    VERSION = "VERSION"


class RulesetSnapshot(Base):
    """Fiscal parameters in effect when a receipt version was computed.

    ``payload`` holds the canonical JSON text that ``content_hash`` was
    computed over. Insert-only.
    """

    __tablename__ = "ruleset_snapshot"

    snapshot_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    receipt_id: Mapped[UUID] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("receipt_id", "version", name="ruleset_snapshot_receipt_version_unique"),
        ForeignKeyConstraint(
            ["receipt_id", "version"],
            ["payroll_receipt_version.receipt_id", "payroll_receipt_version.version"],
            ondelete="RESTRICT",
        ),
    )


class IntegrityAlert(Base):
    """Record of a failed integrity verification. Insert-only."""

    __tablename__ = "integrity_alert"

    alert_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    receipt_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    entity: Mapped[str] = mapped_column(String(16), nullable=False)
    expected_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    actual_hash: Mapped[str | None] = mapped_column(String(64))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    detected_by: Mapped[str] = mapped_column(String(128), nullable=False)
