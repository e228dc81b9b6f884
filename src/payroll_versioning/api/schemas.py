"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from payroll_versioning.config import CriticalAction
from payroll_versioning.models import CreationReason, IntegrityStatus, LineItemKind, ReceiptStatus
from payroll_versioning.providers.base import (
    ComputedReceipt,
    FiscalParameters,
    Formula,
    LineItem,
)
from payroll_versioning.services.diff_engine import ChangeType
from payroll_versioning.services.snapshot_service import DifferenceType, ImpactLevel


# ============================================================================
# Common
# ============================================================================


class ErrorResponse(BaseModel):
    """Error payload; ``code`` is stable per failure mode."""

    detail: str
    code: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Periods & receipts
# ============================================================================


class PeriodCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class PeriodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_id: UUID
    code: str
    status: str
    closed_at: datetime | None = None
    closed_by: str | None = None
    created_at: datetime


class ReceiptCreate(BaseModel):
    employee_id: UUID


class ReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    receipt_id: UUID
    period_id: UUID
    employee_id: UUID
    current_version: int
    status: ReceiptStatus = ReceiptStatus.PENDING


# ============================================================================
# Versions
# ============================================================================


class LineItemPayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    concept_code: str = Field(min_length=1, max_length=32)
    concept_name: str
    amount: Decimal
    kind: LineItemKind


class LineItemResponse(LineItemPayload):
    position: int


class FormulaPayload(BaseModel):
    concept_code: str
    expression: str


class FiscalParametersPayload(BaseModel):
    tax_table_id: str
    social_security_table_id: str
    effective_date: date
    reference_values: dict[str, Decimal] = Field(default_factory=dict)
    subsidy_table_id: str | None = None
    fiscal_year: int | None = None
    period_type: str | None = None
    rounding_mode: str = "HALF_UP"
    decimal_scale: int = 2
    formulas: list[FormulaPayload] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_parameters(self) -> FiscalParameters:
        return FiscalParameters(
            tax_table_id=self.tax_table_id,
            social_security_table_id=self.social_security_table_id,
            effective_date=self.effective_date,
            reference_values=dict(self.reference_values),
            subsidy_table_id=self.subsidy_table_id,
            fiscal_year=self.fiscal_year,
            period_type=self.period_type,
            rounding_mode=self.rounding_mode,
            decimal_scale=self.decimal_scale,
            formulas=tuple(Formula(f.concept_code, f.expression) for f in self.formulas),
            extra=dict(self.extra),
        )

    @classmethod
    def from_parameters(cls, parameters: FiscalParameters) -> FiscalParametersPayload:
        return cls(
            tax_table_id=parameters.tax_table_id,
            social_security_table_id=parameters.social_security_table_id,
            effective_date=parameters.effective_date,
            reference_values=parameters.reference_values,
            subsidy_table_id=parameters.subsidy_table_id,
            fiscal_year=parameters.fiscal_year,
            period_type=parameters.period_type,
            rounding_mode=parameters.rounding_mode,
            decimal_scale=parameters.decimal_scale,
            formulas=[
                FormulaPayload(concept_code=f.concept_code, expression=f.expression)
                for f in parameters.formulas
            ],
            extra=parameters.extra,
        )


class VersionCreate(BaseModel):
    """Schema for appending a receipt version."""

    reason: CreationReason
    created_by: str = Field(min_length=1)
    net_pay: Decimal
    total_perceptions: Decimal
    total_deductions: Decimal
    worked_days: Decimal
    line_items: list[LineItemPayload] = Field(default_factory=list)
    fiscal_parameters: FiscalParametersPayload
    calculated: bool = False

    def to_computed(self) -> ComputedReceipt:
        return ComputedReceipt(
            net_pay=self.net_pay,
            total_perceptions=self.total_perceptions,
            total_deductions=self.total_deductions,
            worked_days=self.worked_days,
            line_items=tuple(
                LineItem(i.concept_code, i.concept_name, i.amount, i.kind)
                for i in self.line_items
            ),
            fiscal_parameters=self.fiscal_parameters.to_parameters(),
        )


class RecalculateRequest(BaseModel):
    requested_by: str = Field(min_length=1)
    reason: CreationReason = CreationReason.RECALCULATION


class VersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    receipt_id: UUID
    version: int
    net_pay: Decimal
    total_perceptions: Decimal
    total_deductions: Decimal
    worked_days: Decimal
    created_reason: str
    created_at: datetime
    created_by: str
    content_hash: str
    line_items: list[LineItemResponse]


class VersionSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version: int
    status: ReceiptStatus
    created_reason: str
    created_at: datetime
    created_by: str
    net_pay: Decimal
    is_current: bool


class ModificationCheckResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    receipt_id: UUID
    can_modify: bool
    current_status: ReceiptStatus
    current_version: int
    reason: str | None = None


class LineItemChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: ChangeType
    concept_code: str
    concept_name: str
    old_amount: Decimal | None = None
    new_amount: Decimal | None = None
    amount: Decimal | None = None


class ComparisonResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    receipt_id: UUID
    version_a: int
    version_b: int
    net_pay_difference: Decimal
    perceptions_difference: Decimal
    deductions_difference: Decimal
    worked_days_difference: Decimal
    perceptions_diff: list[LineItemChangeResponse]
    deductions_diff: list[LineItemChangeResponse]


# ============================================================================
# Status & stamping
# ============================================================================


class TransitionRequest(BaseModel):
    to_status: ReceiptStatus
    actor: str = Field(min_length=1)
    reason: str | None = None


class StampRequest(BaseModel):
    actor: str = Field(min_length=1)


class VersionStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    receipt_id: UUID
    version: int
    status: ReceiptStatus
    updated_at: datetime
    updated_by: str
    status_reason: str | None = None
    stamp_uuid: str | None = None
    stamping_error_code: str | None = None
    stamping_error_message: str | None = None
    stamping_attempts: int


# ============================================================================
# Snapshots & integrity
# ============================================================================


class SnapshotResponse(BaseModel):
    receipt_id: UUID
    version: int
    content_hash: str
    computed_at: datetime
    payload: dict[str, Any]


class IntegrityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    receipt_id: UUID
    version: int
    status: IntegrityStatus
    details: dict[str, Any]


class SnapshotDifferenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    type: DifferenceType
    old_value: Any = None
    new_value: Any = None


class SnapshotComparisonResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    receipt_id: UUID
    version_a: int
    version_b: int
    differences: list[SnapshotDifferenceResponse]
    impact_level: ImpactLevel


class PeriodIntegrityResponse(BaseModel):
    period_id: UUID
    total: int
    verified: int
    corrupted: list[IntegrityResponse]


# ============================================================================
# Authorization
# ============================================================================


class AuthorizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    authorization_id: UUID
    period_id: UUID
    authorized_by: str
    justification: str
    authorized_at: datetime
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    revoke_reason: str | None = None


class StampingIssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    severity: str
    message: str
    resolution: str


class EligibilityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_id: UUID
    eligible: bool
    authorization: AuthorizationResponse | None = None
    corrupted_receipts: list[UUID]
    issues: list[StampingIssueResponse]


class ActionRequest(BaseModel):
    action: CriticalAction
    target_id: UUID
    requested_by: str
    justification: str
    second_approver: str | None = None
    details: dict[str, Any] | None = None


class ConfirmRequest(BaseModel):
    approver: str = Field(min_length=1)


class RejectRequest(BaseModel):
    approver: str = Field(min_length=1)
    reason: str


class ActionRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_id: UUID
    action: str
    target_id: UUID
    requested_by: str
    justification: str
    requires_dual_control: bool
    second_approver: str | None = None
    decided_at: datetime
    outcome: str
    denial_reason: str | None = None
    pending_action_id: UUID | None = None


class PendingActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pending_action_id: UUID
    action: str
    target_id: UUID
    requested_by: str
    justification: str
    status: str
    requested_at: datetime
    expires_at: datetime
    resolved_by: str | None = None


class ActionResponse(BaseModel):
    status: str
    record: ActionRecordResponse | None = None
    pending: PendingActionResponse | None = None
