"""Fees schemas: template configuration specs, assignment, fee record, payment, late-fee run, report."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.core.enums import (
    DiscountStacking,
    DiscountType,
    FeeFrequency,
    FeeRecordStatus,
    InstallmentStatus,
    LateFeeType,
    OverdueLabelPolicy,
    PaymentMode,
)

DEFAULT_PAYMENT_MODES = [
    PaymentMode.CASH,
    PaymentMode.CHEQUE,
    PaymentMode.BANK_TRANSFER,
    PaymentMode.UPI,
    PaymentMode.CARD,
]


# --- Template configuration (stored as JSON on fee_templates) ---
class FeeComponentSpec(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0)
    frequency: FeeFrequency
    is_optional: bool = False
    is_taxable: bool = False
    tax_percentage: Decimal = Field(Decimal("0"), ge=0, le=100)
    description: Optional[str] = Field(None, max_length=500)


class InstallmentDueSpec(BaseModel):
    installment_number: int = Field(..., ge=1)
    month: int = Field(..., ge=1, le=12)
    day: int = Field(..., ge=1, le=31)
    percentage: Decimal = Field(..., ge=0, le=100)


class InstallmentPlanSpec(BaseModel):
    plan_name: str = Field(..., min_length=1, max_length=50)
    number_of_installments: int = Field(..., ge=0)
    due_dates: List[InstallmentDueSpec] = Field(default_factory=list)


class DiscountRuleSpec(BaseModel):
    """category doubles as the eligibility flag a student must carry (e.g. SIBLING); ALL applies to everyone."""

    name: str = Field(..., min_length=1, max_length=100)
    category: str = Field(..., min_length=1, max_length=50)
    discount_type: DiscountType
    value: Decimal = Field(..., ge=0)
    max_amount: Optional[Decimal] = Field(None, ge=0)
    applicable_to: List[str] = Field(default_factory=lambda: ["all"])
    is_active: bool = True


class LateFeePolicySpec(BaseModel):
    enabled: bool = True
    fee_type: LateFeeType = LateFeeType.PER_DAY
    amount_per_day: Decimal = Field(Decimal("10"), ge=0)
    flat_amount: Decimal = Field(Decimal("100"), ge=0)
    percentage: Decimal = Field(Decimal("1"), ge=0, le=100)
    grace_days: int = Field(5, ge=0)
    max_late_fee: Optional[Decimal] = Field(Decimal("5000"), ge=0)


class PaymentPolicySpec(BaseModel):
    allow_partial_payment: bool = True
    min_partial_amount: Decimal = Field(Decimal("0"), ge=0)
    accepted_payment_modes: List[PaymentMode] = Field(default_factory=lambda: list(DEFAULT_PAYMENT_MODES))
    allow_advance_credit: bool = False


# --- Fee Template ---
class FeeTemplateCreate(BaseModel):
    """discount_stacking and overdue_label_policy have no default: schools must choose them."""

    name: str = Field(..., min_length=1, max_length=150)
    academic_year_id: UUID
    class_id: UUID
    components: List[FeeComponentSpec] = Field(..., min_length=1)
    installment_plans: List[InstallmentPlanSpec] = Field(default_factory=list)
    default_plan: str
    monthly_plan_due_day: Optional[int] = Field(
        None, ge=1, le=31, description="Also generate a twelve-installment \"Monthly\" plan due on this day"
    )
    discount_rules: List[DiscountRuleSpec] = Field(default_factory=list)
    discount_stacking: DiscountStacking
    overdue_label_policy: OverdueLabelPolicy
    late_fee_policy: LateFeePolicySpec = Field(default_factory=LateFeePolicySpec)
    payment_policy: PaymentPolicySpec = Field(default_factory=PaymentPolicySpec)
    notes: Optional[str] = Field(None, max_length=1000)


class FeeTemplateResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    name: str
    academic_year_id: UUID
    class_id: UUID
    components: List[FeeComponentSpec]
    installment_plans: List[InstallmentPlanSpec]
    default_plan: str
    discount_rules: List[DiscountRuleSpec]
    discount_stacking: DiscountStacking
    overdue_label_policy: OverdueLabelPolicy
    late_fee_policy: LateFeePolicySpec
    payment_policy: PaymentPolicySpec
    total_mandatory_fee: Decimal
    notes: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class FeeTemplateUpdate(BaseModel):
    """Omitted fields keep their value. Components, plans and discount settings are frozen once assigned."""

    name: Optional[str] = Field(None, min_length=1, max_length=150)
    components: Optional[List[FeeComponentSpec]] = Field(None, min_length=1)
    installment_plans: Optional[List[InstallmentPlanSpec]] = Field(None, min_length=1)
    default_plan: Optional[str] = None
    discount_rules: Optional[List[DiscountRuleSpec]] = None
    discount_stacking: Optional[DiscountStacking] = None
    overdue_label_policy: Optional[OverdueLabelPolicy] = None
    late_fee_policy: Optional[LateFeePolicySpec] = None
    payment_policy: Optional[PaymentPolicySpec] = None
    notes: Optional[str] = Field(None, max_length=1000)


# --- Assignment ---
class AssignTemplateRequest(BaseModel):
    student_id: Optional[UUID] = None
    class_id: Optional[UUID] = None
    installment_plan: Optional[str] = Field(None, description="Defaults to the template's default plan")
    selected_optional: List[str] = Field(default_factory=list, description="Optional component names to include")

    @model_validator(mode="after")
    def validate_target(self) -> "AssignTemplateRequest":
        if (self.student_id is None) == (self.class_id is None):
            raise ValueError("Provide exactly one of student_id or class_id")
        return self


class AssignmentFailure(BaseModel):
    student_id: UUID
    reason: str


class AssignmentResult(BaseModel):
    succeeded: List[UUID] = Field(default_factory=list)
    failed: List[AssignmentFailure] = Field(default_factory=list)
    fee_record_ids: List[UUID] = Field(default_factory=list)


# --- Fee Record ---
class FeeInstallmentResponse(BaseModel):
    installment_number: int
    name: str
    due_date: date
    amount: Decimal
    amount_paid: Decimal
    late_fee: Decimal
    late_fee_paid: Decimal
    outstanding: Decimal
    status: InstallmentStatus
    is_overdue: bool
    paid_on: Optional[datetime] = None


class FeeRecordResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    student_id: UUID
    class_id: UUID
    academic_year_id: UUID
    fee_template_id: UUID
    installment_plan: str
    component_breakdown: List[Dict[str, Any]]
    applied_discounts: List[Dict[str, Any]]
    gross_amount: Decimal
    total_discount: Decimal
    total_tax: Decimal
    concession_amount: Decimal
    concession_reason: Optional[str] = None
    concession_approved_by: Optional[UUID] = None
    concession_approved_on: Optional[datetime] = None
    net_fee_amount: Decimal
    total_paid: Decimal
    total_late_fee: Decimal
    balance: Decimal
    advance_credit: Decimal
    overall_status: FeeRecordStatus
    payment_percentage: Decimal
    last_payment_date: Optional[datetime] = None
    next_due_date: Optional[date] = None
    next_due_amount: Decimal
    is_active: bool
    superseded_by_id: Optional[UUID] = None
    version: int
    installments: List[FeeInstallmentResponse]
    created_at: datetime
    updated_at: datetime


# --- Adjustments ---
class FeeDiscountCreate(BaseModel):
    """A discount granted to one student after assignment. Percentage is taken on the current net fee."""

    name: str = Field(..., min_length=1, max_length=100)
    discount_type: DiscountType
    value: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    remarks: Optional[str] = Field(None, max_length=500)


class FeeConcessionCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=500)


# --- Payment ---
class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    payment_mode: str = Field(..., description="Cash, Cheque, Bank Transfer, UPI, Card, Net Banking, Online Gateway")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="cheque_number, transaction_id, bank_name, ...")
    idempotency_key: str = Field(..., min_length=1, max_length=128, description="e.g. gateway transaction id")
    paid_at: Optional[datetime] = None


class PaymentReverseRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    idempotency_key: str = Field(..., min_length=1, max_length=128)


class PaymentAllocationItem(BaseModel):
    installment_number: int
    installment_name: str
    principal_applied: Decimal
    late_fee_applied: Decimal


class PaymentResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    fee_record_id: UUID
    student_id: UUID
    receipt_number: str
    idempotency_key: str
    amount: Decimal
    principal_amount: Decimal
    late_fee_amount: Decimal
    advance_credit_amount: Decimal
    payment_mode: str
    metadata: Dict[str, Any]
    allocations: List[PaymentAllocationItem]
    reverses_payment_id: Optional[UUID] = None
    reason: Optional[str] = None
    paid_at: datetime
    recorded_by: Optional[UUID] = None
    created_at: datetime


# --- Late fee run ---
class LateFeeRecomputeRequest(BaseModel):
    as_of: Optional[date] = None


class LateFeeRunResponse(BaseModel):
    as_of: date
    processed: int
    updated: int
    failed: List[UUID] = Field(default_factory=list)


# --- Report ---
class ClassSummaryResponse(BaseModel):
    class_id: UUID
    class_name: Optional[str] = None
    total_students: int
    total_fee: Decimal
    total_collected: Decimal
    total_pending: Decimal
    total_late_fee: Decimal
    collection_percentage: Decimal
    overdue_count: int


class CollectionSummaryResponse(BaseModel):
    total_students: int
    total_fee: Decimal
    total_discount: Decimal
    total_collected: Decimal
    total_pending: Decimal
    total_late_fee: Decimal
    collection_percentage: Decimal
    status_counts: Dict[str, int]


class ClassWiseCollectionItem(BaseModel):
    class_id: UUID
    class_name: Optional[str] = None
    total_students: int
    total_fee: Decimal
    total_collected: Decimal
    total_pending: Decimal
    collection_percentage: Decimal


class PaymentModeSummaryItem(BaseModel):
    payment_mode: str
    total_amount: Decimal
    count: int


class OverdueStudentItem(BaseModel):
    fee_record_id: UUID
    student_id: UUID
    student_name: Optional[str] = None
    class_id: UUID
    class_name: Optional[str] = None
    overall_status: FeeRecordStatus
    balance: Decimal
    total_late_fee: Decimal
    overdue_installments: int
    oldest_due_date: date
    days_overdue: int


class UpcomingDueItem(BaseModel):
    fee_record_id: UUID
    student_id: UUID
    student_name: Optional[str] = None
    class_id: UUID
    next_due_date: date
    next_due_amount: Decimal


class CollectorSummaryItem(BaseModel):
    recorded_by: Optional[UUID] = None
    total_collected: Decimal
    payment_count: int
    cash_amount: Decimal
    online_amount: Decimal
