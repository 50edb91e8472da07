"""Fees service: templates, assignment, payments, reversals, late-fee accrual. Financial writes are audited."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.enums import (
    DiscountStacking,
    DiscountType,
    FeeRecordStatus,
    InstallmentStatus,
    OverdueLabelPolicy,
    PaymentMode,
)
from app.core.exceptions import (
    AccrualError,
    ConflictError,
    InvalidDiscountRule,
    InvalidPlan,
    NotFoundError,
    PolicyViolationError,
    ServiceError,
    ValidationError,
)
from app.core.models import AcademicYear, FeeAuditLog, FeeInstallment, FeePayment, FeeRecord, FeeTemplate, SchoolClass

from . import directory
from .allocator import INTERNAL_MODES, outstanding, plan_allocation, validate_payment
from .discounts import resolve_discounts, validate_discount_rules
from .ledger import (
    accrue_late_fees,
    apply_allocation,
    apply_reversal,
    effective_status,
    reduce_net_fee,
    refresh_record_totals,
)
from .money import CENT, HUNDRED, ZERO, to_decimal, to_money
from .reports import invalidate_report_cache
from .schedule import build_schedule, monthly_plan, validate_plan
from .schemas import (
    AssignmentFailure,
    AssignmentResult,
    AssignTemplateRequest,
    DiscountRuleSpec,
    FeeComponentSpec,
    FeeConcessionCreate,
    FeeDiscountCreate,
    FeeInstallmentResponse,
    FeeRecordResponse,
    FeeTemplateCreate,
    FeeTemplateResponse,
    FeeTemplateUpdate,
    InstallmentPlanSpec,
    LateFeePolicySpec,
    LateFeeRunResponse,
    PaymentAllocationItem,
    PaymentCreate,
    PaymentPolicySpec,
    PaymentResponse,
    PaymentReverseRequest,
)
from .state import is_overdue, record_status

logger = logging.getLogger(__name__)

ACTIVE_ACADEMIC_YEAR = "ACTIVE"
ADHOC_DISCOUNT_CATEGORY = "ADHOC"


def _to_uuid(val):
    if val is None:
        return None
    return val if isinstance(val, UUID) else UUID(str(val))


def _as_utc(val: datetime) -> datetime:
    # sqlite hands back naive datetimes for timezone-aware columns
    return val if val.tzinfo is not None else val.replace(tzinfo=timezone.utc)


def _receipt_number(paid_at: datetime) -> str:
    return f"{settings.receipt_prefix}-{paid_at:%Y%m}-{uuid.uuid4().hex[:8].upper()}"


# --- Audit helper ---
async def _log_fee_audit(
    db: AsyncSession,
    tenant_id: UUID,
    reference_table: str,
    reference_id: UUID,
    action_type: str,
    old_value: Optional[dict],
    new_value: Optional[dict],
    changed_by: Optional[UUID],
) -> None:
    log = FeeAuditLog(
        tenant_id=tenant_id,
        reference_table=reference_table,
        reference_id=reference_id,
        action_type=action_type,
        old_value=old_value,
        new_value=new_value,
        changed_by=changed_by,
    )
    db.add(log)


def _record_snapshot(record: FeeRecord) -> dict:
    return {
        "overall_status": record.overall_status,
        "net_fee_amount": str(to_money(record.net_fee_amount)),
        "total_paid": str(to_money(record.total_paid)),
        "total_late_fee": str(to_money(record.total_late_fee)),
        "balance": str(to_money(record.balance)),
        "advance_credit": str(to_money(record.advance_credit)),
    }


# --- Template configuration ---
@dataclass
class TemplateConfig:
    components: List[FeeComponentSpec]
    installment_plans: List[InstallmentPlanSpec]
    default_plan: str
    discount_rules: List[DiscountRuleSpec]
    discount_stacking: DiscountStacking
    overdue_label_policy: OverdueLabelPolicy
    late_fee_policy: LateFeePolicySpec
    payment_policy: PaymentPolicySpec

    def plan(self, name: Optional[str] = None) -> InstallmentPlanSpec:
        name = name or self.default_plan
        for plan in self.installment_plans:
            if plan.plan_name == name:
                return plan
        raise InvalidPlan(f"Installment plan '{name}' is not defined on this fee template")

    @property
    def grace_days(self) -> int:
        return self.late_fee_policy.grace_days

    @property
    def total_mandatory_fee(self) -> Decimal:
        return sum((to_money(c.amount) for c in self.components if not c.is_optional), ZERO)


def _template_config(template: FeeTemplate) -> TemplateConfig:
    return TemplateConfig(
        components=[FeeComponentSpec.model_validate(c) for c in template.components or []],
        installment_plans=[InstallmentPlanSpec.model_validate(p) for p in template.installment_plans or []],
        default_plan=template.default_plan,
        discount_rules=[DiscountRuleSpec.model_validate(r) for r in template.discount_rules or []],
        discount_stacking=DiscountStacking(template.discount_stacking),
        overdue_label_policy=OverdueLabelPolicy(template.overdue_label_policy),
        late_fee_policy=LateFeePolicySpec.model_validate(template.late_fee_policy or {}),
        payment_policy=PaymentPolicySpec.model_validate(template.payment_policy or {}),
    )


def _validate_template_payload(payload: FeeTemplateCreate) -> None:
    names = [c.name.strip() for c in payload.components]
    if len(set(names)) != len(names):
        raise ValidationError("Fee component names must be unique within a template")

    if not payload.installment_plans:
        raise InvalidPlan("A fee template needs at least one installment plan")
    plan_names = [p.plan_name for p in payload.installment_plans]
    if len(set(plan_names)) != len(plan_names):
        raise InvalidPlan("Installment plan names must be unique within a template")
    for plan in payload.installment_plans:
        validate_plan(plan)
    if payload.default_plan not in plan_names:
        raise InvalidPlan(f"Default plan '{payload.default_plan}' is not one of the template's plans")

    validate_discount_rules(payload.components, payload.discount_rules)

    modes = payload.payment_policy.accepted_payment_modes
    if not modes:
        raise ValidationError("At least one payment mode must be accepted")
    internal = [m.value for m in modes if m in INTERNAL_MODES]
    if internal:
        raise ValidationError(f"Payment modes reserved for internal use: {', '.join(internal)}")


def _template_to_response(template: FeeTemplate) -> FeeTemplateResponse:
    config = _template_config(template)
    return FeeTemplateResponse(
        id=_to_uuid(template.id),
        tenant_id=_to_uuid(template.tenant_id),
        name=template.name,
        academic_year_id=_to_uuid(template.academic_year_id),
        class_id=_to_uuid(template.class_id),
        components=config.components,
        installment_plans=config.installment_plans,
        default_plan=config.default_plan,
        discount_rules=config.discount_rules,
        discount_stacking=config.discount_stacking,
        overdue_label_policy=config.overdue_label_policy,
        late_fee_policy=config.late_fee_policy,
        payment_policy=config.payment_policy,
        total_mandatory_fee=config.total_mandatory_fee,
        notes=template.notes,
        is_active=template.is_active,
        created_at=template.created_at,
        updated_at=template.updated_at,
    )


async def _get_template(db: AsyncSession, tenant_id: UUID, template_id: UUID) -> FeeTemplate:
    template = (
        await db.execute(
            select(FeeTemplate).where(
                FeeTemplate.id == template_id,
                FeeTemplate.tenant_id == tenant_id,
            )
        )
    ).scalar_one_or_none()
    if not template:
        raise NotFoundError("Fee template not found")
    return template


STRUCTURAL_TEMPLATE_FIELDS = ("components", "installment_plans", "discount_rules", "discount_stacking")


def _template_columns(payload: FeeTemplateCreate) -> dict:
    return {
        "name": payload.name.strip(),
        "components": [c.model_dump(mode="json") for c in payload.components],
        "installment_plans": [p.model_dump(mode="json") for p in payload.installment_plans],
        "default_plan": payload.default_plan,
        "discount_rules": [r.model_dump(mode="json") for r in payload.discount_rules],
        "discount_stacking": payload.discount_stacking.value,
        "overdue_label_policy": payload.overdue_label_policy.value,
        "late_fee_policy": payload.late_fee_policy.model_dump(mode="json"),
        "payment_policy": payload.payment_policy.model_dump(mode="json"),
        "notes": (payload.notes or "").strip() or None,
    }


async def create_fee_template(
    db: AsyncSession,
    tenant_id: UUID,
    payload: FeeTemplateCreate,
    created_by: Optional[UUID],
) -> FeeTemplateResponse:
    ay = await db.get(AcademicYear, payload.academic_year_id)
    if not ay or ay.tenant_id != tenant_id:
        raise ValidationError("Invalid academic year")
    if ay.status != ACTIVE_ACADEMIC_YEAR:
        raise ValidationError("Cannot create a fee template for a CLOSED academic year")
    cl = await db.get(SchoolClass, payload.class_id)
    if not cl or cl.tenant_id != tenant_id:
        raise ValidationError("Invalid class")
    if payload.monthly_plan_due_day is not None:
        generated = monthly_plan(ay.start_date, day=payload.monthly_plan_due_day)
        if any(p.plan_name == generated.plan_name for p in payload.installment_plans):
            raise InvalidPlan(f"Template already defines a '{generated.plan_name}' plan")
        payload = payload.model_copy(update={"installment_plans": [*payload.installment_plans, generated]})
    _validate_template_payload(payload)

    template = FeeTemplate(
        tenant_id=tenant_id,
        academic_year_id=payload.academic_year_id,
        class_id=payload.class_id,
        is_active=True,
        created_by=created_by,
        **_template_columns(payload),
    )
    db.add(template)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A fee template with this name already exists")
    await _log_fee_audit(
        db, tenant_id, "fee_templates", template.id,
        "CREATE",
        None,
        {
            "name": template.name,
            "class_id": str(payload.class_id),
            "academic_year_id": str(payload.academic_year_id),
            "default_plan": payload.default_plan,
        },
        created_by,
    )
    await db.commit()
    await db.refresh(template)
    logger.info("Created fee template %s (%s) for class %s", template.id, template.name, template.class_id)
    return _template_to_response(template)


async def get_fee_template(db: AsyncSession, tenant_id: UUID, template_id: UUID) -> FeeTemplateResponse:
    return _template_to_response(await _get_template(db, tenant_id, template_id))


async def list_fee_templates(
    db: AsyncSession,
    tenant_id: UUID,
    academic_year_id: Optional[UUID] = None,
    class_id: Optional[UUID] = None,
    active_only: bool = True,
) -> List[FeeTemplateResponse]:
    stmt = select(FeeTemplate).where(FeeTemplate.tenant_id == tenant_id)
    if academic_year_id is not None:
        stmt = stmt.where(FeeTemplate.academic_year_id == academic_year_id)
    if class_id is not None:
        stmt = stmt.where(FeeTemplate.class_id == class_id)
    if active_only:
        stmt = stmt.where(FeeTemplate.is_active.is_(True))
    stmt = stmt.order_by(FeeTemplate.name)
    result = await db.execute(stmt)
    return [_template_to_response(t) for t in result.scalars().all()]


async def update_fee_template(
    db: AsyncSession,
    tenant_id: UUID,
    template_id: UUID,
    payload: FeeTemplateUpdate,
    changed_by: Optional[UUID],
) -> FeeTemplateResponse:
    """
    Partial update. Name, notes, default plan and the label, late-fee and payment policies can change at any
    time and apply to existing records from their next evaluation. The fields that shape assigned amounts
    are frozen once any fee record references the template.
    """
    template = await _get_template(db, tenant_id, template_id)
    ay = template.academic_year
    if not ay or ay.status != ACTIVE_ACADEMIC_YEAR:
        raise ValidationError("Cannot change a fee template for a CLOSED academic year")

    changes = {name: getattr(payload, name) for name in payload.model_fields_set if getattr(payload, name) is not None}
    structural = [name for name in STRUCTURAL_TEMPLATE_FIELDS if name in changes]
    if structural:
        assigned = (
            await db.execute(select(func.count(FeeRecord.id)).where(FeeRecord.fee_template_id == template.id))
        ).scalar_one()
        if assigned:
            raise ConflictError(
                f"Fee template is assigned to {assigned} student(s); {', '.join(structural)} can no longer change"
            )

    config = _template_config(template)
    merged = FeeTemplateCreate(
        name=changes.get("name", template.name),
        academic_year_id=template.academic_year_id,
        class_id=template.class_id,
        components=changes.get("components", config.components),
        installment_plans=changes.get("installment_plans", config.installment_plans),
        default_plan=changes.get("default_plan", config.default_plan),
        discount_rules=changes.get("discount_rules", config.discount_rules),
        discount_stacking=changes.get("discount_stacking", config.discount_stacking),
        overdue_label_policy=changes.get("overdue_label_policy", config.overdue_label_policy),
        late_fee_policy=changes.get("late_fee_policy", config.late_fee_policy),
        payment_policy=changes.get("payment_policy", config.payment_policy),
        notes=changes.get("notes", template.notes),
    )
    _validate_template_payload(merged)

    old_value, new_value = {}, {}
    for column, value in _template_columns(merged).items():
        current = getattr(template, column)
        if current != value:
            old_value[column] = current
            new_value[column] = value
            setattr(template, column, value)
    if not new_value:
        return _template_to_response(template)

    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("A fee template with this name already exists")
    await _log_fee_audit(db, tenant_id, "fee_templates", template.id, "UPDATE", old_value, new_value, changed_by)
    await db.commit()
    await db.refresh(template)
    # Grace days and label policy feed the class summaries
    invalidate_report_cache(tenant_id)
    logger.info("Updated fee template %s: %s", template.id, ", ".join(sorted(new_value)))
    return _template_to_response(template)


async def deactivate_fee_template(
    db: AsyncSession,
    tenant_id: UUID,
    template_id: UUID,
    changed_by: Optional[UUID],
) -> FeeTemplateResponse:
    """Blocks new assignments only; fee records already built from the template are untouched."""
    template = await _get_template(db, tenant_id, template_id)
    if template.is_active:
        template.is_active = False
        await _log_fee_audit(
            db, tenant_id, "fee_templates", template.id,
            "DEACTIVATE",
            {"is_active": True},
            {"is_active": False},
            changed_by,
        )
        await db.commit()
        await db.refresh(template)
    return _template_to_response(template)


# --- Assignment ---
@dataclass
class _AssignmentContext:
    """Plain values only: a per-student rollback expires every ORM object in the session."""

    tenant_id: UUID
    template_id: UUID
    academic_year_id: UUID
    academic_year_start: date
    class_id: UUID
    config: TemplateConfig
    plan: InstallmentPlanSpec
    selected_optional: List[str]
    assigned_by: Optional[UUID]
    as_of: date


@dataclass
class _Enrollment:
    student_id: UUID
    class_id: UUID
    eligibility_flags: List[str] = field(default_factory=list)


def _enrollment_of(row) -> _Enrollment:
    return _Enrollment(
        student_id=_to_uuid(row.student_id),
        class_id=_to_uuid(row.class_id),
        eligibility_flags=list(row.eligibility_flags or []),
    )


async def _find_record(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    academic_year_id: UUID,
) -> Optional[FeeRecord]:
    result = await db.execute(
        select(FeeRecord).where(
            FeeRecord.tenant_id == tenant_id,
            FeeRecord.student_id == student_id,
            FeeRecord.academic_year_id == academic_year_id,
        )
    )
    return result.scalar_one_or_none()


def _existing_assignment(record: FeeRecord, ctx: _AssignmentContext) -> UUID:
    if record.fee_template_id != ctx.template_id:
        raise ConflictError("A different fee template is already assigned to this student for the academic year")
    logger.info("Student %s already has fee record %s for this template", record.student_id, record.id)
    return record.id


async def _apply_advance_credit(
    db: AsyncSession,
    ctx: _AssignmentContext,
    previous: FeeRecord,
    record: FeeRecord,
    credit: Decimal,
) -> None:
    """Carry an earlier year's advance credit onto the new record as its first allocation, dated the assignment day."""
    paid_at = datetime.combine(ctx.as_of, time.min, tzinfo=timezone.utc)
    plan = plan_allocation(record.installments, credit)
    apply_allocation(record, plan, paid_at)
    record.advance_credit = to_money(plan.remainder)
    refresh_record_totals(record, ctx.as_of, ctx.config.grace_days, ctx.config.overdue_label_policy)
    record.last_payment_date = paid_at
    payment = FeePayment(
        tenant_id=ctx.tenant_id,
        fee_record_id=record.id,
        student_id=record.student_id,
        receipt_number=_receipt_number(paid_at),
        idempotency_key=f"advance-credit:{previous.id}",
        amount=to_money(credit),
        principal_amount=to_money(plan.principal_total),
        late_fee_amount=to_money(plan.late_fee_total),
        advance_credit_amount=to_money(plan.remainder),
        payment_mode=PaymentMode.ADVANCE_CREDIT.value,
        payment_metadata={"source_fee_record_id": str(previous.id)},
        allocations=[line.as_dict() for line in plan.lines],
        paid_at=paid_at,
        recorded_by=ctx.assigned_by,
    )
    db.add(payment)
    await db.flush()
    await _log_fee_audit(
        db, ctx.tenant_id, "fee_payments", payment.id,
        "ADVANCE_CREDIT",
        None,
        {"amount": str(payment.amount), "source_fee_record_id": str(previous.id), "receipt_number": payment.receipt_number},
        ctx.assigned_by,
    )


async def _supersede_previous(db: AsyncSession, ctx: _AssignmentContext, record: FeeRecord) -> None:
    result = await db.execute(
        select(FeeRecord)
        .join(AcademicYear, FeeRecord.academic_year_id == AcademicYear.id)
        .where(
            FeeRecord.tenant_id == ctx.tenant_id,
            FeeRecord.student_id == record.student_id,
            FeeRecord.is_active.is_(True),
            FeeRecord.id != record.id,
            AcademicYear.start_date < ctx.academic_year_start,
        )
    )
    for previous in result.scalars().all():
        credit = to_decimal(previous.advance_credit)
        old = _record_snapshot(previous)
        previous.is_active = False
        previous.superseded_by_id = record.id
        previous.advance_credit = ZERO
        previous.updated_at = datetime.utcnow()
        await _log_fee_audit(
            db, ctx.tenant_id, "fee_records", previous.id,
            "SUPERSEDE",
            old,
            {"is_active": False, "superseded_by_id": str(record.id), "advance_credit_carried": str(credit)},
            ctx.assigned_by,
        )
        if credit > ZERO:
            await _apply_advance_credit(db, ctx, previous, record, credit)


async def _assign_to_student(db: AsyncSession, ctx: _AssignmentContext, enrollment: _Enrollment) -> UUID:
    """Create (or return) one student's fee record and commit. Returns the fee record id."""
    existing = await _find_record(db, ctx.tenant_id, enrollment.student_id, ctx.academic_year_id)
    if existing is not None:
        return _existing_assignment(existing, ctx)

    resolution = resolve_discounts(
        ctx.config.components,
        ctx.config.discount_rules,
        enrollment.eligibility_flags,
        ctx.config.discount_stacking,
        ctx.selected_optional,
    )
    net_total = to_money(resolution.net_total)
    schedule = build_schedule(net_total, ctx.plan, ctx.academic_year_start, settings.fee_rounding_unit)

    record = FeeRecord(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        student_id=enrollment.student_id,
        class_id=enrollment.class_id,
        academic_year_id=ctx.academic_year_id,
        fee_template_id=ctx.template_id,
        installment_plan=ctx.plan.plan_name,
        component_breakdown=[line.as_dict() for line in resolution.lines],
        applied_discounts=[d.as_dict() for d in resolution.applied],
        gross_amount=to_money(resolution.gross_total),
        total_discount=to_money(resolution.total_discount),
        total_tax=to_money(resolution.total_tax),
        concession_amount=ZERO,
        net_fee_amount=net_total,
        total_paid=ZERO,
        total_late_fee=ZERO,
        balance=net_total,
        advance_credit=ZERO,
        overall_status=FeeRecordStatus.NOT_STARTED.value,
        next_due_amount=ZERO,
        is_active=True,
        assigned_by=ctx.assigned_by,
        installments=[
            FeeInstallment(
                installment_number=s.installment_number,
                name=s.name,
                due_date=s.due_date,
                amount=s.amount,
                amount_paid=ZERO,
                late_fee=ZERO,
                late_fee_paid=ZERO,
                status=InstallmentStatus.PENDING.value,
            )
            for s in schedule
        ],
    )
    refresh_record_totals(record, ctx.as_of, ctx.config.grace_days, ctx.config.overdue_label_policy)
    db.add(record)
    try:
        await db.flush()
    except IntegrityError:
        # Lost a race with a concurrent assignment for the same student and year
        await db.rollback()
        existing = await _find_record(db, ctx.tenant_id, enrollment.student_id, ctx.academic_year_id)
        if existing is None:
            raise ConflictError("Fee record could not be created due to a conflicting write")
        return _existing_assignment(existing, ctx)

    await _supersede_previous(db, ctx, record)
    await _log_fee_audit(
        db, ctx.tenant_id, "fee_records", record.id,
        "CREATE",
        None,
        {
            "student_id": str(enrollment.student_id),
            "fee_template_id": str(ctx.template_id),
            "installment_plan": ctx.plan.plan_name,
            "net_fee_amount": str(net_total),
        },
        ctx.assigned_by,
    )
    record_id = record.id
    await db.commit()
    logger.info(
        "Assigned fee template %s to student %s: record %s, net %s",
        ctx.template_id, enrollment.student_id, record_id, net_total,
    )
    return record_id


async def assign_template(
    db: AsyncSession,
    tenant_id: UUID,
    template_id: UUID,
    payload: AssignTemplateRequest,
    assigned_by: Optional[UUID],
    as_of: Optional[date] = None,
) -> AssignmentResult:
    """
    Assign a fee template to one student (failures raise) or to every ACTIVE student of a class
    (each student committed separately; failures are collected, not raised).
    """
    template = await _get_template(db, tenant_id, template_id)
    if not template.is_active:
        raise ValidationError("Fee template is inactive")
    ay = template.academic_year
    if ay.status != ACTIVE_ACADEMIC_YEAR:
        raise ValidationError("Cannot assign fees for a CLOSED academic year")

    config = _template_config(template)
    plan = config.plan(payload.installment_plan)
    # Configuration problems fail the whole operation, before any student is touched
    resolve_discounts(
        config.components, config.discount_rules, (), config.discount_stacking, payload.selected_optional
    )
    ctx = _AssignmentContext(
        tenant_id=tenant_id,
        template_id=template.id,
        academic_year_id=ay.id,
        academic_year_start=ay.start_date,
        class_id=template.class_id,
        config=config,
        plan=plan,
        selected_optional=list(payload.selected_optional),
        assigned_by=assigned_by,
        as_of=as_of or date.today(),
    )
    result = AssignmentResult()

    if payload.student_id is not None:
        row = await directory.get_enrollment(db, tenant_id, payload.student_id, ctx.academic_year_id)
        if row is None or row.status != directory.ACTIVE_ENROLLMENT:
            raise NotFoundError("Student has no active enrollment in the template's academic year")
        enrollment = _enrollment_of(row)
        if enrollment.class_id != ctx.class_id:
            raise ValidationError("Student is not enrolled in the template's class")
        try:
            record_id = await _assign_to_student(db, ctx, enrollment)
        except ServiceError:
            await db.rollback()
            raise
        invalidate_report_cache(tenant_id)
        result.succeeded.append(enrollment.student_id)
        result.fee_record_ids.append(record_id)
        return result

    if payload.class_id != ctx.class_id:
        raise ValidationError("Fee template belongs to a different class")
    rows = await directory.list_active_enrollments(db, tenant_id, ctx.class_id, ctx.academic_year_id)
    enrollments = [_enrollment_of(row) for row in rows]
    for enrollment in enrollments:
        try:
            record_id = await _assign_to_student(db, ctx, enrollment)
        except ServiceError as e:
            await db.rollback()
            logger.warning("Fee assignment failed for student %s: %s", enrollment.student_id, e.message)
            result.failed.append(AssignmentFailure(student_id=enrollment.student_id, reason=e.message))
            continue
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("Fee assignment failed for student %s", enrollment.student_id)
            result.failed.append(
                AssignmentFailure(student_id=enrollment.student_id, reason="Database error while assigning fee")
            )
            continue
        result.succeeded.append(enrollment.student_id)
        result.fee_record_ids.append(record_id)
    if result.succeeded:
        # New and superseded records change class populations
        invalidate_report_cache(tenant_id)
    logger.info(
        "Class assignment of template %s: %s succeeded, %s failed",
        ctx.template_id, len(result.succeeded), len(result.failed),
    )
    return result


# --- Fee Record ---
def _record_to_response(record: FeeRecord, as_of: date) -> FeeRecordResponse:
    """Statuses are re-derived for `as_of`: they depend on the date, not only on stored state."""
    config = _template_config(record.fee_template)
    installments = []
    statuses = []
    principal_paid = ZERO
    for inst in record.installments:
        label = effective_status(inst, config.grace_days, as_of, config.overdue_label_policy)
        statuses.append(label)
        principal_paid += to_decimal(inst.amount_paid)
        installments.append(
            FeeInstallmentResponse(
                installment_number=inst.installment_number,
                name=inst.name,
                due_date=inst.due_date,
                amount=to_money(inst.amount),
                amount_paid=to_money(inst.amount_paid),
                late_fee=to_money(inst.late_fee),
                late_fee_paid=to_money(inst.late_fee_paid),
                outstanding=to_money(outstanding(inst)),
                status=label,
                is_overdue=is_overdue(inst.amount_paid, inst.amount, inst.due_date, config.grace_days, as_of),
                paid_on=inst.paid_on,
            )
        )
    net = to_decimal(record.net_fee_amount)
    if net > ZERO:
        payment_percentage = (principal_paid / net * HUNDRED).quantize(CENT)
    else:
        payment_percentage = HUNDRED
    total_paid = to_money(record.total_paid)
    return FeeRecordResponse(
        id=_to_uuid(record.id),
        tenant_id=_to_uuid(record.tenant_id),
        student_id=_to_uuid(record.student_id),
        class_id=_to_uuid(record.class_id),
        academic_year_id=_to_uuid(record.academic_year_id),
        fee_template_id=_to_uuid(record.fee_template_id),
        installment_plan=record.installment_plan,
        component_breakdown=list(record.component_breakdown or []),
        applied_discounts=list(record.applied_discounts or []),
        gross_amount=to_money(record.gross_amount),
        total_discount=to_money(record.total_discount),
        total_tax=to_money(record.total_tax),
        concession_amount=to_money(record.concession_amount),
        concession_reason=record.concession_reason,
        concession_approved_by=_to_uuid(record.concession_approved_by),
        concession_approved_on=record.concession_approved_on,
        net_fee_amount=to_money(net),
        total_paid=total_paid,
        total_late_fee=to_money(record.total_late_fee),
        balance=to_money(record.balance),
        advance_credit=to_money(record.advance_credit),
        overall_status=record_status(statuses, any_payment=total_paid > ZERO),
        payment_percentage=payment_percentage,
        last_payment_date=record.last_payment_date,
        next_due_date=record.next_due_date,
        next_due_amount=to_money(record.next_due_amount),
        is_active=record.is_active,
        superseded_by_id=_to_uuid(record.superseded_by_id),
        version=record.version,
        installments=installments,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


async def _load_record(
    db: AsyncSession,
    tenant_id: Optional[UUID],
    fee_record_id: UUID,
) -> Optional[FeeRecord]:
    stmt = select(FeeRecord).where(FeeRecord.id == fee_record_id)
    if tenant_id is not None:
        stmt = stmt.where(FeeRecord.tenant_id == tenant_id)
    # Retries run after a rollback; reload current column values and version
    stmt = stmt.execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_fee_record(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    academic_year_id: Optional[UUID] = None,
    as_of: Optional[date] = None,
) -> FeeRecordResponse:
    """The student's active fee record, or the record for a given academic year (active or superseded)."""
    stmt = select(FeeRecord).where(
        FeeRecord.tenant_id == tenant_id,
        FeeRecord.student_id == student_id,
    )
    if academic_year_id is not None:
        stmt = stmt.where(FeeRecord.academic_year_id == academic_year_id)
    else:
        stmt = stmt.where(FeeRecord.is_active.is_(True))
    stmt = stmt.order_by(FeeRecord.created_at.desc())
    record = (await db.execute(stmt)).scalars().first()
    if not record:
        raise NotFoundError("Fee record not found for student")
    return _record_to_response(record, as_of or date.today())


async def get_fee_record_by_id(
    db: AsyncSession,
    tenant_id: UUID,
    fee_record_id: UUID,
    as_of: Optional[date] = None,
) -> FeeRecordResponse:
    record = await _load_record(db, tenant_id, fee_record_id)
    if not record:
        raise NotFoundError("Fee record not found")
    return _record_to_response(record, as_of or date.today())


# --- Adjustments ---
async def _adjust_net_fee(
    db: AsyncSession,
    tenant_id: UUID,
    fee_record_id: UUID,
    action_type: str,
    changed_by: Optional[UUID],
    as_of: Optional[date],
    adjust: Callable[[FeeRecord, datetime], dict],
) -> FeeRecordResponse:
    """Run `adjust` against the loaded record, re-derive its totals and commit with an audit entry."""
    today = as_of or date.today()
    record = await _load_record(db, tenant_id, fee_record_id)
    if not record:
        raise NotFoundError("Fee record not found")
    if not record.is_active:
        raise PolicyViolationError("Fee record has been superseded by a later assignment")
    config = _template_config(record.fee_template)
    old = _record_snapshot(record)
    try:
        detail = adjust(record, datetime.now(timezone.utc))
        refresh_record_totals(record, today, config.grace_days, config.overdue_label_policy)
        await _log_fee_audit(
            db, tenant_id, "fee_records", record.id,
            action_type,
            old,
            {**_record_snapshot(record), **detail},
            changed_by,
        )
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise ConflictError("Fee record was modified concurrently; retry the request")
    except ServiceError:
        await db.rollback()
        raise
    invalidate_report_cache(tenant_id)
    logger.info("%s on fee record %s: net fee now %s", action_type, fee_record_id, record.net_fee_amount)
    return _record_to_response(record, today)


async def apply_discount(
    db: AsyncSession,
    tenant_id: UUID,
    fee_record_id: UUID,
    payload: FeeDiscountCreate,
    applied_by: Optional[UUID],
    as_of: Optional[date] = None,
) -> FeeRecordResponse:
    """
    Grant a one-off discount to a student after assignment. The discount is recorded next to the
    template discounts and taken off the unpaid installments.
    """

    def adjust(record: FeeRecord, at: datetime) -> dict:
        net = to_decimal(record.net_fee_amount)
        if payload.discount_type == DiscountType.PERCENTAGE:
            if payload.value > HUNDRED:
                raise InvalidDiscountRule("Percentage discount cannot exceed 100")
            amount = to_money(net * payload.value / HUNDRED)
        else:
            amount = to_money(payload.value)
        amount = reduce_net_fee(record, amount, settings.fee_rounding_unit, at)
        record.total_discount = to_money(to_decimal(record.total_discount) + amount)
        entry = {
            "rule_name": payload.name.strip(),
            "category": ADHOC_DISCOUNT_CATEGORY,
            "discount_type": payload.discount_type.value,
            "value": str(payload.value),
            "component": "all",
            "amount": str(amount),
            "applied_by": str(applied_by) if applied_by else None,
            "applied_on": at.isoformat(),
            "remarks": payload.remarks,
        }
        record.applied_discounts = [*(record.applied_discounts or []), entry]
        return {"discount": entry}

    return await _adjust_net_fee(db, tenant_id, fee_record_id, "DISCOUNT", applied_by, as_of, adjust)


async def waive_fee(
    db: AsyncSession,
    tenant_id: UUID,
    fee_record_id: UUID,
    payload: FeeConcessionCreate,
    approved_by: Optional[UUID],
    as_of: Optional[date] = None,
) -> FeeRecordResponse:
    """Approve a concession. Concessions accumulate; reason and approver reflect the latest one."""
    reason = payload.reason.strip()
    if not reason:
        raise ValidationError("A concession needs a reason")

    def adjust(record: FeeRecord, at: datetime) -> dict:
        amount = reduce_net_fee(record, payload.amount, settings.fee_rounding_unit, at)
        record.concession_amount = to_money(to_decimal(record.concession_amount) + amount)
        record.concession_reason = reason
        record.concession_approved_by = approved_by
        record.concession_approved_on = at
        return {"concession": {"amount": str(amount), "reason": reason}}

    return await _adjust_net_fee(db, tenant_id, fee_record_id, "CONCESSION", approved_by, as_of, adjust)


# --- Payment ---
def _payment_to_response(payment: FeePayment) -> PaymentResponse:
    return PaymentResponse(
        id=_to_uuid(payment.id),
        tenant_id=_to_uuid(payment.tenant_id),
        fee_record_id=_to_uuid(payment.fee_record_id),
        student_id=_to_uuid(payment.student_id),
        receipt_number=payment.receipt_number,
        idempotency_key=payment.idempotency_key,
        amount=to_money(payment.amount),
        principal_amount=to_money(payment.principal_amount),
        late_fee_amount=to_money(payment.late_fee_amount),
        advance_credit_amount=to_money(payment.advance_credit_amount),
        payment_mode=payment.payment_mode,
        metadata=dict(payment.payment_metadata or {}),
        allocations=[PaymentAllocationItem.model_validate(a) for a in payment.allocations or []],
        reverses_payment_id=_to_uuid(payment.reverses_payment_id),
        reason=payment.reason,
        paid_at=payment.paid_at,
        recorded_by=_to_uuid(payment.recorded_by),
        created_at=payment.created_at,
    )


async def _find_payment_by_key(db: AsyncSession, idempotency_key: str) -> Optional[FeePayment]:
    result = await db.execute(select(FeePayment).where(FeePayment.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


def _payment_replay_check(fee_record_id: UUID, amount: Decimal) -> Callable[[FeePayment], None]:
    def check(existing: FeePayment) -> None:
        if existing.fee_record_id != fee_record_id or to_money(existing.amount) != to_money(amount):
            raise ConflictError("Idempotency key was already used for a different payment")
        logger.info("Replayed payment %s for idempotency key %s", existing.receipt_number, existing.idempotency_key)

    return check


async def _write_with_retry(
    db: AsyncSession,
    idempotency_key: str,
    write: Callable[[], Awaitable[FeePayment]],
    replay_check: Callable[[FeePayment], None],
) -> FeePayment:
    """
    Run one fee-record write and commit it. A stale record version rolls back and re-runs `write` on fresh
    state; a duplicate idempotency key resolves to the payment that won.
    """
    for attempt in range(1, settings.payment_max_retries + 1):
        try:
            payment = await write()
            await db.commit()
            return payment
        except StaleDataError:
            await db.rollback()
            logger.warning(
                "Fee record changed concurrently (attempt %s of %s)", attempt, settings.payment_max_retries
            )
        except IntegrityError:
            await db.rollback()
            existing = await _find_payment_by_key(db, idempotency_key)
            if existing is None:
                raise ConflictError("Payment conflicts with a concurrent write on this fee record")
            replay_check(existing)
            return existing
        except ServiceError:
            await db.rollback()
            raise
    raise ConflictError("Fee record was modified concurrently; retry the request")


async def record_payment(
    db: AsyncSession,
    tenant_id: UUID,
    fee_record_id: UUID,
    payload: PaymentCreate,
    recorded_by: Optional[UUID],
) -> PaymentResponse:
    """
    Apply a confirmed payment: accrue late fees as of the payment date, allocate oldest installment first
    (late fee before principal), and write an immutable payment row with its allocation breakdown.
    """
    key = payload.idempotency_key.strip()
    if not key:
        raise ValidationError("idempotency_key must not be blank")
    replay_check = _payment_replay_check(fee_record_id, payload.amount)
    existing = await _find_payment_by_key(db, key)
    if existing is not None:
        replay_check(existing)
        return _payment_to_response(existing)

    paid_at = _as_utc(payload.paid_at) if payload.paid_at else datetime.now(timezone.utc)
    if paid_at > datetime.now(timezone.utc) + timedelta(seconds=settings.payment_clock_skew_seconds):
        raise ValidationError("Payment cannot be dated in the future")
    as_of = paid_at.date()

    async def write() -> FeePayment:
        record = await _load_record(db, tenant_id, fee_record_id)
        if not record:
            raise NotFoundError("Fee record not found")
        if not record.is_active:
            raise PolicyViolationError("Fee record has been superseded by a later assignment")
        if record.last_payment_date is not None and paid_at < _as_utc(record.last_payment_date):
            raise ConflictError("Payment is dated before the last payment applied to this fee record")
        config = _template_config(record.fee_template)
        old = _record_snapshot(record)

        accrue_late_fees(record, config.late_fee_policy, as_of)
        mode = validate_payment(record.installments, payload.amount, payload.payment_mode, config.payment_policy)
        plan = plan_allocation(record.installments, payload.amount)
        apply_allocation(record, plan, paid_at)
        if plan.remainder > ZERO:
            record.advance_credit = to_money(to_decimal(record.advance_credit) + plan.remainder)
        refresh_record_totals(record, as_of, config.grace_days, config.overdue_label_policy)
        record.last_payment_date = paid_at

        payment = FeePayment(
            tenant_id=tenant_id,
            fee_record_id=record.id,
            student_id=record.student_id,
            receipt_number=_receipt_number(paid_at),
            idempotency_key=key,
            amount=to_money(payload.amount),
            principal_amount=to_money(plan.principal_total),
            late_fee_amount=to_money(plan.late_fee_total),
            advance_credit_amount=to_money(plan.remainder),
            payment_mode=mode.value,
            payment_metadata=dict(payload.metadata or {}),
            allocations=[line.as_dict() for line in plan.lines],
            paid_at=paid_at,
            recorded_by=recorded_by,
        )
        db.add(payment)
        await db.flush()
        await _log_fee_audit(
            db, tenant_id, "fee_payments", payment.id,
            "PAYMENT",
            None,
            {
                "receipt_number": payment.receipt_number,
                "amount": str(payment.amount),
                "payment_mode": payment.payment_mode,
                "allocations": payment.allocations,
            },
            recorded_by,
        )
        await _log_fee_audit(
            db, tenant_id, "fee_records", record.id,
            "UPDATE",
            old,
            _record_snapshot(record),
            recorded_by,
        )
        return payment

    payment = await _write_with_retry(db, key, write, replay_check)
    invalidate_report_cache(tenant_id)
    logger.info(
        "Recorded payment %s of %s on fee record %s", payment.receipt_number, payment.amount, fee_record_id
    )
    return _payment_to_response(payment)


async def _get_payment(db: AsyncSession, tenant_id: UUID, payment_id: UUID) -> FeePayment:
    payment = (
        await db.execute(
            select(FeePayment).where(
                FeePayment.id == payment_id,
                FeePayment.tenant_id == tenant_id,
            )
        )
    ).scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


async def reverse_payment(
    db: AsyncSession,
    tenant_id: UUID,
    payment_id: UUID,
    payload: PaymentReverseRequest,
    recorded_by: Optional[UUID],
) -> PaymentResponse:
    """Undo a payment with an offsetting negative payment. A payment is reversed at most once."""
    key = payload.idempotency_key.strip()
    if not key:
        raise ValidationError("idempotency_key must not be blank")

    def replay_check(existing: FeePayment) -> None:
        if existing.reverses_payment_id != payment_id:
            raise ConflictError("Idempotency key was already used for a different payment")

    existing = await _find_payment_by_key(db, key)
    if existing is not None:
        replay_check(existing)
        return _payment_to_response(existing)

    original = await _get_payment(db, tenant_id, payment_id)
    if original.reverses_payment_id is not None:
        raise ValidationError("A reversal cannot itself be reversed")
    if original.payment_mode == PaymentMode.ADVANCE_CREDIT.value:
        raise ValidationError("Advance credit transfers cannot be reversed")
    already = (
        await db.execute(select(FeePayment.id).where(FeePayment.reverses_payment_id == original.id))
    ).scalar_one_or_none()
    if already is not None:
        raise ConflictError("Payment has already been reversed")

    fee_record_id = original.fee_record_id
    receipt = original.receipt_number
    allocations = list(original.allocations or [])
    amount = to_money(original.amount)
    principal = to_money(original.principal_amount)
    late_fee = to_money(original.late_fee_amount)
    credit = to_money(original.advance_credit_amount)
    reversed_at = datetime.now(timezone.utc)

    async def write() -> FeePayment:
        record = await _load_record(db, tenant_id, fee_record_id)
        if not record:
            raise NotFoundError("Fee record not found")
        if to_decimal(record.advance_credit) < credit:
            raise ConflictError("Advance credit from this payment has already been carried forward")
        config = _template_config(record.fee_template)
        old = _record_snapshot(record)

        lines = apply_reversal(record, allocations)
        record.advance_credit = to_money(to_decimal(record.advance_credit) - credit)
        refresh_record_totals(
            record, reversed_at.date(), config.grace_days, config.overdue_label_policy, allow_backward=True
        )

        reversal = FeePayment(
            tenant_id=tenant_id,
            fee_record_id=record.id,
            student_id=record.student_id,
            receipt_number=_receipt_number(reversed_at),
            idempotency_key=key,
            amount=-amount,
            principal_amount=-principal,
            late_fee_amount=-late_fee,
            advance_credit_amount=-credit,
            payment_mode=PaymentMode.REVERSAL.value,
            payment_metadata={"reversed_receipt_number": receipt},
            allocations=[line.as_dict() for line in lines],
            reverses_payment_id=payment_id,
            reason=payload.reason.strip(),
            paid_at=reversed_at,
            recorded_by=recorded_by,
        )
        db.add(reversal)
        await db.flush()
        await _log_fee_audit(
            db, tenant_id, "fee_payments", reversal.id,
            "REVERSAL",
            {"payment_id": str(payment_id), "receipt_number": receipt, "amount": str(amount)},
            {"receipt_number": reversal.receipt_number, "reason": reversal.reason},
            recorded_by,
        )
        await _log_fee_audit(
            db, tenant_id, "fee_records", record.id,
            "UPDATE",
            old,
            _record_snapshot(record),
            recorded_by,
        )
        return reversal

    reversal = await _write_with_retry(db, key, write, replay_check)
    invalidate_report_cache(tenant_id)
    logger.info("Reversed payment %s with %s", receipt, reversal.receipt_number)
    return _payment_to_response(reversal)


async def get_payment(db: AsyncSession, tenant_id: UUID, payment_id: UUID) -> PaymentResponse:
    return _payment_to_response(await _get_payment(db, tenant_id, payment_id))


async def get_payment_history(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    academic_year_id: Optional[UUID] = None,
) -> List[PaymentResponse]:
    stmt = select(FeePayment).where(
        FeePayment.tenant_id == tenant_id,
        FeePayment.student_id == student_id,
    )
    if academic_year_id is not None:
        stmt = stmt.join(FeeRecord, FeePayment.fee_record_id == FeeRecord.id).where(
            FeeRecord.academic_year_id == academic_year_id
        )
    stmt = stmt.order_by(FeePayment.paid_at.desc(), FeePayment.created_at.desc())
    result = await db.execute(stmt)
    return [_payment_to_response(p) for p in result.scalars().all()]


async def get_daily_collection(db: AsyncSession, tenant_id: UUID, day: date) -> List[PaymentResponse]:
    """Every money movement dated `day` (UTC), reversals included, newest first."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    result = await db.execute(
        select(FeePayment)
        .where(
            FeePayment.tenant_id == tenant_id,
            FeePayment.paid_at >= start,
            FeePayment.paid_at < start + timedelta(days=1),
        )
        .order_by(FeePayment.paid_at.desc())
    )
    return [_payment_to_response(p) for p in result.scalars().all()]


# --- Late fee job ---
def _accrual_state(record: FeeRecord) -> tuple:
    return (
        record.overall_status,
        to_money(record.total_late_fee),
        tuple((i.installment_number, to_money(i.late_fee), i.status) for i in record.installments),
    )


async def _accrue_record(
    db: AsyncSession,
    fee_record_id: UUID,
    as_of: date,
    changed_by: Optional[UUID],
) -> bool:
    """Accrue one record and commit. Returns whether anything changed."""
    try:
        record = await _load_record(db, None, fee_record_id)
        if not record or not record.is_active:
            await db.rollback()
            return False
        config = _template_config(record.fee_template)
        before = _accrual_state(record)
        old_late_fee = to_money(record.total_late_fee)

        increase = accrue_late_fees(record, config.late_fee_policy, as_of)
        refresh_record_totals(record, as_of, config.grace_days, config.overdue_label_policy)
        if _accrual_state(record) == before:
            await db.rollback()
            return False
        if increase > ZERO:
            await _log_fee_audit(
                db, record.tenant_id, "fee_records", record.id,
                "LATE_FEE",
                {"total_late_fee": str(old_late_fee)},
                {"total_late_fee": str(to_money(record.total_late_fee)), "as_of": as_of.isoformat()},
                changed_by,
            )
        await db.commit()
        return True
    except (ServiceError, SQLAlchemyError, ValueError) as exc:
        # ValueError: stored template configuration no longer validates
        await db.rollback()
        raise AccrualError(f"Late fee recompute failed for fee record {fee_record_id}: {exc}") from exc


async def recompute_late_fees(
    db: AsyncSession,
    as_of: Optional[date] = None,
    tenant_id: Optional[UUID] = None,
    changed_by: Optional[UUID] = None,
) -> LateFeeRunResponse:
    """
    Daily accrual over every active, not fully paid fee record. Each record commits on its own; a failing
    record is logged and left for the next run. Re-running for the same date changes nothing.
    """
    as_of = as_of or date.today()
    stmt = select(FeeRecord.id).where(
        FeeRecord.is_active.is_(True),
        FeeRecord.overall_status != FeeRecordStatus.PAID.value,
    )
    if tenant_id is not None:
        stmt = stmt.where(FeeRecord.tenant_id == tenant_id)
    record_ids = list((await db.execute(stmt.order_by(FeeRecord.created_at))).scalars().all())

    updated = 0
    failed: List[UUID] = []
    for record_id in record_ids:
        try:
            if await _accrue_record(db, record_id, as_of, changed_by):
                updated += 1
        except AccrualError as exc:
            logger.error(exc.message)
            failed.append(record_id)

    if updated:
        invalidate_report_cache(tenant_id)
    logger.info(
        "Late fee run as of %s: %s processed, %s updated, %s failed",
        as_of, len(record_ids), updated, len(failed),
    )
    return LateFeeRunResponse(as_of=as_of, processed=len(record_ids), updated=updated, failed=failed)
