"""Fees router: templates, assignment, fee records, payments, late fees, reports."""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_writable_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import (
    AssignmentResult,
    AssignTemplateRequest,
    ClassSummaryResponse,
    ClassWiseCollectionItem,
    CollectionSummaryResponse,
    CollectorSummaryItem,
    FeeConcessionCreate,
    FeeDiscountCreate,
    FeeRecordResponse,
    FeeTemplateCreate,
    FeeTemplateResponse,
    FeeTemplateUpdate,
    LateFeeRecomputeRequest,
    LateFeeRunResponse,
    OverdueStudentItem,
    PaymentCreate,
    PaymentModeSummaryItem,
    PaymentResponse,
    PaymentReverseRequest,
    UpcomingDueItem,
)
from . import reports, service

router = APIRouter(prefix="/api/v1/fees", tags=["fees"])


# --- Fee Template ---
@router.post(
    "/templates",
    response_model=FeeTemplateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(check_permission("fees", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def create_fee_template(
    payload: FeeTemplateCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeTemplateResponse:
    try:
        return await service.create_fee_template(
            db, current_user.tenant_id, payload, created_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/templates",
    response_model=List[FeeTemplateResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_fee_templates(
    academic_year_id: Optional[UUID] = Query(None),
    class_id: Optional[UUID] = Query(None),
    active_only: bool = Query(True, description="Return only active templates by default"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[FeeTemplateResponse]:
    return await service.list_fee_templates(
        db,
        current_user.tenant_id,
        academic_year_id=academic_year_id,
        class_id=class_id,
        active_only=active_only,
    )


@router.get(
    "/templates/{template_id}",
    response_model=FeeTemplateResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_fee_template(
    template_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeTemplateResponse:
    try:
        return await service.get_fee_template(db, current_user.tenant_id, template_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.patch(
    "/templates/{template_id}",
    response_model=FeeTemplateResponse,
    dependencies=[
        Depends(check_permission("fees", "update")),
        Depends(require_writable_academic_year),
    ],
)
async def update_fee_template(
    template_id: UUID,
    payload: FeeTemplateUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeTemplateResponse:
    try:
        return await service.update_fee_template(
            db, current_user.tenant_id, template_id, payload, changed_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.patch(
    "/templates/{template_id}/deactivate",
    response_model=FeeTemplateResponse,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def deactivate_fee_template(
    template_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeTemplateResponse:
    try:
        return await service.deactivate_fee_template(
            db, current_user.tenant_id, template_id, changed_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- Assignment ---
@router.post(
    "/templates/{template_id}/assign",
    response_model=AssignmentResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(check_permission("fees", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def assign_template(
    template_id: UUID,
    payload: AssignTemplateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> AssignmentResult:
    try:
        return await service.assign_template(
            db,
            current_user.tenant_id,
            template_id,
            payload,
            assigned_by=current_user.id,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- Fee Record ---
@router.get(
    "/students/{student_id}/record",
    response_model=FeeRecordResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_student_fee_record(
    student_id: UUID,
    academic_year_id: Optional[UUID] = Query(None, description="Defaults to the student's active record"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeRecordResponse:
    try:
        return await service.get_fee_record(
            db, current_user.tenant_id, student_id, academic_year_id=academic_year_id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/records/{fee_record_id}",
    response_model=FeeRecordResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_fee_record(
    fee_record_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeRecordResponse:
    try:
        return await service.get_fee_record_by_id(db, current_user.tenant_id, fee_record_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/records/{fee_record_id}/discounts",
    response_model=FeeRecordResponse,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def apply_discount(
    fee_record_id: UUID,
    payload: FeeDiscountCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeRecordResponse:
    try:
        return await service.apply_discount(
            db, current_user.tenant_id, fee_record_id, payload, applied_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/records/{fee_record_id}/concessions",
    response_model=FeeRecordResponse,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def waive_fee(
    fee_record_id: UUID,
    payload: FeeConcessionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeRecordResponse:
    try:
        return await service.waive_fee(
            db, current_user.tenant_id, fee_record_id, payload, approved_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# --- Payment ---
@router.post(
    "/records/{fee_record_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("fees", "create"))],
)
async def record_payment(
    fee_record_id: UUID,
    payload: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResponse:
    try:
        return await service.record_payment(
            db,
            current_user.tenant_id,
            fee_record_id,
            payload,
            recorded_by=current_user.id,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/payments/{payment_id}/reverse",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def reverse_payment(
    payment_id: UUID,
    payload: PaymentReverseRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResponse:
    try:
        return await service.reverse_payment(
            db,
            current_user.tenant_id,
            payment_id,
            payload,
            recorded_by=current_user.id,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/payments/{payment_id}",
    response_model=PaymentResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResponse:
    try:
        return await service.get_payment(db, current_user.tenant_id, payment_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/students/{student_id}/payments",
    response_model=List[PaymentResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_payment_history(
    student_id: UUID,
    academic_year_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[PaymentResponse]:
    return await service.get_payment_history(
        db, current_user.tenant_id, student_id, academic_year_id=academic_year_id
    )


# --- Late fees ---
@router.post(
    "/late-fees/recompute",
    response_model=LateFeeRunResponse,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def recompute_late_fees(
    payload: LateFeeRecomputeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> LateFeeRunResponse:
    return await service.recompute_late_fees(
        db,
        as_of=payload.as_of,
        tenant_id=current_user.tenant_id,
        changed_by=current_user.id,
    )


# --- Report ---
@router.get(
    "/reports/classes/{class_id}/summary",
    response_model=ClassSummaryResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_class_summary(
    class_id: UUID,
    academic_year_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ClassSummaryResponse:
    try:
        return await reports.get_class_summary(
            db, current_user.tenant_id, class_id, academic_year_id=academic_year_id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/reports/overdue",
    response_model=List[OverdueStudentItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_overdue_students(
    academic_year_id: Optional[UUID] = Query(None),
    class_id: Optional[UUID] = Query(None),
    min_days_overdue: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[OverdueStudentItem]:
    return await reports.get_overdue_students(
        db,
        current_user.tenant_id,
        academic_year_id=academic_year_id,
        class_id=class_id,
        min_days_overdue=min_days_overdue,
    )


@router.get(
    "/reports/defaulters",
    response_model=List[OverdueStudentItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_defaulters(
    days_overdue: Optional[int] = Query(None, ge=0, description="Defaults to DEFAULTER_DAYS"),
    academic_year_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[OverdueStudentItem]:
    return await reports.get_defaulters(
        db, current_user.tenant_id, days_overdue, academic_year_id=academic_year_id
    )


@router.get(
    "/reports/collection",
    response_model=CollectionSummaryResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_collection_summary(
    academic_year_id: Optional[UUID] = Query(None),
    class_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> CollectionSummaryResponse:
    return await reports.get_collection_summary(
        db, current_user.tenant_id, academic_year_id=academic_year_id, class_id=class_id
    )


@router.get(
    "/reports/class-wise",
    response_model=List[ClassWiseCollectionItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_class_wise_collection(
    academic_year_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[ClassWiseCollectionItem]:
    return await reports.get_class_wise_collection(
        db, current_user.tenant_id, academic_year_id=academic_year_id
    )


@router.get(
    "/reports/payment-modes",
    response_model=List[PaymentModeSummaryItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_payment_mode_summary(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[PaymentModeSummaryItem]:
    return await reports.get_payment_mode_summary(
        db, current_user.tenant_id, date_from=date_from, date_to=date_to
    )


@router.get(
    "/reports/collectors",
    response_model=List[CollectorSummaryItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_collector_summary(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[CollectorSummaryItem]:
    return await reports.get_collector_summary(
        db, current_user.tenant_id, date_from=date_from, date_to=date_to
    )


@router.get(
    "/reports/daily",
    response_model=List[PaymentResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_daily_collection(
    day: date = Query(..., description="Collection date (UTC)"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[PaymentResponse]:
    return await service.get_daily_collection(db, current_user.tenant_id, day)


@router.get(
    "/reports/upcoming",
    response_model=List[UpcomingDueItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_upcoming_dues(
    within_days: int = Query(7, ge=0, le=90),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[UpcomingDueItem]:
    return await reports.get_upcoming_dues(db, current_user.tenant_id, within_days=within_days)
