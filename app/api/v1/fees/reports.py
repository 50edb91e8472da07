"""Fees reports: read-only aggregates over fee records and payments."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.enums import FeeRecordStatus, PaymentMode
from app.core.exceptions import NotFoundError
from app.core.models import FeePayment, FeeRecord, SchoolClass

from . import directory
from .late_fee import days_overdue
from .money import CENT, HUNDRED, ZERO, to_decimal, to_money
from .schemas import (
    ClassSummaryResponse,
    ClassWiseCollectionItem,
    CollectionSummaryResponse,
    CollectorSummaryItem,
    LateFeePolicySpec,
    OverdueStudentItem,
    PaymentModeSummaryItem,
    UpcomingDueItem,
)
from .state import is_overdue

logger = logging.getLogger(__name__)

ONLINE_MODES = [
    PaymentMode.UPI.value,
    PaymentMode.CARD.value,
    PaymentMode.NET_BANKING.value,
    PaymentMode.ONLINE_GATEWAY.value,
]

# (tenant_id, class_id, academic_year_id, evaluation date) -> summary; cleared by every fee record write
_class_summary_cache: Dict[Tuple[UUID, UUID, Optional[UUID], date], ClassSummaryResponse] = {}


def invalidate_report_cache(tenant_id: Optional[UUID] = None) -> None:
    if tenant_id is None:
        _class_summary_cache.clear()
        return
    for key in [k for k in _class_summary_cache if k[0] == tenant_id]:
        del _class_summary_cache[key]


def _collection_percentage(collected: Decimal, total: Decimal) -> Decimal:
    # Paid over net fee; collected late fees can take it past 100
    if total <= ZERO:
        return ZERO
    return (collected / total * HUNDRED).quantize(CENT)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _grace_days(record: FeeRecord) -> int:
    policy = record.fee_template.late_fee_policy or {}
    return LateFeePolicySpec.model_validate(policy).grace_days


async def _active_records(
    db: AsyncSession,
    tenant_id: UUID,
    academic_year_id: Optional[UUID] = None,
    class_id: Optional[UUID] = None,
) -> List[FeeRecord]:
    stmt = select(FeeRecord).where(
        FeeRecord.tenant_id == tenant_id,
        FeeRecord.is_active.is_(True),
    )
    if academic_year_id is not None:
        stmt = stmt.where(FeeRecord.academic_year_id == academic_year_id)
    if class_id is not None:
        stmt = stmt.where(FeeRecord.class_id == class_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_class_summary(
    db: AsyncSession,
    tenant_id: UUID,
    class_id: UUID,
    academic_year_id: Optional[UUID] = None,
    as_of: Optional[date] = None,
) -> ClassSummaryResponse:
    today = as_of or date.today()
    cache_key = (tenant_id, class_id, academic_year_id, today)
    use_cache = settings.report_cache_enabled and as_of is None
    if use_cache and cache_key in _class_summary_cache:
        return _class_summary_cache[cache_key]

    cl = await db.get(SchoolClass, class_id)
    if not cl or cl.tenant_id != tenant_id:
        raise NotFoundError("Class not found")

    records = await _active_records(db, tenant_id, academic_year_id, class_id)
    total_fee = ZERO
    collected = ZERO
    pending = ZERO
    late_fee = ZERO
    overdue_count = 0
    for record in records:
        total_fee += to_decimal(record.net_fee_amount)
        collected += to_decimal(record.total_paid)
        pending += to_decimal(record.balance)
        late_fee += to_decimal(record.total_late_fee)
        grace = _grace_days(record)
        if any(is_overdue(i.amount_paid, i.amount, i.due_date, grace, today) for i in record.installments):
            overdue_count += 1

    summary = ClassSummaryResponse(
        class_id=class_id,
        class_name=cl.name,
        total_students=len(records),
        total_fee=to_money(total_fee),
        total_collected=to_money(collected),
        total_pending=to_money(pending),
        total_late_fee=to_money(late_fee),
        collection_percentage=_collection_percentage(collected, total_fee),
        overdue_count=overdue_count,
    )
    if use_cache:
        _class_summary_cache[cache_key] = summary
    return summary


async def get_collection_summary(
    db: AsyncSession,
    tenant_id: UUID,
    academic_year_id: Optional[UUID] = None,
    class_id: Optional[UUID] = None,
) -> CollectionSummaryResponse:
    filters = [FeeRecord.tenant_id == tenant_id, FeeRecord.is_active.is_(True)]
    if academic_year_id is not None:
        filters.append(FeeRecord.academic_year_id == academic_year_id)
    if class_id is not None:
        filters.append(FeeRecord.class_id == class_id)

    totals = (
        await db.execute(
            select(
                func.count(FeeRecord.id),
                func.coalesce(func.sum(FeeRecord.net_fee_amount), 0),
                func.coalesce(func.sum(FeeRecord.total_discount), 0),
                func.coalesce(func.sum(FeeRecord.total_paid), 0),
                func.coalesce(func.sum(FeeRecord.balance), 0),
                func.coalesce(func.sum(FeeRecord.total_late_fee), 0),
            ).where(*filters)
        )
    ).one()
    count, total_fee, total_discount, collected, pending, late_fee = totals

    status_rows = (
        await db.execute(
            select(FeeRecord.overall_status, func.count(FeeRecord.id))
            .where(*filters)
            .group_by(FeeRecord.overall_status)
        )
    ).all()
    status_counts = {s.value: 0 for s in FeeRecordStatus}
    for status_value, n in status_rows:
        status_counts[status_value] = n

    total_fee = to_decimal(total_fee)
    late_fee = to_decimal(late_fee)
    collected = to_decimal(collected)
    return CollectionSummaryResponse(
        total_students=count or 0,
        total_fee=to_money(total_fee),
        total_discount=to_money(total_discount),
        total_collected=to_money(collected),
        total_pending=to_money(pending),
        total_late_fee=to_money(late_fee),
        collection_percentage=_collection_percentage(collected, total_fee),
        status_counts=status_counts,
    )


async def get_class_wise_collection(
    db: AsyncSession,
    tenant_id: UUID,
    academic_year_id: Optional[UUID] = None,
) -> List[ClassWiseCollectionItem]:
    stmt = (
        select(
            FeeRecord.class_id,
            SchoolClass.name,
            func.count(FeeRecord.id),
            func.coalesce(func.sum(FeeRecord.net_fee_amount), 0),
            func.coalesce(func.sum(FeeRecord.total_paid), 0),
            func.coalesce(func.sum(FeeRecord.balance), 0),
        )
        .join(SchoolClass, SchoolClass.id == FeeRecord.class_id)
        .where(FeeRecord.tenant_id == tenant_id, FeeRecord.is_active.is_(True))
        .group_by(FeeRecord.class_id, SchoolClass.name, SchoolClass.display_order)
        .order_by(SchoolClass.display_order, SchoolClass.name)
    )
    if academic_year_id is not None:
        stmt = stmt.where(FeeRecord.academic_year_id == academic_year_id)
    rows = (await db.execute(stmt)).all()
    items = []
    for cl_id, cl_name, count, total_fee, collected, pending in rows:
        total_fee = to_decimal(total_fee)
        collected = to_decimal(collected)
        items.append(
            ClassWiseCollectionItem(
                class_id=cl_id,
                class_name=cl_name,
                total_students=count,
                total_fee=to_money(total_fee),
                total_collected=to_money(collected),
                total_pending=to_money(pending),
                collection_percentage=_collection_percentage(collected, total_fee),
            )
        )
    return items


def _received_payments(stmt, tenant_id: UUID, date_from: Optional[date], date_to: Optional[date]):
    """Money actually received: no reversals, no carried-over credit, and not later reversed."""
    reversed_ids = select(FeePayment.reverses_payment_id).where(FeePayment.reverses_payment_id.is_not(None))
    stmt = stmt.where(
        FeePayment.tenant_id == tenant_id,
        FeePayment.payment_mode.not_in([PaymentMode.REVERSAL.value, PaymentMode.ADVANCE_CREDIT.value]),
        FeePayment.id.not_in(reversed_ids),
    )
    if date_from is not None:
        stmt = stmt.where(FeePayment.paid_at >= _day_start(date_from))
    if date_to is not None:
        stmt = stmt.where(FeePayment.paid_at < _day_start(date_to + timedelta(days=1)))
    return stmt


async def get_payment_mode_summary(
    db: AsyncSession,
    tenant_id: UUID,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[PaymentModeSummaryItem]:
    """Money received per payment mode. Reversed payments and the reversals themselves are left out."""
    stmt = select(
        FeePayment.payment_mode,
        func.coalesce(func.sum(FeePayment.amount), 0),
        func.count(FeePayment.id),
    )
    stmt = _received_payments(stmt, tenant_id, date_from, date_to)
    stmt = stmt.group_by(FeePayment.payment_mode).order_by(FeePayment.payment_mode)
    rows = (await db.execute(stmt)).all()
    return [
        PaymentModeSummaryItem(payment_mode=mode, total_amount=to_money(total), count=count)
        for mode, total, count in rows
    ]


async def get_collector_summary(
    db: AsyncSession,
    tenant_id: UUID,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[CollectorSummaryItem]:
    """Money received per staff member who recorded it, largest collector first."""
    total = func.coalesce(func.sum(FeePayment.amount), 0)
    cash = func.coalesce(
        func.sum(case((FeePayment.payment_mode == PaymentMode.CASH.value, FeePayment.amount), else_=0)), 0
    )
    online = func.coalesce(
        func.sum(case((FeePayment.payment_mode.in_(ONLINE_MODES), FeePayment.amount), else_=0)), 0
    )
    stmt = select(FeePayment.recorded_by, total, func.count(FeePayment.id), cash, online)
    stmt = _received_payments(stmt, tenant_id, date_from, date_to)
    stmt = stmt.group_by(FeePayment.recorded_by).order_by(total.desc())
    rows = (await db.execute(stmt)).all()
    return [
        CollectorSummaryItem(
            recorded_by=recorded_by,
            total_collected=to_money(collected),
            payment_count=count,
            cash_amount=to_money(cash_total),
            online_amount=to_money(online_total),
        )
        for recorded_by, collected, count, cash_total, online_total in rows
    ]


async def get_overdue_students(
    db: AsyncSession,
    tenant_id: UUID,
    academic_year_id: Optional[UUID] = None,
    class_id: Optional[UUID] = None,
    min_days_overdue: int = 0,
    as_of: Optional[date] = None,
) -> List[OverdueStudentItem]:
    """
    Students with at least one installment past its grace period and not fully paid, oldest first.
    Uses the due-date check directly, so a partially paid late installment counts even when labelled
    PartiallyPaid.
    """
    today = as_of or date.today()
    records = await _active_records(db, tenant_id, academic_year_id, class_id)
    candidates = []
    for record in records:
        grace = _grace_days(record)
        late = [
            i for i in record.installments
            if is_overdue(i.amount_paid, i.amount, i.due_date, grace, today)
        ]
        if not late:
            continue
        oldest = min(i.due_date for i in late)
        days = days_overdue(oldest, grace, today)
        if days < min_days_overdue:
            continue
        candidates.append((record, len(late), oldest, days))

    names = await directory.student_names(db, tenant_id, (c[0].student_id for c in candidates))
    class_ids = {c[0].class_id for c in candidates}
    class_names = {}
    if class_ids:
        rows = (await db.execute(select(SchoolClass.id, SchoolClass.name).where(SchoolClass.id.in_(class_ids)))).all()
        class_names = {cid: name for cid, name in rows}

    items = [
        OverdueStudentItem(
            fee_record_id=record.id,
            student_id=record.student_id,
            student_name=names.get(record.student_id),
            class_id=record.class_id,
            class_name=class_names.get(record.class_id),
            overall_status=FeeRecordStatus(record.overall_status),
            balance=to_money(record.balance),
            total_late_fee=to_money(record.total_late_fee),
            overdue_installments=count,
            oldest_due_date=oldest,
            days_overdue=days,
        )
        for record, count, oldest, days in candidates
    ]
    items.sort(key=lambda it: (it.oldest_due_date, -it.balance))
    return items


async def get_defaulters(
    db: AsyncSession,
    tenant_id: UUID,
    days_overdue_threshold: Optional[int] = None,
    academic_year_id: Optional[UUID] = None,
    as_of: Optional[date] = None,
) -> List[OverdueStudentItem]:
    threshold = settings.defaulter_days if days_overdue_threshold is None else days_overdue_threshold
    return await get_overdue_students(
        db, tenant_id, academic_year_id=academic_year_id, min_days_overdue=threshold, as_of=as_of
    )


async def get_upcoming_dues(
    db: AsyncSession,
    tenant_id: UUID,
    within_days: int = 7,
    as_of: Optional[date] = None,
) -> List[UpcomingDueItem]:
    """Fee records whose next installment falls due within the window: reminder candidates."""
    today = as_of or date.today()
    result = await db.execute(
        select(FeeRecord)
        .where(
            FeeRecord.tenant_id == tenant_id,
            FeeRecord.is_active.is_(True),
            FeeRecord.overall_status != FeeRecordStatus.PAID.value,
            FeeRecord.next_due_date.is_not(None),
            FeeRecord.next_due_date >= today,
            FeeRecord.next_due_date <= today + timedelta(days=within_days),
        )
        .order_by(FeeRecord.next_due_date)
    )
    records = list(result.scalars().all())
    names = await directory.student_names(db, tenant_id, (r.student_id for r in records))
    return [
        UpcomingDueItem(
            fee_record_id=r.id,
            student_id=r.student_id,
            student_name=names.get(r.student_id),
            class_id=r.class_id,
            next_due_date=r.next_due_date,
            next_due_amount=to_money(r.next_due_amount),
        )
        for r in records
    ]
