"""Assigning fee templates to students and classes."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.api.v1.fees import service
from app.api.v1.fees.schemas import AssignTemplateRequest, PaymentCreate
from app.core.enums import FeeRecordStatus, InstallmentStatus, PaymentMode
from app.core.exceptions import ConflictError, InvalidPlan, NotFoundError, PolicyViolationError, ValidationError
from app.core.models import FeeRecord

from factories import ACCOUNTANT_ID, add_academic_year, create_template, enroll

AY_START = date(2025, 4, 1)


async def _assign(db, school, template_id, as_of=AY_START, **request):
    return await service.assign_template(
        db,
        school.tenant_id,
        template_id,
        AssignTemplateRequest(**request),
        ACCOUNTANT_ID,
        as_of=as_of,
    )


@pytest.mark.asyncio
async def test_assign_to_student_builds_schedule(db_session, school) -> None:
    template = await create_template(db_session, school)
    student_id = await enroll(db_session, school, name="Asha")

    result = await _assign(db_session, school, template.id, student_id=student_id)
    assert result.succeeded == [student_id]
    assert result.failed == []

    record = await service.get_fee_record(db_session, school.tenant_id, student_id, as_of=AY_START)
    assert record.id == result.fee_record_ids[0]
    assert record.gross_amount == Decimal("12000.00")
    assert record.net_fee_amount == Decimal("12000.00")
    assert record.balance == Decimal("12000.00")
    assert record.overall_status == FeeRecordStatus.NOT_STARTED
    assert [i.amount for i in record.installments] == [Decimal("3000.00")] * 4
    assert [i.due_date for i in record.installments] == [
        date(2025, 4, 15),
        date(2025, 7, 15),
        date(2025, 10, 15),
        date(2026, 1, 15),
    ]
    assert all(i.status == InstallmentStatus.PENDING for i in record.installments)
    assert record.next_due_date == date(2025, 4, 15)
    assert record.next_due_amount == Decimal("3000.00")


@pytest.mark.asyncio
async def test_assign_applies_eligible_discounts(db_session, school) -> None:
    rules = [
        {
            "name": "Sibling",
            "category": "SIBLING",
            "discount_type": "Percentage",
            "value": "10",
            "applicable_to": ["Tuition"],
        }
    ]
    template = await create_template(db_session, school, discount_rules=rules)
    sibling = await enroll(db_session, school, name="Bala", flags=["SIBLING"])
    other = await enroll(db_session, school, name="Chitra")

    await _assign(db_session, school, template.id, class_id=school.class_id)

    discounted = await service.get_fee_record(db_session, school.tenant_id, sibling, as_of=AY_START)
    assert discounted.total_discount == Decimal("1000.00")
    assert discounted.net_fee_amount == Decimal("11000.00")
    assert [i.amount for i in discounted.installments] == [Decimal("2750.00")] * 4
    assert discounted.applied_discounts[0]["rule_name"] == "Sibling"

    full = await service.get_fee_record(db_session, school.tenant_id, other, as_of=AY_START)
    assert full.net_fee_amount == Decimal("12000.00")
    assert full.applied_discounts == []


@pytest.mark.asyncio
async def test_assign_with_optional_component_and_plan(db_session, school) -> None:
    template = await create_template(db_session, school)
    student_id = await enroll(db_session, school)

    await _assign(
        db_session, school, template.id, student_id=student_id, installment_plan="Annual", selected_optional=["Lab"]
    )
    record = await service.get_fee_record(db_session, school.tenant_id, student_id, as_of=AY_START)
    assert record.installment_plan == "Annual"
    assert record.net_fee_amount == Decimal("13500.00")
    assert len(record.installments) == 1
    assert record.installments[0].due_date == date(2025, 4, 30)


@pytest.mark.asyncio
async def test_unknown_plan_rejected(db_session, school) -> None:
    template = await create_template(db_session, school)
    student_id = await enroll(db_session, school)
    with pytest.raises(InvalidPlan):
        await _assign(db_session, school, template.id, student_id=student_id, installment_plan="Weekly")


@pytest.mark.asyncio
async def test_reassigning_same_template_is_idempotent(db_session, school) -> None:
    template = await create_template(db_session, school)
    student_id = await enroll(db_session, school)

    first = await _assign(db_session, school, template.id, student_id=student_id)
    second = await _assign(db_session, school, template.id, student_id=student_id)
    assert first.fee_record_ids == second.fee_record_ids


@pytest.mark.asyncio
async def test_assignment_losing_insert_race_returns_winner(db_session, school, monkeypatch) -> None:
    template = await create_template(db_session, school)
    student_id = await enroll(db_session, school)
    first = await _assign(db_session, school, template.id, student_id=student_id)

    find_record = service._find_record
    lookups = []

    async def lookup_before_winner_commits(*args, **kwargs):
        # The existence check misses the concurrent record; the insert then hits the unique constraint
        lookups.append(args)
        if len(lookups) == 1:
            return None
        return await find_record(*args, **kwargs)

    monkeypatch.setattr(service, "_find_record", lookup_before_winner_commits)
    second = await _assign(db_session, school, template.id, student_id=student_id)

    assert len(lookups) == 2
    assert second.succeeded == [student_id]
    assert second.fee_record_ids == first.fee_record_ids
    count = (await db_session.execute(select(func.count()).select_from(FeeRecord))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_different_template_for_same_year_conflicts(db_session, school) -> None:
    template = await create_template(db_session, school)
    other = await create_template(db_session, school, name="Fees 2025 revised")
    student_id = await enroll(db_session, school)

    await _assign(db_session, school, template.id, student_id=student_id)
    with pytest.raises(ConflictError):
        await _assign(db_session, school, other.id, student_id=student_id)


@pytest.mark.asyncio
async def test_student_without_enrollment_not_found(db_session, school) -> None:
    template = await create_template(db_session, school)
    left = await enroll(db_session, school, status="LEFT")
    with pytest.raises(NotFoundError):
        await _assign(db_session, school, template.id, student_id=left)


@pytest.mark.asyncio
async def test_class_assignment_collects_failures(db_session, school) -> None:
    template = await create_template(db_session, school)
    other = await create_template(db_session, school, name="Fees 2025 revised")
    first = await enroll(db_session, school, name="A")
    taken = await enroll(db_session, school, name="B")
    third = await enroll(db_session, school, name="C")
    await enroll(db_session, school, name="D", status="LEFT")
    await _assign(db_session, school, other.id, student_id=taken)

    result = await _assign(db_session, school, template.id, class_id=school.class_id)

    assert sorted(result.succeeded) == sorted([first, third])
    assert [f.student_id for f in result.failed] == [taken]
    assert "different fee template" in result.failed[0].reason
    assert len(result.fee_record_ids) == 2


@pytest.mark.asyncio
async def test_class_mismatch_rejected(db_session, school) -> None:
    template = await create_template(db_session, school)
    with pytest.raises(ValidationError):
        await _assign(db_session, school, template.id, class_id=school.academic_year_id)


@pytest.mark.asyncio
async def test_next_year_supersedes_and_carries_advance_credit(db_session, school) -> None:
    template = await create_template(
        db_session, school, payment_policy={"allow_partial_payment": True, "allow_advance_credit": True}
    )
    student_id = await enroll(db_session, school)
    result = await _assign(db_session, school, template.id, student_id=student_id)
    old_record_id = result.fee_record_ids[0]

    await service.record_payment(
        db_session,
        school.tenant_id,
        old_record_id,
        PaymentCreate(
            amount=Decimal("12500"),
            payment_mode="Cash",
            idempotency_key="txn-advance",
            paid_at=datetime(2025, 4, 10, 9, 0, tzinfo=timezone.utc),
        ),
        ACCOUNTANT_ID,
    )

    next_year = await add_academic_year(db_session, school, date(2026, 4, 1))
    await enroll(db_session, next_year, student_id=student_id)
    next_template = await create_template(db_session, next_year)
    new = await _assign(db_session, next_year, next_template.id, as_of=date(2026, 4, 1), student_id=student_id)
    new_record_id = new.fee_record_ids[0]

    old = await service.get_fee_record(
        db_session, school.tenant_id, student_id, academic_year_id=school.academic_year_id, as_of=date(2026, 4, 1)
    )
    assert old.is_active is False
    assert old.superseded_by_id == new_record_id
    assert old.advance_credit == Decimal("0.00")
    assert old.overall_status == FeeRecordStatus.PAID

    current = await service.get_fee_record(db_session, school.tenant_id, student_id, as_of=date(2026, 4, 1))
    assert current.id == new_record_id
    assert current.total_paid == Decimal("500.00")
    assert current.installments[0].amount_paid == Decimal("500.00")
    assert current.balance == Decimal("11500.00")

    history = await service.get_payment_history(
        db_session, school.tenant_id, student_id, academic_year_id=next_year.academic_year_id
    )
    assert [p.payment_mode for p in history] == [PaymentMode.ADVANCE_CREDIT.value]
    assert history[0].idempotency_key == f"advance-credit:{old_record_id}"

    with pytest.raises(PolicyViolationError):
        await service.record_payment(
            db_session,
            school.tenant_id,
            old_record_id,
            PaymentCreate(amount=Decimal("100"), payment_mode="Cash", idempotency_key="txn-late"),
            ACCOUNTANT_ID,
        )
