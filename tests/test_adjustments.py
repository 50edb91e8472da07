"""Concessions and one-off discounts granted on an assigned fee record."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from app.api.v1.fees import service
from app.api.v1.fees.schemas import AssignTemplateRequest, FeeConcessionCreate, FeeDiscountCreate, PaymentCreate
from app.core.enums import FeeRecordStatus, InstallmentStatus
from app.core.exceptions import ConflictError, InvalidDiscountRule, NotFoundError, PolicyViolationError
from app.core.models import FeeAuditLog

from factories import ACCOUNTANT_ID, create_template, enroll

AS_OF = date(2025, 4, 20)


async def _record_for(db, school):
    template = await create_template(db, school)
    student_id = await enroll(db, school)
    result = await service.assign_template(
        db,
        school.tenant_id,
        template.id,
        AssignTemplateRequest(student_id=student_id),
        ACCOUNTANT_ID,
        as_of=date(2025, 4, 1),
    )
    return student_id, result.fee_record_ids[0]


async def _pay(db, school, record_id, amount, key):
    return await service.record_payment(
        db,
        school.tenant_id,
        record_id,
        PaymentCreate(
            amount=Decimal(amount),
            payment_mode="Cash",
            idempotency_key=key,
            paid_at=datetime(2025, 4, 10, 9, 0, tzinfo=timezone.utc),
        ),
        ACCOUNTANT_ID,
    )


async def _waive(db, school, record_id, amount, reason="Single parent household"):
    return await service.waive_fee(
        db,
        school.tenant_id,
        record_id,
        FeeConcessionCreate(amount=Decimal(amount), reason=reason),
        ACCOUNTANT_ID,
        as_of=AS_OF,
    )


async def _discount(db, school, record_id, discount_type, value, name="Staff child"):
    return await service.apply_discount(
        db,
        school.tenant_id,
        record_id,
        FeeDiscountCreate(name=name, discount_type=discount_type, value=Decimal(value)),
        ACCOUNTANT_ID,
        as_of=AS_OF,
    )


@pytest.mark.asyncio
async def test_concession_reduces_open_installments(db_session, school) -> None:
    _, record_id = await _record_for(db_session, school)
    await _pay(db_session, school, record_id, "3000", "txn-q1")

    record = await _waive(db_session, school, record_id, "1200")

    assert record.concession_amount == Decimal("1200.00")
    assert record.concession_reason == "Single parent household"
    assert record.concession_approved_by == ACCOUNTANT_ID
    assert record.concession_approved_on is not None
    assert record.net_fee_amount == Decimal("10800.00")
    assert [i.amount for i in record.installments] == [
        Decimal("3000.00"),
        Decimal("2600.00"),
        Decimal("2600.00"),
        Decimal("2600.00"),
    ]
    assert record.total_paid == Decimal("3000.00")
    assert record.balance == Decimal("7800.00")
    assert record.next_due_amount == Decimal("2600.00")

    logs = (
        await db_session.execute(
            select(FeeAuditLog).where(FeeAuditLog.reference_id == record_id, FeeAuditLog.action_type == "CONCESSION")
        )
    ).scalars().all()
    assert len(logs) == 1
    assert logs[0].old_value["net_fee_amount"] == "12000.00"
    assert logs[0].new_value["net_fee_amount"] == "10800.00"
    assert logs[0].new_value["concession"]["amount"] == "1200.00"


@pytest.mark.asyncio
async def test_concessions_accumulate(db_session, school) -> None:
    _, record_id = await _record_for(db_session, school)
    await _waive(db_session, school, record_id, "1000")
    record = await _waive(db_session, school, record_id, "500", reason="Scholarship top-up")

    assert record.concession_amount == Decimal("1500.00")
    assert record.concession_reason == "Scholarship top-up"
    assert record.net_fee_amount == Decimal("10500.00")
    assert [i.amount for i in record.installments] == [Decimal("2625.00")] * 4
    assert sum(i.amount for i in record.installments) == record.net_fee_amount


@pytest.mark.asyncio
async def test_concession_of_remaining_fee_settles_record(db_session, school) -> None:
    _, record_id = await _record_for(db_session, school)
    await _pay(db_session, school, record_id, "2000", "txn-part")

    record = await _waive(db_session, school, record_id, "10000")

    assert record.balance == Decimal("0.00")
    assert record.overall_status == FeeRecordStatus.PAID
    assert [i.amount for i in record.installments] == [Decimal("2000.00"), Decimal("0"), Decimal("0"), Decimal("0")]
    assert all(i.status == InstallmentStatus.PAID for i in record.installments)
    assert record.next_due_date is None


@pytest.mark.asyncio
async def test_concession_beyond_outstanding_rejected(db_session, school) -> None:
    student_id, record_id = await _record_for(db_session, school)
    await _pay(db_session, school, record_id, "3000", "txn-q1")

    with pytest.raises(PolicyViolationError):
        await _waive(db_session, school, record_id, "9000.01")

    record = await service.get_fee_record(db_session, school.tenant_id, student_id, as_of=AS_OF)
    assert record.net_fee_amount == Decimal("12000.00")
    assert record.concession_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_adhoc_percentage_discount(db_session, school) -> None:
    _, record_id = await _record_for(db_session, school)

    record = await _discount(db_session, school, record_id, "Percentage", "10")

    assert record.total_discount == Decimal("1200.00")
    assert record.net_fee_amount == Decimal("10800.00")
    assert record.balance == Decimal("10800.00")
    assert [i.amount for i in record.installments] == [Decimal("2700.00")] * 4
    applied = record.applied_discounts[-1]
    assert applied["rule_name"] == "Staff child"
    assert applied["category"] == "ADHOC"
    assert applied["amount"] == "1200.00"
    assert applied["applied_by"] == str(ACCOUNTANT_ID)


@pytest.mark.asyncio
async def test_adhoc_fixed_discount_adds_to_total_discount(db_session, school) -> None:
    _, record_id = await _record_for(db_session, school)
    await _discount(db_session, school, record_id, "FixedAmount", "400", name="Sports quota")
    record = await _discount(db_session, school, record_id, "FixedAmount", "400", name="Alumni")

    assert record.total_discount == Decimal("800.00")
    assert record.net_fee_amount == Decimal("11200.00")
    assert [d["rule_name"] for d in record.applied_discounts] == ["Sports quota", "Alumni"]


@pytest.mark.asyncio
async def test_percentage_discount_over_hundred_rejected(db_session, school) -> None:
    _, record_id = await _record_for(db_session, school)
    with pytest.raises(InvalidDiscountRule):
        await _discount(db_session, school, record_id, "Percentage", "150")


@pytest.mark.asyncio
async def test_adjustment_of_unknown_record_not_found(db_session, school) -> None:
    with pytest.raises(NotFoundError):
        await _waive(db_session, school, uuid.uuid4(), "100")


@pytest.mark.asyncio
async def test_concurrent_modification_surfaces_as_conflict(db_session, school, monkeypatch) -> None:
    student_id, record_id = await _record_for(db_session, school)

    async def stale_commit():
        raise StaleDataError("fee_records row was updated by another writer")

    monkeypatch.setattr(db_session, "commit", stale_commit)
    with pytest.raises(ConflictError):
        await _waive(db_session, school, record_id, "500")
    monkeypatch.undo()

    record = await service.get_fee_record(db_session, school.tenant_id, student_id, as_of=AS_OF)
    assert record.net_fee_amount == Decimal("12000.00")
