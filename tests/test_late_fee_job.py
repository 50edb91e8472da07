"""Daily late-fee recompute over stored fee records."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.api.v1.fees import service
from app.api.v1.fees.schemas import AssignTemplateRequest, PaymentCreate
from app.core.enums import FeeRecordStatus, InstallmentStatus
from app.core.models import FeeAuditLog, FeeTemplate

from factories import ACCOUNTANT_ID, create_template, enroll


async def _assigned_record(db, school, **template_overrides):
    template = await create_template(db, school, **template_overrides)
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


@pytest.mark.asyncio
async def test_recompute_accrues_and_marks_overdue(db_session, school) -> None:
    student_id, record_id = await _assigned_record(db_session, school)

    run = await service.recompute_late_fees(db_session, as_of=date(2025, 4, 22))
    assert (run.processed, run.updated, run.failed) == (1, 1, [])

    record = await service.get_fee_record(db_session, school.tenant_id, student_id, as_of=date(2025, 4, 22))
    assert record.installments[0].late_fee == Decimal("20.00")
    assert record.installments[0].status == InstallmentStatus.OVERDUE
    assert record.total_late_fee == Decimal("20.00")
    assert record.balance == Decimal("12020.00")
    assert record.overall_status == FeeRecordStatus.OVERDUE


@pytest.mark.asyncio
async def test_recompute_is_idempotent_for_same_date(db_session, school) -> None:
    student_id, record_id = await _assigned_record(db_session, school)

    await service.recompute_late_fees(db_session, as_of=date(2025, 4, 25))
    again = await service.recompute_late_fees(db_session, as_of=date(2025, 4, 25))
    assert again.updated == 0

    earlier = await service.recompute_late_fees(db_session, as_of=date(2025, 4, 21))
    assert earlier.updated == 0

    record = await service.get_fee_record_by_id(db_session, school.tenant_id, record_id, as_of=date(2025, 4, 25))
    assert record.total_late_fee == Decimal("50.00")

    logs = (
        await db_session.execute(
            select(FeeAuditLog).where(FeeAuditLog.reference_id == record_id, FeeAuditLog.action_type == "LATE_FEE")
        )
    ).scalars().all()
    assert len(logs) == 1


@pytest.mark.asyncio
async def test_late_fee_respects_cap(db_session, school) -> None:
    _, record_id = await _assigned_record(db_session, school)
    await service.recompute_late_fees(db_session, as_of=date(2025, 6, 30))

    record = await service.get_fee_record_by_id(db_session, school.tenant_id, record_id, as_of=date(2025, 6, 30))
    assert record.installments[0].late_fee == Decimal("500.00")
    assert record.installments[1].late_fee == Decimal("0.00")


@pytest.mark.asyncio
async def test_paid_records_are_skipped(db_session, school) -> None:
    _, record_id = await _assigned_record(db_session, school)
    await service.record_payment(
        db_session,
        school.tenant_id,
        record_id,
        PaymentCreate(
            amount=Decimal("12000"),
            payment_mode="Cash",
            idempotency_key="full",
            paid_at=datetime(2025, 4, 10, tzinfo=timezone.utc),
        ),
        ACCOUNTANT_ID,
    )
    run = await service.recompute_late_fees(db_session, as_of=date(2025, 12, 31))
    assert run.processed == 0


@pytest.mark.asyncio
async def test_recompute_scoped_to_tenant(db_session, school) -> None:
    await _assigned_record(db_session, school)
    run = await service.recompute_late_fees(db_session, as_of=date(2025, 4, 22), tenant_id=uuid.uuid4())
    assert run.processed == 0


@pytest.mark.asyncio
async def test_disabled_policy_only_updates_labels(db_session, school) -> None:
    _, record_id = await _assigned_record(
        db_session, school, late_fee_policy={"enabled": False, "grace_days": 5}
    )
    run = await service.recompute_late_fees(db_session, as_of=date(2025, 4, 22))
    assert run.updated == 1

    record = await service.get_fee_record_by_id(db_session, school.tenant_id, record_id, as_of=date(2025, 4, 22))
    assert record.total_late_fee == Decimal("0.00")
    assert record.overall_status == FeeRecordStatus.OVERDUE


@pytest.mark.asyncio
async def test_failing_record_does_not_stop_the_run(db_session, school) -> None:
    _, good_id = await _assigned_record(db_session, school)
    broken = await create_template(db_session, school, name="Transport only")
    student_id = await enroll(db_session, school, name="Dev")
    result = await service.assign_template(
        db_session,
        school.tenant_id,
        broken.id,
        AssignTemplateRequest(student_id=student_id),
        ACCOUNTANT_ID,
        as_of=date(2025, 4, 1),
    )
    broken_id = result.fee_record_ids[0]

    template = await db_session.get(FeeTemplate, broken.id)
    template.late_fee_policy = {"fee_type": "Weekly"}
    await db_session.commit()

    run = await service.recompute_late_fees(db_session, as_of=date(2025, 4, 22))
    assert run.processed == 2
    assert run.updated == 1
    assert run.failed == [broken_id]

    record = await service.get_fee_record_by_id(db_session, school.tenant_id, good_id, as_of=date(2025, 4, 22))
    assert record.total_late_fee == Decimal("20.00")
