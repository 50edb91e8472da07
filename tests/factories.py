"""Test data builders shared by the fee engine tests."""

import uuid
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fees import service
from app.api.v1.fees.schemas import FeeTemplateCreate, FeeTemplateResponse
from app.core.models import AcademicYear, SchoolClass, StudentAcademicRecord

TENANT_ID = uuid.UUID("a1a1a1a1-1111-4111-8111-111111111111")
ACCOUNTANT_ID = uuid.UUID("b2b2b2b2-2222-4222-8222-222222222222")


@dataclass
class School:
    """Plain ids only, so tests stay valid after a service rolls back the shared session."""

    tenant_id: uuid.UUID
    academic_year_id: uuid.UUID
    academic_year_start: date
    class_id: uuid.UUID


async def create_school(
    db: AsyncSession,
    start: date = date(2025, 4, 1),
    class_name: str = "Grade 5",
    status: str = "ACTIVE",
) -> School:
    ay = AcademicYear(
        id=uuid.uuid4(),
        tenant_id=TENANT_ID,
        name=f"{start.year}-{start.year + 1}",
        start_date=start,
        end_date=date(start.year + 1, start.month, 1),
        status=status,
    )
    cl = SchoolClass(id=uuid.uuid4(), tenant_id=TENANT_ID, name=class_name, display_order=5)
    db.add_all([ay, cl])
    await db.commit()
    return School(tenant_id=TENANT_ID, academic_year_id=ay.id, academic_year_start=start, class_id=cl.id)


async def add_academic_year(db: AsyncSession, school: School, start: date) -> School:
    """Next academic year for the same class."""
    ay = AcademicYear(
        id=uuid.uuid4(),
        tenant_id=school.tenant_id,
        name=f"{start.year}-{start.year + 1}",
        start_date=start,
        end_date=date(start.year + 1, start.month, 1),
        status="ACTIVE",
    )
    db.add(ay)
    await db.commit()
    return School(tenant_id=school.tenant_id, academic_year_id=ay.id, academic_year_start=start, class_id=school.class_id)


async def enroll(
    db: AsyncSession,
    school: School,
    name: str = "Student",
    flags: Optional[List[str]] = None,
    status: str = "ACTIVE",
    student_id: Optional[uuid.UUID] = None,
) -> uuid.UUID:
    student_id = student_id or uuid.uuid4()
    db.add(
        StudentAcademicRecord(
            tenant_id=school.tenant_id,
            student_id=student_id,
            student_name=name,
            academic_year_id=school.academic_year_id,
            class_id=school.class_id,
            roll_number=name,
            status=status,
            eligibility_flags=flags or [],
        )
    )
    await db.commit()
    return student_id


def quarterly_plan() -> dict:
    return {
        "plan_name": "Quarterly",
        "number_of_installments": 4,
        "due_dates": [
            {"installment_number": 1, "month": 4, "day": 15, "percentage": "25"},
            {"installment_number": 2, "month": 7, "day": 15, "percentage": "25"},
            {"installment_number": 3, "month": 10, "day": 15, "percentage": "25"},
            {"installment_number": 4, "month": 1, "day": 15, "percentage": "25"},
        ],
    }


def template_payload(school: School, **overrides) -> dict:
    """Tuition 10000 + Transport 2000 (mandatory) and an optional Lab fee, paid quarterly by default."""
    payload = {
        "name": f"Fees {school.academic_year_start.year}",
        "academic_year_id": str(school.academic_year_id),
        "class_id": str(school.class_id),
        "components": [
            {"name": "Tuition", "amount": "10000", "frequency": "Annual"},
            {"name": "Transport", "amount": "2000", "frequency": "Annual"},
            {"name": "Lab", "amount": "1500", "frequency": "Annual", "is_optional": True},
        ],
        "installment_plans": [
            quarterly_plan(),
            {
                "plan_name": "Annual",
                "number_of_installments": 1,
                "due_dates": [{"installment_number": 1, "month": 4, "day": 30, "percentage": "100"}],
            },
        ],
        "default_plan": "Quarterly",
        "discount_rules": [],
        "discount_stacking": "ADDITIVE",
        "overdue_label_policy": "PARTIAL_FIRST",
        "late_fee_policy": {
            "enabled": True,
            "fee_type": "PerDay",
            "amount_per_day": "10",
            "grace_days": 5,
            "max_late_fee": "500",
        },
        "payment_policy": {"allow_partial_payment": True},
    }
    payload.update(overrides)
    return payload


async def create_template(db: AsyncSession, school: School, **overrides) -> FeeTemplateResponse:
    payload = FeeTemplateCreate.model_validate(template_payload(school, **overrides))
    return await service.create_fee_template(db, school.tenant_id, payload, created_by=ACCOUNTANT_ID)
