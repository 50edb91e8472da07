"""Model mappings and column types on the test database."""

import uuid
from datetime import date

import pytest
from sqlalchemy import select

from app.core.models import AcademicYear, FeeTemplate


@pytest.mark.asyncio
async def test_all_digit_uuid_round_trips(db_session) -> None:
    tenant_id = uuid.UUID("11111111-1111-1111-1111-111111111111")
    db_session.add(
        AcademicYear(
            id=uuid.UUID("22222222-2222-2222-2222-222222222222"),
            tenant_id=tenant_id,
            name="2025-2026",
            start_date=date(2025, 4, 1),
            end_date=date(2026, 3, 31),
            status="ACTIVE",
        )
    )
    await db_session.commit()
    db_session.expunge_all()

    loaded = (await db_session.execute(select(AcademicYear).where(AcademicYear.tenant_id == tenant_id))).scalar_one()
    assert loaded.tenant_id == tenant_id
    assert loaded.id == uuid.UUID("22222222-2222-2222-2222-222222222222")


def test_fee_template_loads_only_its_academic_year() -> None:
    assert set(FeeTemplate.__mapper__.relationships.keys()) == {"academic_year"}
