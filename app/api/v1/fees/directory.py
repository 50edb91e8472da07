"""Read-only access to student enrollments, owned by the student records service."""

from typing import Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.models import StudentAcademicRecord

ACTIVE_ENROLLMENT = "ACTIVE"


async def get_enrollment(
    db: AsyncSession,
    tenant_id: UUID,
    student_id: UUID,
    academic_year_id: UUID,
) -> Optional[StudentAcademicRecord]:
    result = await db.execute(
        select(StudentAcademicRecord).where(
            StudentAcademicRecord.tenant_id == tenant_id,
            StudentAcademicRecord.student_id == student_id,
            StudentAcademicRecord.academic_year_id == academic_year_id,
        )
    )
    return result.scalar_one_or_none()


async def list_active_enrollments(
    db: AsyncSession,
    tenant_id: UUID,
    class_id: UUID,
    academic_year_id: UUID,
) -> List[StudentAcademicRecord]:
    result = await db.execute(
        select(StudentAcademicRecord)
        .where(
            StudentAcademicRecord.tenant_id == tenant_id,
            StudentAcademicRecord.class_id == class_id,
            StudentAcademicRecord.academic_year_id == academic_year_id,
            StudentAcademicRecord.status == ACTIVE_ENROLLMENT,
        )
        .order_by(StudentAcademicRecord.roll_number, StudentAcademicRecord.student_name)
    )
    return list(result.scalars().all())


async def student_names(
    db: AsyncSession,
    tenant_id: UUID,
    student_ids: Iterable[UUID],
) -> Dict[UUID, Optional[str]]:
    ids = set(student_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(StudentAcademicRecord.student_id, StudentAcademicRecord.student_name).where(
            StudentAcademicRecord.tenant_id == tenant_id,
            StudentAcademicRecord.student_id.in_(ids),
        )
    )
    names: Dict[UUID, Optional[str]] = {}
    for student_id, name in result.all():
        if name or student_id not in names:
            names[student_id] = name
    return names
