import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from app.db.session import Base


class StudentAcademicRecord(Base):
    """
    Student enrollment per academic year, written by the student records service.
    One record per (student, academic_year). Only ACTIVE enrollments receive class-wide fee assignments.
    eligibility_flags carries discount categories the student qualifies for, e.g. ["SIBLING", "MERIT"].
    """

    __tablename__ = "student_academic_records"
    __table_args__ = (
        UniqueConstraint("student_id", "academic_year_id", name="uq_student_academic_record_year"),
        {"schema": "school"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    student_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    student_name = Column(String(255), nullable=True)
    academic_year_id = Column(
        UUID(as_uuid=True),
        ForeignKey("core.academic_years.id", ondelete="RESTRICT"),
        nullable=False,
    )
    class_id = Column(UUID(as_uuid=True), ForeignKey("core.classes.id"), nullable=False)
    roll_number = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="ACTIVE")  # ACTIVE | PROMOTED | LEFT
    eligibility_flags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
