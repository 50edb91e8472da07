import uuid
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, String
from sqlalchemy.dialects.postgresql import UUID

from app.db.session import Base


class AcademicYear(Base):
    """
    Academic year per tenant (school). Owned by the academic calendar service; read-only here.
    start_date anchors installment due dates: plan months before the start month fall in the next calendar year.
    CLOSED years accept no new fee assignments.
    """

    __tablename__ = "academic_years"
    __table_args__ = {"schema": "core"}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(50), nullable=False)  # e.g. "2025-2026"
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="ACTIVE")  # ACTIVE | CLOSED
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
