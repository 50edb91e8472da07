"""Fee record: one student's fee obligation for an academic year, with its installments."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.enums import FeeRecordStatus, InstallmentStatus
from app.db.session import Base


class FeeRecord(Base):
    """
    Per-student aggregate and unit of consistency. balance = net_fee_amount + total_late_fee - total_paid.
    net_fee_amount already excludes total_discount (assignment-time and ad-hoc) and concession_amount.
    Every mutation bumps `version`; a concurrent writer holding a stale version fails with StaleDataError.
    Never deleted: a later academic-year assignment supersedes it.
    """

    __tablename__ = "fee_records"
    __table_args__ = (
        UniqueConstraint("student_id", "academic_year_id", name="uq_fee_record_student_year"),
        CheckConstraint("balance >= 0", name="chk_fee_record_balance_non_negative"),
        CheckConstraint(
            "overall_status IN ('NotStarted','PartiallyPaid','Paid','Overdue')",
            name="chk_fee_record_overall_status",
        ),
        {"schema": "school"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    student_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    class_id = Column(UUID(as_uuid=True), ForeignKey("core.classes.id"), nullable=False, index=True)
    academic_year_id = Column(
        UUID(as_uuid=True),
        ForeignKey("core.academic_years.id", ondelete="RESTRICT"),
        nullable=False,
    )
    fee_template_id = Column(
        UUID(as_uuid=True),
        ForeignKey("school.fee_templates.id", ondelete="RESTRICT"),
        nullable=False,
    )
    installment_plan = Column(String(50), nullable=False)

    # Per component: base, discount, tax portion, net (all strings of Decimal)
    component_breakdown = Column(JSON, nullable=False, default=list)
    applied_discounts = Column(JSON, nullable=False, default=list)

    gross_amount = Column(Numeric(12, 2), nullable=False)
    total_discount = Column(Numeric(12, 2), nullable=False, default=0)
    total_tax = Column(Numeric(12, 2), nullable=False, default=0)
    # Cumulative fee waiver; reason and approver describe the latest grant
    concession_amount = Column(Numeric(12, 2), nullable=False, default=0)
    concession_reason = Column(String(500), nullable=True)
    concession_approved_by = Column(UUID(as_uuid=True), nullable=True)
    concession_approved_on = Column(DateTime(timezone=True), nullable=True)
    net_fee_amount = Column(Numeric(12, 2), nullable=False)
    total_paid = Column(Numeric(12, 2), nullable=False, default=0)
    total_late_fee = Column(Numeric(12, 2), nullable=False, default=0)
    balance = Column(Numeric(12, 2), nullable=False)
    # Overpayment held for the next period's first installment (only when policy allows it)
    advance_credit = Column(Numeric(12, 2), nullable=False, default=0)

    overall_status = Column(String(20), nullable=False, default=FeeRecordStatus.NOT_STARTED.value, index=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    next_due_date = Column(Date, nullable=True)
    next_due_amount = Column(Numeric(12, 2), nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    superseded_by_id = Column(UUID(as_uuid=True), nullable=True)
    assigned_by = Column(UUID(as_uuid=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    installments = relationship(
        "FeeInstallment",
        back_populates="fee_record",
        order_by="FeeInstallment.installment_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    fee_template = relationship("FeeTemplate", lazy="joined")

    __mapper_args__ = {"version_id_col": version}


class FeeInstallment(Base):
    """One dated portion of a fee record. amount_paid covers principal only; late fee is tracked separately."""

    __tablename__ = "fee_installments"
    __table_args__ = (
        UniqueConstraint("fee_record_id", "installment_number", name="uq_fee_installment_record_number"),
        CheckConstraint("amount_paid <= amount", name="chk_fee_installment_paid_le_amount"),
        CheckConstraint("late_fee_paid <= late_fee", name="chk_fee_installment_late_fee_paid"),
        {"schema": "school"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    fee_record_id = Column(
        UUID(as_uuid=True),
        ForeignKey("school.fee_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    installment_number = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    due_date = Column(Date, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    late_fee = Column(Numeric(12, 2), nullable=False, default=0)
    late_fee_paid = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=InstallmentStatus.PENDING.value)
    paid_on = Column(DateTime(timezone=True), nullable=True)

    fee_record = relationship("FeeRecord", back_populates="installments")
