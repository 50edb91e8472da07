"""Fee payment: immutable record of one confirmed money movement against a fee record."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.dialects.postgresql import UUID

from app.db.session import Base


class FeePayment(Base):
    """
    Append-only. Corrections are new offsetting rows (negative amount, reverses_payment_id set), never edits.
    allocations: [{installment_number, installment_name, principal_applied, late_fee_applied}].
    idempotency_key makes a retried submission return the original row.
    """

    __tablename__ = "fee_payments"
    __table_args__ = {"schema": "school"}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    fee_record_id = Column(
        UUID(as_uuid=True),
        ForeignKey("school.fee_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    student_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    receipt_number = Column(String(40), nullable=False, unique=True)
    idempotency_key = Column(String(128), nullable=False, unique=True)

    amount = Column(Numeric(12, 2), nullable=False)
    principal_amount = Column(Numeric(12, 2), nullable=False, default=0)
    late_fee_amount = Column(Numeric(12, 2), nullable=False, default=0)
    advance_credit_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_mode = Column(String(30), nullable=False)
    payment_metadata = Column(JSON, nullable=False, default=dict)  # cheque number, gateway transaction id, ...
    allocations = Column(JSON, nullable=False, default=list)

    reverses_payment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("school.fee_payments.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
    )
    reason = Column(String(500), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=False)
    recorded_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
