"""Fee template: components, installment plans, discount rules and late-fee policy per class per academic year."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.enums import DiscountStacking, OverdueLabelPolicy
from app.db.session import Base


class FeeTemplate(Base):
    """
    Fee configuration for one class in one academic year.
    Nested configuration (components, plans, rules, policies) is stored as JSON and validated
    through the pydantic specs in app.api.v1.fees.schemas before it is written.
    """

    __tablename__ = "fee_templates"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_fee_template_tenant_name"),
        CheckConstraint(
            "discount_stacking IN ('ADDITIVE','HIGHEST_ONLY')",
            name="chk_fee_template_discount_stacking",
        ),
        CheckConstraint(
            "overdue_label_policy IN ('PARTIAL_FIRST','OVERDUE_FIRST')",
            name="chk_fee_template_overdue_label_policy",
        ),
        {"schema": "school"},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    academic_year_id = Column(
        UUID(as_uuid=True),
        ForeignKey("core.academic_years.id", ondelete="RESTRICT"),
        nullable=False,
    )
    class_id = Column(UUID(as_uuid=True), ForeignKey("core.classes.id", ondelete="CASCADE"), nullable=False)

    components = Column(JSON, nullable=False)
    installment_plans = Column(JSON, nullable=False)
    default_plan = Column(String(50), nullable=False)
    discount_rules = Column(JSON, nullable=False, default=list)
    discount_stacking = Column(String(20), nullable=False, default=DiscountStacking.ADDITIVE.value)
    overdue_label_policy = Column(String(20), nullable=False, default=OverdueLabelPolicy.PARTIAL_FIRST.value)
    late_fee_policy = Column(JSON, nullable=False)
    payment_policy = Column(JSON, nullable=False)

    notes = Column(String(1000), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    academic_year = relationship("AcademicYear", lazy="joined")
