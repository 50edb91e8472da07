from app.core.models.academic_year import AcademicYear
from app.core.models.class_model import SchoolClass
from app.core.models.student_academic_record import StudentAcademicRecord
from app.core.models.fee_template import FeeTemplate
from app.core.models.fee_record import FeeInstallment, FeeRecord
from app.core.models.fee_payment import FeePayment
from app.core.models.fee_audit_log import FeeAuditLog

__all__ = [
    "AcademicYear",
    "SchoolClass",
    "StudentAcademicRecord",
    "FeeTemplate",
    "FeeRecord",
    "FeeInstallment",
    "FeePayment",
    "FeeAuditLog",
]
