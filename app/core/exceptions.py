from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    code = "SERVICE_ERROR"

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(ServiceError):
    """Malformed template, plan, discount or amount. Raised at configuration/request time."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class InvalidDiscountRule(ValidationError):
    code = "INVALID_DISCOUNT_RULE"


class InvalidPlan(ValidationError):
    code = "INVALID_PLAN"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class NotFoundError(ServiceError):
    code = "NOT_FOUND"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class ConflictError(ServiceError):
    """Concurrent write or idempotency collision."""

    code = "CONFLICT"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class PolicyViolationError(ServiceError):
    """Request is well-formed but the fee template's payment policy forbids it."""

    code = "POLICY_VIOLATION"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY)


class PartialNotAllowed(PolicyViolationError):
    code = "PARTIAL_NOT_ALLOWED"


class OverpaymentError(PolicyViolationError):
    code = "OVERPAYMENT"


class AccrualError(ServiceError):
    """Late-fee recompute failed for one record. Non-fatal for the batch."""

    code = "ACCRUAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)


class InvariantViolation(ServiceError):
    """A fee record would be left in an impossible state (e.g. negative balance)."""

    code = "INVARIANT_VIOLATION"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)
