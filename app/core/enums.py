from enum import Enum


class FeeFrequency(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    HALF_YEARLY = "Half-Yearly"
    ANNUAL = "Annual"
    ONE_TIME = "One-Time"


class DiscountType(str, Enum):
    PERCENTAGE = "Percentage"
    FIXED_AMOUNT = "FixedAmount"


class DiscountStacking(str, Enum):
    """How several eligible discounts on one component combine."""

    ADDITIVE = "ADDITIVE"
    HIGHEST_ONLY = "HIGHEST_ONLY"


class OverdueLabelPolicy(str, Enum):
    """Which label wins when an installment is both past due and partially paid."""

    PARTIAL_FIRST = "PARTIAL_FIRST"
    OVERDUE_FIRST = "OVERDUE_FIRST"


class LateFeeType(str, Enum):
    PER_DAY = "PerDay"
    FLAT = "Flat"
    PERCENTAGE = "Percentage"


class PaymentMode(str, Enum):
    CASH = "Cash"
    CHEQUE = "Cheque"
    BANK_TRANSFER = "Bank Transfer"
    UPI = "UPI"
    CARD = "Card"
    NET_BANKING = "Net Banking"
    ONLINE_GATEWAY = "Online Gateway"
    # Internal modes, never accepted from callers
    ADVANCE_CREDIT = "Advance Credit"
    REVERSAL = "Reversal"


class InstallmentStatus(str, Enum):
    PENDING = "Pending"
    PARTIALLY_PAID = "PartiallyPaid"
    PAID = "Paid"
    OVERDUE = "Overdue"


class FeeRecordStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    PARTIALLY_PAID = "PartiallyPaid"
    PAID = "Paid"
    OVERDUE = "Overdue"
