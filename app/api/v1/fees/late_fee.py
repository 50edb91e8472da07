"""
Late fee calculator. Pure: the reference date is always passed in, nothing is read from the clock.

days_late counts whole days after the grace period ends (due_date + grace_days). Per-day fees grow with
days_late; flat and percentage fees accrue once. Every result is capped at the policy's max_late_fee.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Protocol

from app.core.enums import LateFeeType

from .money import HUNDRED, ZERO, to_decimal, to_money
from .schemas import LateFeePolicySpec


class InstallmentLike(Protocol):
    due_date: date
    amount: Decimal
    amount_paid: Decimal
    late_fee: Decimal


def grace_period_end(due_date: date, grace_days: int) -> date:
    return due_date + timedelta(days=grace_days)


def days_overdue(due_date: date, grace_days: int, as_of: date) -> int:
    """Whole days past the end of the grace period; 0 while still inside it."""
    return max((as_of - grace_period_end(due_date, grace_days)).days, 0)


def calculate_late_fee(installment: InstallmentLike, policy: LateFeePolicySpec, as_of: date) -> Decimal:
    # Fully paid: frozen at whatever accrued before the final payment
    if to_decimal(installment.amount_paid) >= to_decimal(installment.amount):
        return to_money(installment.late_fee)
    if not policy.enabled:
        return ZERO

    days_late = days_overdue(installment.due_date, policy.grace_days, as_of)
    if days_late <= 0:
        return ZERO

    if policy.fee_type == LateFeeType.PER_DAY:
        fee = policy.amount_per_day * days_late
    elif policy.fee_type == LateFeeType.FLAT:
        fee = policy.flat_amount
    else:
        fee = to_decimal(installment.amount) * policy.percentage / HUNDRED

    if policy.max_late_fee is not None:
        fee = min(fee, policy.max_late_fee)
    return to_money(max(fee, ZERO))
