"""
Installment and fee record status rules.

Installment: Pending -> {PartiallyPaid, Paid, Overdue}; Overdue -> {PartiallyPaid, Paid};
PartiallyPaid -> {Paid}; Paid is terminal. Only a payment reversal moves an installment backwards.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable

from app.core.enums import FeeRecordStatus, InstallmentStatus, OverdueLabelPolicy

from .late_fee import grace_period_end
from .money import ZERO, to_decimal

ALLOWED_TRANSITIONS = {
    InstallmentStatus.PENDING: {
        InstallmentStatus.PARTIALLY_PAID,
        InstallmentStatus.PAID,
        InstallmentStatus.OVERDUE,
    },
    InstallmentStatus.OVERDUE: {InstallmentStatus.PARTIALLY_PAID, InstallmentStatus.PAID},
    InstallmentStatus.PARTIALLY_PAID: {InstallmentStatus.PAID},
    InstallmentStatus.PAID: set(),
}


def is_overdue(amount_paid: Decimal, amount: Decimal, due_date: date, grace_days: int, today: date) -> bool:
    """Principal still owed and the grace period has ended. Independent of the status label."""
    return to_decimal(amount_paid) < to_decimal(amount) and today > grace_period_end(due_date, grace_days)


def installment_status(
    amount_paid: Decimal,
    amount: Decimal,
    due_date: date,
    grace_days: int,
    today: date,
    label_policy: OverdueLabelPolicy = OverdueLabelPolicy.PARTIAL_FIRST,
) -> InstallmentStatus:
    amount_paid = to_decimal(amount_paid)
    if amount_paid >= to_decimal(amount):
        return InstallmentStatus.PAID
    past_grace = today > grace_period_end(due_date, grace_days)
    if amount_paid > ZERO:
        if past_grace and label_policy == OverdueLabelPolicy.OVERDUE_FIRST:
            return InstallmentStatus.OVERDUE
        return InstallmentStatus.PARTIALLY_PAID
    if past_grace:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def can_transition(
    current: InstallmentStatus,
    new: InstallmentStatus,
    label_policy: OverdueLabelPolicy = OverdueLabelPolicy.PARTIAL_FIRST,
) -> bool:
    if current == new:
        return True
    if (
        label_policy == OverdueLabelPolicy.OVERDUE_FIRST
        and current == InstallmentStatus.PARTIALLY_PAID
        and new == InstallmentStatus.OVERDUE
    ):
        return True
    return new in ALLOWED_TRANSITIONS[current]


def record_status(statuses: Iterable[InstallmentStatus], any_payment: bool) -> FeeRecordStatus:
    statuses = list(statuses)
    if statuses and all(s == InstallmentStatus.PAID for s in statuses):
        return FeeRecordStatus.PAID
    if any(s == InstallmentStatus.OVERDUE for s in statuses):
        return FeeRecordStatus.OVERDUE
    if any_payment:
        return FeeRecordStatus.PARTIALLY_PAID
    return FeeRecordStatus.NOT_STARTED
