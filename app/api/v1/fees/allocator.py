"""
Payment allocator: validate a payment against the payment policy and split it across outstanding installments.

Allocation order is oldest due date first; within an installment its accrued late fee is settled before
its principal. Anything left after every installment is cleared is advance credit.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence

from app.core.enums import PaymentMode
from app.core.exceptions import (
    InvalidAmount,
    OverpaymentError,
    PartialNotAllowed,
    PolicyViolationError,
)

from .money import ZERO, to_decimal, to_money
from .schemas import PaymentPolicySpec

# Modes the engine writes itself; never accepted from a caller
INTERNAL_MODES = frozenset({PaymentMode.ADVANCE_CREDIT, PaymentMode.REVERSAL})


class AllocatableInstallment(Protocol):
    installment_number: int
    name: str
    due_date: date
    amount: Decimal
    amount_paid: Decimal
    late_fee: Decimal
    late_fee_paid: Decimal


@dataclass
class AllocationLine:
    installment_number: int
    installment_name: str
    principal_applied: Decimal = ZERO
    late_fee_applied: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.principal_applied + self.late_fee_applied

    def as_dict(self) -> dict:
        return {
            "installment_number": self.installment_number,
            "installment_name": self.installment_name,
            "principal_applied": str(self.principal_applied),
            "late_fee_applied": str(self.late_fee_applied),
        }


@dataclass
class AllocationPlan:
    lines: List[AllocationLine] = field(default_factory=list)
    remainder: Decimal = ZERO

    @property
    def principal_total(self) -> Decimal:
        return sum((line.principal_applied for line in self.lines), ZERO)

    @property
    def late_fee_total(self) -> Decimal:
        return sum((line.late_fee_applied for line in self.lines), ZERO)

    @property
    def allocated_total(self) -> Decimal:
        return self.principal_total + self.late_fee_total


def outstanding_principal(inst: AllocatableInstallment) -> Decimal:
    return max(to_decimal(inst.amount) - to_decimal(inst.amount_paid), ZERO)


def outstanding_late_fee(inst: AllocatableInstallment) -> Decimal:
    return max(to_decimal(inst.late_fee) - to_decimal(inst.late_fee_paid), ZERO)


def outstanding(inst: AllocatableInstallment) -> Decimal:
    return outstanding_principal(inst) + outstanding_late_fee(inst)


def outstanding_installments(installments: Sequence[AllocatableInstallment]) -> List[AllocatableInstallment]:
    """Installments with principal or late fee still owed, oldest due date first."""
    pending = [inst for inst in installments if outstanding(inst) > ZERO]
    return sorted(pending, key=lambda inst: (inst.due_date, inst.installment_number))


def total_outstanding(installments: Sequence[AllocatableInstallment]) -> Decimal:
    return sum((outstanding(inst) for inst in installments), ZERO)


def parse_payment_mode(mode: str) -> Optional[PaymentMode]:
    normalized = (mode or "").strip().lower()
    for candidate in PaymentMode:
        if candidate.value.lower() == normalized or candidate.name.lower() == normalized:
            return candidate
    return None


def validate_payment(
    installments: Sequence[AllocatableInstallment],
    amount: Decimal,
    mode: str,
    policy: PaymentPolicySpec,
) -> PaymentMode:
    """Check a caller-submitted payment against the record and policy. Returns the parsed payment mode."""
    amount = to_decimal(amount)
    if amount <= ZERO:
        raise InvalidAmount("Payment amount must be greater than zero")
    if to_money(amount) != amount:
        raise InvalidAmount("Payment amount cannot have more than two decimal places")

    parsed = parse_payment_mode(mode)
    if parsed is None or parsed in INTERNAL_MODES or parsed not in policy.accepted_payment_modes:
        raise PolicyViolationError(f"Payment mode '{mode}' is not accepted for this fee")

    pending = outstanding_installments(installments)
    owed = total_outstanding(pending)
    if owed <= ZERO:
        raise PolicyViolationError("Fee is already fully paid")

    if not policy.allow_partial_payment:
        first = pending[0]
        required = outstanding(first)
        if amount < required:
            raise PartialNotAllowed(
                f"Partial payments are not allowed: at least {required} is needed to clear '{first.name}'"
            )
    elif amount < policy.min_partial_amount and amount < owed:
        raise PolicyViolationError(
            f"Payment amount {amount} is below the minimum partial payment of {policy.min_partial_amount}"
        )

    if amount > owed and not policy.allow_advance_credit:
        raise OverpaymentError(f"Payment amount {amount} exceeds the outstanding amount {owed}")
    return parsed


def plan_allocation(installments: Sequence[AllocatableInstallment], amount: Decimal) -> AllocationPlan:
    """Pure split of `amount`; does not touch the installments."""
    remaining = to_decimal(amount)
    plan = AllocationPlan()
    for inst in outstanding_installments(installments):
        if remaining <= ZERO:
            break
        late = min(remaining, outstanding_late_fee(inst))
        remaining -= late
        principal = min(remaining, outstanding_principal(inst))
        remaining -= principal
        if late > ZERO or principal > ZERO:
            plan.lines.append(
                AllocationLine(
                    installment_number=inst.installment_number,
                    installment_name=inst.name,
                    principal_applied=principal,
                    late_fee_applied=late,
                )
            )
    plan.remainder = max(remaining, ZERO)
    return plan
