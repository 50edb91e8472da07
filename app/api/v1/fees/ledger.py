"""
Fee record aggregate operations: apply allocations and reversals to installments, accrue late fees, and
re-derive the record's totals and statuses. These mutate ORM objects in place; the caller flushes.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List

from app.core.enums import InstallmentStatus, OverdueLabelPolicy
from app.core.exceptions import ConflictError, InvariantViolation
from app.core.models import FeeInstallment, FeeRecord

from .allocator import AllocationLine, AllocationPlan, outstanding, outstanding_installments
from .late_fee import calculate_late_fee
from .money import ZERO, to_decimal, to_money
from .schedule import spread_reduction
from .schemas import LateFeePolicySpec
from .state import can_transition, installment_status, record_status


def _installments_by_number(record: FeeRecord) -> dict:
    return {inst.installment_number: inst for inst in record.installments}


def apply_allocation(record: FeeRecord, plan: AllocationPlan, paid_at: datetime) -> None:
    by_number = _installments_by_number(record)
    for line in plan.lines:
        inst: FeeInstallment = by_number[line.installment_number]
        inst.late_fee_paid = to_money(to_decimal(inst.late_fee_paid) + line.late_fee_applied)
        inst.amount_paid = to_money(to_decimal(inst.amount_paid) + line.principal_applied)
        if to_decimal(inst.amount_paid) >= to_decimal(inst.amount) and inst.paid_on is None:
            inst.paid_on = paid_at


def apply_reversal(record: FeeRecord, allocations: Iterable[dict]) -> List[AllocationLine]:
    """Undo a payment's allocations. Returns the negated lines for the reversal row."""
    by_number = _installments_by_number(record)
    reversed_lines = []
    for item in allocations:
        inst = by_number.get(int(item["installment_number"]))
        if inst is None:
            raise InvariantViolation(f"Installment {item['installment_number']} no longer exists on this record")
        principal = to_decimal(item.get("principal_applied"))
        late = to_decimal(item.get("late_fee_applied"))
        if to_decimal(inst.amount_paid) < principal or to_decimal(inst.late_fee_paid) < late:
            raise ConflictError(
                f"Installment {inst.installment_number} no longer holds the amounts this payment applied"
            )
        inst.amount_paid = to_money(to_decimal(inst.amount_paid) - principal)
        inst.late_fee_paid = to_money(to_decimal(inst.late_fee_paid) - late)
        if to_decimal(inst.amount_paid) < to_decimal(inst.amount):
            inst.paid_on = None
        reversed_lines.append(
            AllocationLine(
                installment_number=inst.installment_number,
                installment_name=inst.name,
                principal_applied=-principal,
                late_fee_applied=-late,
            )
        )
    return reversed_lines


def reduce_net_fee(record: FeeRecord, reduction: Decimal, rounding_unit: Decimal, at: datetime) -> Decimal:
    """Lower the net fee and re-spread the open installments. Returns the reduction as applied."""
    installments = list(record.installments)
    amounts = spread_reduction(
        [inst.amount for inst in installments],
        [inst.amount_paid for inst in installments],
        reduction,
        rounding_unit,
    )
    for inst, amount in zip(installments, amounts):
        inst.amount = amount
        if to_decimal(inst.amount_paid) >= amount and inst.paid_on is None:
            inst.paid_on = at
    reduction = to_money(reduction)
    record.net_fee_amount = to_money(to_decimal(record.net_fee_amount) - reduction)
    return reduction


def accrue_late_fees(record: FeeRecord, policy: LateFeePolicySpec, as_of: date) -> Decimal:
    """
    Bring every unpaid installment's late fee up to date as of `as_of`. Accrued fees never go down, so
    running this twice for the same date is a no-op. Returns the total increase.
    """
    increase = ZERO
    for inst in record.installments:
        if to_decimal(inst.amount_paid) >= to_decimal(inst.amount):
            continue
        current = to_decimal(inst.late_fee)
        computed = calculate_late_fee(inst, policy, as_of)
        if computed > current:
            inst.late_fee = computed
            increase += computed - current
    return increase


def effective_status(
    inst: FeeInstallment,
    grace_days: int,
    today: date,
    label_policy: OverdueLabelPolicy,
) -> InstallmentStatus:
    """Freshly derived label, unless that would move the installment backwards."""
    new = installment_status(inst.amount_paid, inst.amount, inst.due_date, grace_days, today, label_policy)
    current = InstallmentStatus(inst.status) if inst.status else InstallmentStatus.PENDING
    return new if can_transition(current, new, label_policy) else current


def refresh_record_totals(
    record: FeeRecord,
    today: date,
    grace_days: int,
    label_policy: OverdueLabelPolicy,
    allow_backward: bool = False,
) -> None:
    """
    Re-derive statuses, totals, balance and next due installment. Status labels only move forward unless
    `allow_backward` (payment reversal); a write dated earlier than a previous evaluation keeps the label.
    """
    for inst in record.installments:
        if allow_backward:
            new = installment_status(
                inst.amount_paid, inst.amount, inst.due_date, grace_days, today, label_policy
            )
        else:
            new = effective_status(inst, grace_days, today, label_policy)
        inst.status = new.value

    total_paid = sum(
        (to_decimal(i.amount_paid) + to_decimal(i.late_fee_paid) for i in record.installments), ZERO
    )
    total_late_fee = sum((to_decimal(i.late_fee) for i in record.installments), ZERO)
    balance = to_decimal(record.net_fee_amount) + total_late_fee - total_paid
    if balance < ZERO:
        raise InvariantViolation(f"Fee record {record.id} balance would be negative ({balance})")

    record.total_paid = to_money(total_paid)
    record.total_late_fee = to_money(total_late_fee)
    record.balance = to_money(balance)
    record.overall_status = record_status(
        (InstallmentStatus(i.status) for i in record.installments),
        any_payment=total_paid > ZERO,
    ).value

    pending = outstanding_installments(record.installments)
    if pending:
        record.next_due_date = pending[0].due_date
        record.next_due_amount = to_money(outstanding(pending[0]))
    else:
        record.next_due_date = None
        record.next_due_amount = ZERO
    # Always dirty the row so the version counter moves on every write
    record.updated_at = datetime.utcnow()
