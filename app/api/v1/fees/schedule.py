"""Installment schedule: split a net fee into dated installments according to a plan."""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_DOWN, Decimal
from typing import List, Sequence

from app.core.exceptions import InvalidAmount, InvalidPlan, PolicyViolationError

from .money import CENT, HUNDRED, ZERO, round_to_unit, to_money
from .schemas import InstallmentDueSpec, InstallmentPlanSpec


@dataclass
class ScheduledInstallment:
    installment_number: int
    name: str
    due_date: date
    amount: Decimal


def validate_plan(plan: InstallmentPlanSpec) -> None:
    if plan.number_of_installments == 0 or not plan.due_dates:
        raise InvalidPlan(f"Installment plan '{plan.plan_name}' has no installments")
    if plan.number_of_installments != len(plan.due_dates):
        raise InvalidPlan(
            f"Installment plan '{plan.plan_name}' declares {plan.number_of_installments} installments "
            f"but defines {len(plan.due_dates)} due dates"
        )
    numbers = [d.installment_number for d in plan.due_dates]
    if len(set(numbers)) != len(numbers):
        raise InvalidPlan(f"Installment plan '{plan.plan_name}' repeats an installment number")
    total = sum((d.percentage for d in plan.due_dates), ZERO)
    if total != HUNDRED:
        raise InvalidPlan(
            f"Installment plan '{plan.plan_name}' percentages sum to {total}, expected 100"
        )


def resolve_due_date(month: int, day: int, academic_year_start: date) -> date:
    """Months before the academic year's start month belong to the following calendar year."""
    year = academic_year_start.year if month >= academic_year_start.month else academic_year_start.year + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def build_schedule(
    net_total: Decimal,
    plan: InstallmentPlanSpec,
    academic_year_start: date,
    rounding_unit: Decimal = Decimal("1"),
) -> List[ScheduledInstallment]:
    """
    Each installment is round(net_total * percentage / 100) to the rounding unit; the last installment
    absorbs the rounding remainder so the amounts sum to net_total exactly.
    """
    validate_plan(plan)
    net_total = to_money(net_total)
    if net_total < ZERO:
        raise InvalidAmount("Net fee amount cannot be negative")

    entries = sorted(
        plan.due_dates,
        key=lambda d: (resolve_due_date(d.month, d.day, academic_year_start), d.installment_number),
    )
    count = len(entries)
    scheduled = [
        ScheduledInstallment(
            installment_number=position,
            name=f"{plan.plan_name} - {position}/{count}",
            due_date=resolve_due_date(entry.month, entry.day, academic_year_start),
            amount=round_to_unit(net_total * entry.percentage / HUNDRED, rounding_unit),
        )
        for position, entry in enumerate(entries, start=1)
    ]

    remainder = net_total - sum((s.amount for s in scheduled), ZERO)
    scheduled[-1].amount += remainder
    # Rounding up earlier installments can push a tiny (or 0%) last installment below zero;
    # push the deficit back onto the preceding installments.
    index = count - 1
    while scheduled[index].amount < ZERO and index > 0:
        deficit = -scheduled[index].amount
        scheduled[index].amount = ZERO
        index -= 1
        scheduled[index].amount -= deficit
    return scheduled


def spread_reduction(
    amounts: Sequence[Decimal],
    paid: Sequence[Decimal],
    reduction: Decimal,
    rounding_unit: Decimal = Decimal("1"),
) -> List[Decimal]:
    """
    Installment amounts after taking `reduction` off an existing schedule.

    Settled installments keep their amount. The unpaid part of every open installment shrinks in
    proportion, rounded to the unit, and the last open installment absorbs the remainder so the new
    amounts sum to the old total minus `reduction`. No installment drops below what was already paid on it.
    """
    amounts = [to_money(a) for a in amounts]
    paid = [to_money(p) for p in paid]
    reduction = to_money(reduction)
    if reduction <= ZERO:
        raise InvalidAmount("Reduction must be greater than zero")

    open_positions = [i for i in range(len(amounts)) if paid[i] < amounts[i]]
    unpaid = sum((amounts[i] - paid[i] for i in open_positions), ZERO)
    if reduction > unpaid:
        raise PolicyViolationError(f"Reduction of {reduction} exceeds the outstanding fee of {unpaid}")

    remaining = unpaid - reduction
    reduced = list(amounts)
    for i in open_positions:
        reduced[i] = paid[i] + round_to_unit((amounts[i] - paid[i]) * remaining / unpaid, rounding_unit)

    remainder = sum(amounts, ZERO) - reduction - sum(reduced, ZERO)
    for i in reversed(open_positions):
        adjusted = reduced[i] + remainder
        if adjusted >= paid[i]:
            reduced[i] = adjusted
            break
        remainder = adjusted - paid[i]
        reduced[i] = paid[i]
    return reduced


def monthly_plan(academic_year_start: date, months: int = 12, day: int = 10, plan_name: str = "Monthly") -> InstallmentPlanSpec:
    """One installment per calendar month from the academic year's start (the monthly-ledger shape)."""
    if not 1 <= months <= 12:
        raise InvalidPlan("A monthly plan covers between 1 and 12 months")
    share = (HUNDRED / months).quantize(CENT, rounding=ROUND_DOWN)
    due_dates = []
    for offset in range(months):
        month = (academic_year_start.month - 1 + offset) % 12 + 1
        due_dates.append(InstallmentDueSpec(installment_number=offset + 1, month=month, day=day, percentage=share))
    due_dates[-1].percentage = HUNDRED - share * (months - 1)
    return InstallmentPlanSpec(plan_name=plan_name, number_of_installments=months, due_dates=due_dates)
