"""Unit tests for payment validation and allocation."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.api.v1.fees.allocator import parse_payment_mode, plan_allocation, validate_payment
from app.api.v1.fees.schemas import PaymentPolicySpec
from app.core.enums import PaymentMode
from app.core.exceptions import (
    InvalidAmount,
    OverpaymentError,
    PartialNotAllowed,
    PolicyViolationError,
)


def _inst(number, due, amount="3000", paid="0", late="0", late_paid="0"):
    return SimpleNamespace(
        installment_number=number,
        name=f"Quarterly - {number}/4",
        due_date=due,
        amount=Decimal(amount),
        amount_paid=Decimal(paid),
        late_fee=Decimal(late),
        late_fee_paid=Decimal(late_paid),
    )


def _quarters():
    return [
        _inst(1, date(2025, 4, 15)),
        _inst(2, date(2025, 7, 15)),
        _inst(3, date(2025, 10, 15)),
        _inst(4, date(2026, 1, 15)),
    ]


def test_late_fee_settled_before_principal() -> None:
    installments = _quarters()
    installments[0].late_fee = Decimal("20")
    plan = plan_allocation(installments, Decimal("3500"))
    first, second = plan.lines
    assert (first.installment_number, first.late_fee_applied, first.principal_applied) == (
        1,
        Decimal("20"),
        Decimal("3000"),
    )
    assert (second.installment_number, second.principal_applied) == (2, Decimal("480"))
    assert plan.remainder == Decimal("0")
    assert plan.allocated_total == Decimal("3500")


def test_oldest_due_date_first_regardless_of_order() -> None:
    installments = list(reversed(_quarters()))
    plan = plan_allocation(installments, Decimal("4000"))
    assert [line.installment_number for line in plan.lines] == [1, 2]
    assert plan.lines[1].principal_applied == Decimal("1000")


def test_paid_installments_are_skipped() -> None:
    installments = _quarters()
    installments[0].amount_paid = Decimal("3000")
    plan = plan_allocation(installments, Decimal("3000"))
    assert [line.installment_number for line in plan.lines] == [2]


def test_remainder_after_everything_is_cleared() -> None:
    plan = plan_allocation(_quarters(), Decimal("12500"))
    assert plan.principal_total == Decimal("12000")
    assert plan.remainder == Decimal("500")


def test_plan_does_not_mutate_installments() -> None:
    installments = _quarters()
    plan_allocation(installments, Decimal("5000"))
    assert all(inst.amount_paid == Decimal("0") for inst in installments)


def test_amount_must_be_positive() -> None:
    with pytest.raises(InvalidAmount):
        validate_payment(_quarters(), Decimal("0"), "Cash", PaymentPolicySpec())
    with pytest.raises(InvalidAmount):
        validate_payment(_quarters(), Decimal("-10"), "Cash", PaymentPolicySpec())


def test_amount_limited_to_two_decimal_places() -> None:
    with pytest.raises(InvalidAmount):
        validate_payment(_quarters(), Decimal("100.005"), "Cash", PaymentPolicySpec())


def test_overpayment_rejected_without_advance_credit() -> None:
    with pytest.raises(OverpaymentError):
        validate_payment(_quarters(), Decimal("12000.01"), "Cash", PaymentPolicySpec())


def test_overpayment_allowed_with_advance_credit() -> None:
    policy = PaymentPolicySpec(allow_advance_credit=True)
    assert validate_payment(_quarters(), Decimal("13000"), "Cash", policy) == PaymentMode.CASH


def test_partial_not_allowed_requires_full_installment() -> None:
    policy = PaymentPolicySpec(allow_partial_payment=False)
    with pytest.raises(PartialNotAllowed):
        validate_payment(_quarters(), Decimal("2999"), "Cash", policy)
    assert validate_payment(_quarters(), Decimal("3000"), "Cash", policy) == PaymentMode.CASH


def test_partial_not_allowed_counts_outstanding_late_fee() -> None:
    installments = _quarters()
    installments[0].late_fee = Decimal("30")
    policy = PaymentPolicySpec(allow_partial_payment=False)
    with pytest.raises(PartialNotAllowed):
        validate_payment(installments, Decimal("3000"), "Cash", policy)


def test_minimum_partial_amount() -> None:
    policy = PaymentPolicySpec(min_partial_amount=Decimal("500"))
    with pytest.raises(PolicyViolationError):
        validate_payment(_quarters(), Decimal("100"), "Cash", policy)


def test_minimum_partial_amount_waived_for_final_balance() -> None:
    installments = [_inst(1, date(2025, 4, 15), amount="3000", paid="2900")]
    policy = PaymentPolicySpec(min_partial_amount=Decimal("500"))
    assert validate_payment(installments, Decimal("100"), "Cash", policy) == PaymentMode.CASH


def test_fully_paid_record_rejects_payment() -> None:
    installments = [_inst(1, date(2025, 4, 15), paid="3000")]
    with pytest.raises(PolicyViolationError):
        validate_payment(installments, Decimal("10"), "Cash", PaymentPolicySpec(allow_advance_credit=True))


def test_payment_mode_must_be_accepted() -> None:
    with pytest.raises(PolicyViolationError):
        validate_payment(_quarters(), Decimal("100"), "Net Banking", PaymentPolicySpec())
    with pytest.raises(PolicyViolationError):
        validate_payment(_quarters(), Decimal("100"), "Bitcoin", PaymentPolicySpec())


def test_internal_modes_are_never_accepted() -> None:
    policy = PaymentPolicySpec(accepted_payment_modes=list(PaymentMode))
    for mode in ("Advance Credit", "Reversal"):
        with pytest.raises(PolicyViolationError):
            validate_payment(_quarters(), Decimal("100"), mode, policy)


def test_parse_payment_mode_accepts_value_or_name() -> None:
    assert parse_payment_mode("upi") == PaymentMode.UPI
    assert parse_payment_mode("bank transfer") == PaymentMode.BANK_TRANSFER
    assert parse_payment_mode("BANK_TRANSFER") == PaymentMode.BANK_TRANSFER
    assert parse_payment_mode("wire") is None
