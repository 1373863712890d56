from datetime import date
from decimal import Decimal

import pytest

from isp_billing.core.money import sum_money
from isp_billing.services.allocation import (
    AccountSnapshot,
    BillingSnapshot,
    InstrumentCandidate,
    InstrumentKind,
    PreviousStatement,
    RebateCandidate,
    StepKind,
    allocate,
    prorated_monthly_fee,
)

VAT = Decimal("0.12")


def _account(**overrides) -> AccountSnapshot:
    values = {
        "id": "acc-1",
        "account_no": "A-0001",
        "customer_name": "Juan Dela Cruz",
        "email": "juan@example.com",
        "billing_day": 15,
        "plan_name": "Fiber 999",
        "plan_price": Decimal("999.00"),
        "date_installed": None,
        "opening_balance": Decimal("0.00"),
        "has_billing_history": True,
    }
    values.update(overrides)
    return AccountSnapshot(**values)


def _snapshot(**overrides) -> BillingSnapshot:
    values = {
        "account": _account(),
        "billing_period": "2026-10",
        "billing_date": date(2026, 10, 15),
        "due_date": date(2026, 10, 22),
        "days_in_month": 31,
        "previous_statement": None,
        "unrolled_payment_ids": (),
        "unrolled_payments_total": Decimal("0.00"),
    }
    values.update(overrides)
    return BillingSnapshot(**values)


def test_carry_forward_fee_and_discount_worked_example():
    snapshot = _snapshot(
        previous_statement=PreviousStatement(id="soa-1", statement_date=date(2026, 9, 15), total_amount_due=Decimal("500.00")),
        discount=InstrumentCandidate(kind=InstrumentKind.DISCOUNT, id="disc-1", amount=Decimal("100.00")),
    )

    plan = allocate(snapshot, vat_rate=VAT)

    assert plan.carried_forward == Decimal("500.00")
    assert plan.subtotal == Decimal("1399.00")
    assert plan.vat == Decimal("167.88")
    assert plan.total_amount_due == Decimal("1566.88")
    assert [item.id for item in plan.consumed] == ["disc-1"]


def test_total_equals_sum_of_steps():
    snapshot = _snapshot(
        previous_statement=PreviousStatement(id="soa-1", statement_date=date(2026, 9, 15), total_amount_due=Decimal("1250.55")),
        unrolled_payment_ids=("pay-1",),
        unrolled_payments_total=Decimal("800.00"),
        staggered_due=InstrumentCandidate(kind=InstrumentKind.STAGGERED_INSTALLMENT, id="stg-1", amount=Decimal("333.33")),
        discount=InstrumentCandidate(kind=InstrumentKind.DISCOUNT, id="disc-1", amount=Decimal("50.00")),
        rebate=RebateCandidate(id="reb-use-1", rebate_id="reb-1", number_of_dates=3),
        service_charges=(
            InstrumentCandidate(kind=InstrumentKind.SERVICE_CHARGE, id="svc-1", amount=Decimal("150.00")),
            InstrumentCandidate(kind=InstrumentKind.SERVICE_CHARGE, id="svc-2", amount=Decimal("75.25")),
        ),
        advanced_payments=(
            InstrumentCandidate(kind=InstrumentKind.ADVANCED_PAYMENT, id="adv-1", amount=Decimal("200.00")),
        ),
    )

    plan = allocate(snapshot, vat_rate=VAT)

    assert plan.total_amount_due == sum_money(step.amount for step in plan.steps)
    assert plan.carried_forward == Decimal("450.55")
    # 999 / 31 days x 3 days
    assert plan.amount_for(StepKind.REBATE) == Decimal("96.68")
    assert plan.rolled_payment_ids == ("pay-1",)


def test_steps_follow_fixed_precedence():
    snapshot = _snapshot(
        staggered_due=InstrumentCandidate(kind=InstrumentKind.STAGGERED_INSTALLMENT, id="stg-1", amount=Decimal("100.00")),
        discount=InstrumentCandidate(kind=InstrumentKind.DISCOUNT, id="disc-1", amount=Decimal("10.00")),
        rebate=RebateCandidate(id="reb-use-1", rebate_id="reb-1", number_of_dates=1),
        service_charges=(InstrumentCandidate(kind=InstrumentKind.SERVICE_CHARGE, id="svc-1", amount=Decimal("20.00")),),
        advanced_payments=(InstrumentCandidate(kind=InstrumentKind.ADVANCED_PAYMENT, id="adv-1", amount=Decimal("5.00")),),
    )

    plan = allocate(snapshot, vat_rate=VAT)

    assert [step.kind for step in plan.steps] == [
        StepKind.CARRY_FORWARD,
        StepKind.MONTHLY_FEE,
        StepKind.STAGGERED,
        StepKind.DISCOUNT,
        StepKind.REBATE,
        StepKind.SERVICE_CHARGE,
        StepKind.ADVANCED_PAYMENT,
        StepKind.VAT,
    ]
    assert [item.kind for item in plan.consumed] == [
        InstrumentKind.STAGGERED_INSTALLMENT,
        InstrumentKind.DISCOUNT,
        InstrumentKind.REBATE_USAGE,
        InstrumentKind.SERVICE_CHARGE,
        InstrumentKind.ADVANCED_PAYMENT,
    ]
    rebate = next(item for item in plan.consumed if item.kind == InstrumentKind.REBATE_USAGE)
    assert rebate.parent_id == "reb-1"


def test_advance_payment_never_pushes_remainder_below_zero():
    snapshot = _snapshot(
        advanced_payments=(
            InstrumentCandidate(kind=InstrumentKind.ADVANCED_PAYMENT, id="adv-1", amount=Decimal("700.00")),
            InstrumentCandidate(kind=InstrumentKind.ADVANCED_PAYMENT, id="adv-2", amount=Decimal("700.00")),
        ),
    )

    plan = allocate(snapshot, vat_rate=VAT)

    assert plan.subtotal == Decimal("0.00")
    assert plan.vat == Decimal("0.00")
    assert plan.total_amount_due == Decimal("0.00")
    assert plan.advance_credit == Decimal("401.00")
    applied = {item.id: item.applied_amount for item in plan.consumed}
    assert applied == {"adv-1": Decimal("700.00"), "adv-2": Decimal("299.00")}


def test_negative_subtotal_is_not_taxed():
    snapshot = _snapshot(
        previous_statement=PreviousStatement(id="soa-1", statement_date=date(2026, 9, 15), total_amount_due=Decimal("0.00")),
        unrolled_payment_ids=("pay-1",),
        unrolled_payments_total=Decimal("1500.00"),
    )

    plan = allocate(snapshot, vat_rate=VAT)

    assert plan.subtotal == Decimal("-501.00")
    assert plan.vat == Decimal("0.00")
    assert plan.total_amount_due == Decimal("-501.00")


def test_vat_can_exclude_carry_forward():
    snapshot = _snapshot(
        previous_statement=PreviousStatement(id="soa-1", statement_date=date(2026, 9, 15), total_amount_due=Decimal("500.00")),
        discount=InstrumentCandidate(kind=InstrumentKind.DISCOUNT, id="disc-1", amount=Decimal("100.00")),
    )

    plan = allocate(snapshot, vat_rate=VAT, vat_on_carry_forward=False)

    assert plan.taxable_subtotal == Decimal("899.00")
    assert plan.vat == Decimal("107.88")
    assert plan.total_amount_due == Decimal("1506.88")


def test_opening_balance_is_carried_when_no_statement_exists():
    snapshot = _snapshot(
        account=_account(opening_balance=Decimal("250.00"), has_billing_history=False),
        unrolled_payment_ids=("pay-1",),
        unrolled_payments_total=Decimal("50.00"),
    )

    plan = allocate(snapshot, vat_rate=Decimal("0"))

    assert plan.balance_from_previous_bill == Decimal("250.00")
    assert plan.payment_received_previous == Decimal("50.00")
    assert plan.carried_forward == Decimal("200.00")
    assert plan.total_amount_due == Decimal("1199.00")


@pytest.mark.parametrize(
    ("installed", "expected"),
    [
        (date(2026, 10, 13), Decimal("333.00")),
        (date(2026, 9, 1), Decimal("999.00")),
        (date(2026, 10, 23), Decimal("0.00")),
    ],
)
def test_first_invoice_is_prorated_from_install_date(installed, expected):
    account = _account(date_installed=installed, has_billing_history=False)

    # due date 2026-10-22: 13th..22nd inclusive is 10 days of 999 / 30
    assert prorated_monthly_fee(account, due_date=date(2026, 10, 22)) == expected


def test_proration_is_skipped_once_account_has_history():
    account = _account(date_installed=date(2026, 10, 13), has_billing_history=True)

    assert prorated_monthly_fee(account, due_date=date(2026, 10, 22)) == Decimal("999.00")
