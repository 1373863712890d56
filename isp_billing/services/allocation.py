"""Financial instrument allocation for a single account and billing period.

Everything in this module is pure: it works on the immutable snapshot built by
``billing_repository.load_billing_snapshot`` and never touches the database.
The resulting ``AllocationPlan`` is what the composer persists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum

from isp_billing.core.money import ZERO_MONEY, sum_money, to_money

PRORATE_DAYS_IN_MONTH = 30


class InstrumentKind(str, Enum):
    STAGGERED_INSTALLMENT = "staggered_installment"
    DISCOUNT = "discount"
    REBATE_USAGE = "rebate_usage"
    SERVICE_CHARGE = "service_charge"
    ADVANCED_PAYMENT = "advanced_payment"


class StepKind(str, Enum):
    CARRY_FORWARD = "carry_forward"
    MONTHLY_FEE = "monthly_fee"
    STAGGERED = "staggered"
    DISCOUNT = "discount"
    REBATE = "rebate"
    SERVICE_CHARGE = "service_charge"
    ADVANCED_PAYMENT = "advanced_payment"
    VAT = "vat"


@dataclass(frozen=True)
class AccountSnapshot:
    id: str
    account_no: str
    customer_name: str
    email: str | None
    billing_day: int
    plan_name: str
    plan_price: Decimal
    date_installed: date | None
    opening_balance: Decimal
    has_billing_history: bool


@dataclass(frozen=True)
class PreviousStatement:
    id: str
    statement_date: date
    total_amount_due: Decimal


@dataclass(frozen=True)
class InstrumentCandidate:
    kind: InstrumentKind
    id: str
    amount: Decimal
    parent_id: str | None = None


@dataclass(frozen=True)
class RebateCandidate:
    id: str
    rebate_id: str
    number_of_dates: int


@dataclass(frozen=True)
class BillingSnapshot:
    account: AccountSnapshot
    billing_period: str
    billing_date: date
    due_date: date
    days_in_month: int
    previous_statement: PreviousStatement | None
    unrolled_payment_ids: tuple[str, ...]
    unrolled_payments_total: Decimal
    staggered_due: InstrumentCandidate | None = None
    discount: InstrumentCandidate | None = None
    rebate: RebateCandidate | None = None
    service_charges: tuple[InstrumentCandidate, ...] = ()
    advanced_payments: tuple[InstrumentCandidate, ...] = ()


@dataclass(frozen=True)
class AllocationStep:
    kind: StepKind
    amount: Decimal
    instrument_id: str | None = None


@dataclass(frozen=True)
class ConsumedInstrument:
    kind: InstrumentKind
    id: str
    applied_amount: Decimal
    parent_id: str | None = None


@dataclass(frozen=True)
class AllocationPlan:
    account_id: str
    billing_period: str
    billing_date: date
    due_date: date
    balance_from_previous_bill: Decimal
    payment_received_previous: Decimal
    carried_forward: Decimal
    steps: tuple[AllocationStep, ...]
    consumed: tuple[ConsumedInstrument, ...]
    subtotal: Decimal
    taxable_subtotal: Decimal
    vat: Decimal
    total_amount_due: Decimal
    advance_credit: Decimal
    rolled_payment_ids: tuple[str, ...] = field(default_factory=tuple)

    def amount_for(self, kind: StepKind) -> Decimal:
        """Absolute amount of every step of ``kind`` (deductions come back positive)."""
        return abs(sum_money(step.amount for step in self.steps if step.kind == kind))

    @property
    def period_charges(self) -> Decimal:
        """Amount due for this period alone, without the carried-forward balance."""
        return to_money(self.total_amount_due - self.carried_forward)


def prorated_monthly_fee(account: AccountSnapshot, *, due_date: date) -> Decimal:
    price = to_money(account.plan_price)
    if account.has_billing_history or account.date_installed is None:
        return price
    days = (due_date - account.date_installed).days + 1
    if days <= 0:
        return ZERO_MONEY
    prorated = to_money(price / PRORATE_DAYS_IN_MONTH * days)
    return min(prorated, price)


def allocate(
    snapshot: BillingSnapshot,
    *,
    vat_rate: Decimal,
    vat_on_carry_forward: bool = True,
    prorate_first_invoice: bool = True,
) -> AllocationPlan:
    account = snapshot.account
    steps: list[AllocationStep] = []
    consumed: list[ConsumedInstrument] = []

    def add_step(kind: StepKind, amount: Decimal, instrument_id: str | None = None) -> Decimal:
        money = to_money(amount)
        steps.append(AllocationStep(kind=kind, amount=money, instrument_id=instrument_id))
        return money

    # 1. carry forward
    if snapshot.previous_statement is not None:
        previous_bill = to_money(snapshot.previous_statement.total_amount_due)
    else:
        previous_bill = to_money(account.opening_balance)
    payments_received = to_money(snapshot.unrolled_payments_total)
    carried_forward = to_money(previous_bill - payments_received)
    running = add_step(StepKind.CARRY_FORWARD, carried_forward)

    # 2. monthly service fee
    if prorate_first_invoice:
        monthly_fee = prorated_monthly_fee(account, due_date=snapshot.due_date)
    else:
        monthly_fee = to_money(account.plan_price)
    running += add_step(StepKind.MONTHLY_FEE, monthly_fee)

    # 3. staggered installment due this month
    if snapshot.staggered_due is not None:
        due = snapshot.staggered_due
        running += add_step(StepKind.STAGGERED, due.amount, due.id)
        consumed.append(
            ConsumedInstrument(kind=due.kind, id=due.id, applied_amount=to_money(due.amount), parent_id=due.parent_id)
        )

    # 4. oldest unused discount
    if snapshot.discount is not None:
        discount = snapshot.discount
        running += add_step(StepKind.DISCOUNT, -to_money(discount.amount), discount.id)
        consumed.append(ConsumedInstrument(kind=discount.kind, id=discount.id, applied_amount=to_money(discount.amount)))

    # 5. oldest unused rebate usage, valued in days of service
    if snapshot.rebate is not None:
        rebate = snapshot.rebate
        daily_rate = to_money(account.plan_price) / snapshot.days_in_month
        rebate_value = to_money(daily_rate * rebate.number_of_dates)
        running += add_step(StepKind.REBATE, -rebate_value, rebate.id)
        consumed.append(
            ConsumedInstrument(
                kind=InstrumentKind.REBATE_USAGE,
                id=rebate.id,
                applied_amount=rebate_value,
                parent_id=rebate.rebate_id,
            )
        )

    # 6. logged service charges
    for charge in snapshot.service_charges:
        running += add_step(StepKind.SERVICE_CHARGE, charge.amount, charge.id)
        consumed.append(ConsumedInstrument(kind=charge.kind, id=charge.id, applied_amount=to_money(charge.amount)))

    # 7. advance payments, never pushing the remainder below zero
    advance_credit = ZERO_MONEY
    for advance in snapshot.advanced_payments:
        amount = to_money(advance.amount)
        applied = min(amount, max(running, ZERO_MONEY))
        advance_credit += amount - applied
        running += add_step(StepKind.ADVANCED_PAYMENT, -applied, advance.id)
        consumed.append(ConsumedInstrument(kind=advance.kind, id=advance.id, applied_amount=applied))

    # 8. VAT
    subtotal = to_money(running)
    taxable = subtotal if vat_on_carry_forward else to_money(subtotal - carried_forward)
    taxable = max(taxable, ZERO_MONEY)
    vat = add_step(StepKind.VAT, taxable * vat_rate)

    # 9. total
    total_amount_due = to_money(subtotal + vat)

    return AllocationPlan(
        account_id=account.id,
        billing_period=snapshot.billing_period,
        billing_date=snapshot.billing_date,
        due_date=snapshot.due_date,
        balance_from_previous_bill=previous_bill,
        payment_received_previous=payments_received,
        carried_forward=carried_forward,
        steps=tuple(steps),
        consumed=tuple(consumed),
        subtotal=subtotal,
        taxable_subtotal=taxable,
        vat=vat,
        total_amount_due=total_amount_due,
        advance_credit=to_money(advance_credit),
        rolled_payment_ids=snapshot.unrolled_payment_ids,
    )
