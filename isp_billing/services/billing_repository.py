"""Explicit loaders for the billing cycle.

The allocator never sees ORM objects: everything it needs is read here, once,
into the frozen dataclasses defined in ``allocation``.
"""

import calendar
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from isp_billing.core.config import settings
from isp_billing.core.money import ZERO_MONEY, sum_money, to_money
from isp_billing.models.account import BillingAccount, ServicePlan
from isp_billing.models.enums import AccountStatus, InstrumentStatus
from isp_billing.models.instruments import (
    AdvancedPayment,
    Discount,
    MassRebate,
    RebateUsage,
    ServiceChargeLog,
    StaggeredInstallment,
)
from isp_billing.models.invoice import Invoice, PaymentTransaction, StatementOfAccount
from isp_billing.services.allocation import (
    AccountSnapshot,
    BillingSnapshot,
    InstrumentCandidate,
    InstrumentKind,
    PreviousStatement,
    RebateCandidate,
)
from isp_billing.services.errors import AccountConfigurationError

END_OF_MONTH_BILLING_DAY = 0
MAX_BILLING_DAY = 31


def billing_period_for(run_date: date) -> str:
    return f"{run_date:%Y-%m}"


def days_in_month(value: date) -> int:
    return calendar.monthrange(value.year, value.month)[1]


def is_last_day_of_month(value: date) -> bool:
    return value.day == days_in_month(value)


def _end_of_month_days(month_length: int, clamp: bool) -> list[int]:
    days = [END_OF_MONTH_BILLING_DAY]
    if clamp:
        days.extend(range(month_length + 1, MAX_BILLING_DAY + 1))
    return days


def billing_days_for(
    run_date: date,
    *,
    override: int | None = None,
    clamp_short_months: bool | None = None,
    advance_days: int | None = None,
) -> list[int]:
    """Billing-day values that are due on ``run_date``.

    Day 0 means "last day of the month". With ``clamp_short_months`` on, the
    last day of a short month also picks up billing days the month does not
    have (31 in April, 29-31 in a common February).

    ``advance_days`` generates documents ahead of the billing day: a run on
    day D bills day D + N. Once D + N reaches the month's last day the
    end-of-month set is due as well, and targets past it wrap to the early
    days of the next month. An explicit ``override`` ignores the advance.
    """
    clamp = settings.billing_clamp_short_months if clamp_short_months is None else clamp_short_months
    advance = settings.billing_advance_generation_days if advance_days is None else advance_days
    month_length = days_in_month(run_date)

    if override is not None:
        if override < 0 or override > MAX_BILLING_DAY:
            raise ValueError(f"Billing day override must be between 0 and {MAX_BILLING_DAY}")
        if override != END_OF_MONTH_BILLING_DAY:
            return [override]
        return sorted(set(_end_of_month_days(month_length, clamp)))

    if advance < 0:
        raise ValueError("Advance generation days cannot be negative")
    target = run_date.day + advance
    days: list[int] = []
    if target <= MAX_BILLING_DAY:
        days.append(target)
    if target >= month_length:
        days.extend(_end_of_month_days(month_length, clamp))
    if target > month_length:
        days.append(target - month_length)
    return sorted(set(days))


def select_due_accounts(
    db: Session,
    *,
    run_date: date,
    billing_day_override: int | None = None,
    clamp_short_months: bool | None = None,
    advance_days: int | None = None,
) -> list[BillingAccount]:
    days = billing_days_for(
        run_date,
        override=billing_day_override,
        clamp_short_months=clamp_short_months,
        advance_days=advance_days,
    )
    return db.execute(
        select(BillingAccount)
        .where(
            BillingAccount.status == AccountStatus.ACTIVE.value,
            BillingAccount.billing_day.in_(days),
        )
        .order_by(BillingAccount.account_no.asc())
    ).scalars().all()


def lock_account(db: Session, account_id: str) -> BillingAccount | None:
    return db.execute(
        select(BillingAccount).where(BillingAccount.id == account_id).with_for_update()
    ).scalar_one_or_none()


def invoice_exists_for_period(db: Session, *, account_id: str, billing_period: str) -> bool:
    invoice_id = db.execute(
        select(Invoice.id).where(
            Invoice.account_id == account_id,
            Invoice.billing_period == billing_period,
        )
    ).scalar_one_or_none()
    return invoice_id is not None


def latest_statement(db: Session, account_id: str) -> StatementOfAccount | None:
    return db.execute(
        select(StatementOfAccount)
        .where(StatementOfAccount.account_id == account_id)
        .order_by(StatementOfAccount.statement_date.desc(), StatementOfAccount.billing_period.desc())
        .limit(1)
    ).scalar_one_or_none()


def unrolled_payments(db: Session, account_id: str) -> list[PaymentTransaction]:
    return db.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.account_id == account_id,
            PaymentTransaction.statement_id.is_(None),
        )
        .order_by(PaymentTransaction.payment_date.asc())
    ).scalars().all()


def unrolled_payments_total(db: Session, account_id: str) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(PaymentTransaction.amount), 0)).where(
            PaymentTransaction.account_id == account_id,
            PaymentTransaction.statement_id.is_(None),
        )
    ).scalar_one()
    return to_money(total)


def _has_billing_history(db: Session, account_id: str) -> bool:
    count = db.execute(
        select(func.count(Invoice.id)).where(Invoice.account_id == account_id)
    ).scalar_one()
    return int(count or 0) > 0


def _staggered_due(db: Session, account_id: str, billing_period: str) -> InstrumentCandidate | None:
    installment = db.execute(
        select(StaggeredInstallment)
        .where(
            StaggeredInstallment.account_id == account_id,
            StaggeredInstallment.due_period == billing_period,
            StaggeredInstallment.status == InstrumentStatus.UNUSED.value,
        )
        .order_by(StaggeredInstallment.installment_no.asc())
        .limit(1)
    ).scalar_one_or_none()
    if installment is None:
        return None
    return InstrumentCandidate(
        kind=InstrumentKind.STAGGERED_INSTALLMENT,
        id=installment.id,
        amount=to_money(installment.amount),
        parent_id=installment.installation_id,
    )


def _oldest_discount(db: Session, account_id: str) -> InstrumentCandidate | None:
    discount = db.execute(
        select(Discount)
        .where(
            Discount.account_id == account_id,
            Discount.status == InstrumentStatus.UNUSED.value,
        )
        .order_by(Discount.created_at.asc(), Discount.id.asc())
        .limit(1)
    ).scalar_one_or_none()
    if discount is None:
        return None
    return InstrumentCandidate(
        kind=InstrumentKind.DISCOUNT,
        id=discount.id,
        amount=to_money(discount.discount_amount),
    )


def _oldest_rebate(db: Session, account_id: str, billing_period: str) -> RebateCandidate | None:
    row = db.execute(
        select(RebateUsage.id, RebateUsage.rebate_id, MassRebate.number_of_dates)
        .join(MassRebate, MassRebate.id == RebateUsage.rebate_id)
        .where(
            RebateUsage.account_id == account_id,
            RebateUsage.status == InstrumentStatus.UNUSED.value,
            MassRebate.billing_period == billing_period,
        )
        .order_by(MassRebate.created_at.asc(), RebateUsage.id.asc())
        .limit(1)
    ).first()
    if row is None:
        return None
    return RebateCandidate(id=row.id, rebate_id=row.rebate_id, number_of_dates=int(row.number_of_dates))


def _service_charges(db: Session, account_id: str, billing_date: date) -> tuple[InstrumentCandidate, ...]:
    charges = db.execute(
        select(ServiceChargeLog)
        .where(
            ServiceChargeLog.account_id == account_id,
            ServiceChargeLog.status == InstrumentStatus.UNUSED.value,
            ServiceChargeLog.charge_date <= billing_date,
        )
        .order_by(ServiceChargeLog.charge_date.asc(), ServiceChargeLog.id.asc())
    ).scalars().all()
    return tuple(
        InstrumentCandidate(
            kind=InstrumentKind.SERVICE_CHARGE,
            id=charge.id,
            amount=to_money(charge.service_charge),
        )
        for charge in charges
    )


def _advanced_payments(db: Session, account_id: str, billing_period: str) -> tuple[InstrumentCandidate, ...]:
    payments = db.execute(
        select(AdvancedPayment)
        .where(
            AdvancedPayment.account_id == account_id,
            AdvancedPayment.payment_period == billing_period,
            AdvancedPayment.status == InstrumentStatus.UNUSED.value,
        )
        .order_by(AdvancedPayment.created_at.asc(), AdvancedPayment.id.asc())
    ).scalars().all()
    return tuple(
        InstrumentCandidate(
            kind=InstrumentKind.ADVANCED_PAYMENT,
            id=payment.id,
            amount=to_money(payment.payment_amount),
        )
        for payment in payments
    )


def load_billing_snapshot(
    db: Session,
    account: BillingAccount,
    *,
    billing_date: date,
    due_days: int | None = None,
) -> BillingSnapshot:
    if account.plan_id is None:
        raise AccountConfigurationError(f"Account {account.account_no} has no service plan")
    plan = db.get(ServicePlan, account.plan_id)
    if plan is None:
        raise AccountConfigurationError(f"Service plan {account.plan_id} not found for account {account.account_no}")
    if plan.price is None or to_money(plan.price) < ZERO_MONEY:
        raise AccountConfigurationError(f"Service plan {plan.plan_name} has an invalid price")

    billing_period = billing_period_for(billing_date)
    due_date = billing_date + timedelta(days=settings.billing_due_days if due_days is None else due_days)

    previous = latest_statement(db, account.id)
    payments = unrolled_payments(db, account.id)

    return BillingSnapshot(
        account=AccountSnapshot(
            id=account.id,
            account_no=account.account_no,
            customer_name=account.customer_name,
            email=account.email,
            billing_day=account.billing_day,
            plan_name=plan.plan_name,
            plan_price=to_money(plan.price),
            date_installed=account.date_installed,
            opening_balance=to_money(account.opening_balance or ZERO_MONEY),
            has_billing_history=_has_billing_history(db, account.id),
        ),
        billing_period=billing_period,
        billing_date=billing_date,
        due_date=due_date,
        days_in_month=days_in_month(billing_date),
        previous_statement=(
            PreviousStatement(
                id=previous.id,
                statement_date=previous.statement_date,
                total_amount_due=to_money(previous.total_amount_due),
            )
            if previous is not None
            else None
        ),
        unrolled_payment_ids=tuple(payment.id for payment in payments),
        unrolled_payments_total=sum_money(payment.amount for payment in payments),
        staggered_due=_staggered_due(db, account.id, billing_period),
        discount=_oldest_discount(db, account.id),
        rebate=_oldest_rebate(db, account.id, billing_period),
        service_charges=_service_charges(db, account.id, billing_date),
        advanced_payments=_advanced_payments(db, account.id, billing_period),
    )
