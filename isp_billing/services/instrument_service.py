from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from isp_billing.core.id_utils import new_id
from isp_billing.core.money import to_money
from isp_billing.models.account import BillingAccount
from isp_billing.models.enums import AccountStatus, InstrumentStatus, RebateType, StaggeredStatus
from isp_billing.models.instruments import (
    MassRebate,
    RebateUsage,
    StaggeredInstallation,
    StaggeredInstallment,
)

_REBATE_MATCH_COLUMNS = {
    RebateType.LCP: BillingAccount.lcp,
    RebateType.LCPNAP: BillingAccount.lcpnap,
    RebateType.LOCATION: BillingAccount.location,
}


def shift_period(period: str, months: int) -> str:
    year, month = (int(part) for part in period.split("-"))
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def issue_mass_rebate(
    db: Session,
    *,
    rebate_type: RebateType,
    selected_rebate: str,
    number_of_dates: int,
    billing_period: str,
    remarks: str | None = None,
) -> MassRebate:
    """Create a rebate and one usage per active account in the affected area."""
    if number_of_dates <= 0:
        raise ValueError("number_of_dates must be positive")

    column = _REBATE_MATCH_COLUMNS[RebateType(rebate_type)]
    account_ids = db.execute(
        select(BillingAccount.id).where(
            column == selected_rebate,
            BillingAccount.status == AccountStatus.ACTIVE.value,
        )
    ).scalars().all()
    if not account_ids:
        raise ValueError(f"No active accounts match {RebateType(rebate_type).value} '{selected_rebate}'")

    rebate = MassRebate(
        id=new_id(),
        rebate_type=RebateType(rebate_type).value,
        selected_rebate=selected_rebate,
        number_of_dates=number_of_dates,
        billing_period=billing_period,
        status=InstrumentStatus.UNUSED.value,
        remarks=remarks,
    )
    db.add(rebate)
    db.flush()
    for account_id in account_ids:
        db.add(
            RebateUsage(
                id=new_id(),
                rebate_id=rebate.id,
                account_id=account_id,
                status=InstrumentStatus.UNUSED.value,
            )
        )
    db.flush()
    return rebate


def create_staggered_installation(
    db: Session,
    *,
    account_id: str,
    staggered_balance: Decimal,
    months_to_pay: int,
    start_period: str,
    remarks: str | None = None,
) -> StaggeredInstallation:
    if months_to_pay <= 0:
        raise ValueError("months_to_pay must be positive")
    balance = to_money(staggered_balance)
    if balance <= 0:
        raise ValueError("staggered_balance must be positive")
    if db.get(BillingAccount, account_id) is None:
        raise LookupError(f"Account {account_id} not found")

    monthly_payment = to_money(balance / months_to_pay)
    installation = StaggeredInstallation(
        id=new_id(),
        account_id=account_id,
        staggered_balance=balance,
        months_to_pay=months_to_pay,
        monthly_payment=monthly_payment,
        start_period=start_period,
        status=StaggeredStatus.ACTIVE.value,
        remarks=remarks,
    )
    db.add(installation)
    db.flush()

    scheduled = Decimal("0.00")
    for installment_no in range(1, months_to_pay + 1):
        # last due absorbs the rounding remainder
        if installment_no == months_to_pay:
            amount = to_money(balance - scheduled)
        else:
            amount = monthly_payment
        scheduled += amount
        db.add(
            StaggeredInstallment(
                id=new_id(),
                installation_id=installation.id,
                account_id=account_id,
                installment_no=installment_no,
                due_period=shift_period(start_period, installment_no - 1),
                amount=amount,
                status=InstrumentStatus.UNUSED.value,
            )
        )
    db.flush()
    return installation
