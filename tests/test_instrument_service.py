from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import create_account, create_plan
from isp_billing.models.enums import AccountStatus, InstrumentStatus, RebateType, StaggeredStatus
from isp_billing.models.instruments import RebateUsage, StaggeredInstallment
from isp_billing.services.instrument_service import (
    create_staggered_installation,
    issue_mass_rebate,
    shift_period,
)


def test_mass_rebate_creates_usage_per_active_matching_account(session_local):
    db = session_local()
    try:
        plan = create_plan(db)
        first = create_account(db, plan, account_no="A-7001", billing_day=5, lcp="LCP-NORTH")
        second = create_account(db, plan, account_no="A-7002", billing_day=20, lcp="LCP-NORTH")
        create_account(db, plan, account_no="A-7003", billing_day=5, lcp="LCP-SOUTH")
        create_account(
            db,
            plan,
            account_no="A-7004",
            billing_day=5,
            lcp="LCP-NORTH",
            status=AccountStatus.SUSPENDED.value,
        )

        rebate = issue_mass_rebate(
            db,
            rebate_type=RebateType.LCP,
            selected_rebate="LCP-NORTH",
            number_of_dates=3,
            billing_period="2026-10",
            remarks="Fiber cut on the north trunk",
        )
        db.commit()

        usages = db.execute(select(RebateUsage).where(RebateUsage.rebate_id == rebate.id)).scalars().all()
        assert sorted(usage.account_id for usage in usages) == sorted([first.id, second.id])
        assert all(usage.status == InstrumentStatus.UNUSED.value for usage in usages)
        assert rebate.status == InstrumentStatus.UNUSED.value
        assert rebate.rebate_type == "lcp"
    finally:
        db.close()


def test_mass_rebate_without_matching_accounts_is_rejected(session_local):
    db = session_local()
    try:
        plan = create_plan(db)
        create_account(db, plan, account_no="A-7101", billing_day=5, location="Quezon City")

        with pytest.raises(ValueError):
            issue_mass_rebate(
                db,
                rebate_type=RebateType.LOCATION,
                selected_rebate="Makati",
                number_of_dates=2,
                billing_period="2026-10",
            )
        with pytest.raises(ValueError):
            issue_mass_rebate(
                db,
                rebate_type=RebateType.LOCATION,
                selected_rebate="Quezon City",
                number_of_dates=0,
                billing_period="2026-10",
            )
    finally:
        db.close()


def test_staggered_installation_splits_balance_per_month(session_local):
    db = session_local()
    try:
        plan = create_plan(db)
        account = create_account(db, plan, account_no="A-7201", billing_day=15)

        installation = create_staggered_installation(
            db,
            account_id=account.id,
            staggered_balance=Decimal("1000.00"),
            months_to_pay=3,
            start_period="2026-11",
        )
        db.commit()

        dues = db.execute(
            select(StaggeredInstallment)
            .where(StaggeredInstallment.installation_id == installation.id)
            .order_by(StaggeredInstallment.installment_no)
        ).scalars().all()

        assert installation.monthly_payment == Decimal("333.33")
        assert installation.status == StaggeredStatus.ACTIVE.value
        assert [due.due_period for due in dues] == ["2026-11", "2026-12", "2027-01"]
        assert [due.amount for due in dues] == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
        assert sum(due.amount for due in dues) == Decimal("1000.00")
    finally:
        db.close()


def test_staggered_installation_validates_input(session_local):
    db = session_local()
    try:
        plan = create_plan(db)
        account = create_account(db, plan, account_no="A-7301", billing_day=15)

        with pytest.raises(LookupError):
            create_staggered_installation(
                db,
                account_id="missing",
                staggered_balance=Decimal("100.00"),
                months_to_pay=2,
                start_period="2026-11",
            )
        with pytest.raises(ValueError):
            create_staggered_installation(
                db,
                account_id=account.id,
                staggered_balance=Decimal("0.00"),
                months_to_pay=2,
                start_period="2026-11",
            )
        with pytest.raises(ValueError):
            create_staggered_installation(
                db,
                account_id=account.id,
                staggered_balance=Decimal("100.00"),
                months_to_pay=0,
                start_period="2026-11",
            )
    finally:
        db.close()


@pytest.mark.parametrize(
    ("period", "months", "expected"),
    [
        ("2026-10", 0, "2026-10"),
        ("2026-10", 3, "2027-01"),
        ("2026-01", -1, "2025-12"),
    ],
)
def test_shift_period(period, months, expected):
    assert shift_period(period, months) == expected
