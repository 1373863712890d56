from datetime import date, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from isp_billing.core.config import settings
from isp_billing.core.money import ZERO_MONEY, to_money
from isp_billing.models.billing_run import BillingRun
from isp_billing.models.dispatch import EmailQueue
from isp_billing.models.enums import DispatchStatus
from isp_billing.models.invoice import Invoice, StatementOfAccount
from isp_billing.services.billing_repository import billing_days_for, billing_period_for, select_due_accounts

HISTORY_DAYS = 7


def _invoice_totals(db: Session, on: date) -> tuple[int, float]:
    count, total = db.execute(
        select(func.count(Invoice.id), func.coalesce(func.sum(Invoice.total_amount_due), 0)).where(
            Invoice.invoice_date == on
        )
    ).one()
    return int(count or 0), float(to_money(total or ZERO_MONEY))


def _statement_totals(db: Session, on: date) -> tuple[int, float]:
    count, total = db.execute(
        select(
            func.count(StatementOfAccount.id),
            func.coalesce(func.sum(StatementOfAccount.total_amount_due), 0),
        ).where(StatementOfAccount.statement_date == on)
    ).one()
    return int(count or 0), float(to_money(total or ZERO_MONEY))


def _dispatch_counts(db: Session) -> dict[str, int]:
    rows = db.execute(
        select(EmailQueue.status, func.count(EmailQueue.id)).group_by(EmailQueue.status)
    ).all()
    counts = {status.value: 0 for status in DispatchStatus}
    for status, count in rows:
        counts[str(status)] = int(count or 0)
    return counts


def get_billing_diagnostics(db: Session, *, on: date) -> dict:
    invoice_count, invoice_total = _invoice_totals(db, on)
    statement_count, statement_total = _statement_totals(db, on)
    scheduled = select_due_accounts(db, run_date=on)

    history = []
    for offset in range(HISTORY_DAYS - 1, -1, -1):
        day = on - timedelta(days=offset)
        count, total = _invoice_totals(db, day)
        history.append({"day": day, "invoices": count, "total_amount_due": total})

    last_run = db.execute(
        select(BillingRun).order_by(BillingRun.started_at.desc()).limit(1)
    ).scalar_one_or_none()

    return {
        "on": on,
        "billing_period": billing_period_for(on),
        "billing_days": billing_days_for(on),
        "advance_generation_days": settings.billing_advance_generation_days,
        "scheduled_accounts": len(scheduled),
        "scheduled_account_numbers": [account.account_no for account in scheduled],
        "invoices_generated": invoice_count,
        "invoices_total_amount_due": invoice_total,
        "statements_generated": statement_count,
        "statements_total_amount_due": statement_total,
        "dispatch": _dispatch_counts(db),
        "last_run": (
            {
                "id": last_run.id,
                "run_date": last_run.run_date,
                "mode": last_run.mode,
                "generated": last_run.generated_count,
                "skipped": last_run.skipped_count,
                "failed": last_run.failed_count,
            }
            if last_run is not None
            else None
        ),
        "history": history,
    }
