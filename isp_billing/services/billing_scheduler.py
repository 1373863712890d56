import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from sqlalchemy.orm import Session

from isp_billing.core.config import settings
from isp_billing.core.id_utils import new_id
from isp_billing.core.observability import billing_logger, log_event
from isp_billing.models.billing_run import BillingRun
from isp_billing.models.enums import BillingRunMode
from isp_billing.services import ledger_service
from isp_billing.services.allocation import allocate
from isp_billing.services.audit_service import log_audit_event
from isp_billing.services.billing_repository import (
    billing_days_for,
    billing_period_for,
    invoice_exists_for_period,
    load_billing_snapshot,
    lock_account,
    select_due_accounts,
)
from isp_billing.services.dispatch_service import enqueue_billing_documents
from isp_billing.services.invoice_composer import compose_invoice

AccountRunStatus = Literal["generated", "previewed", "skipped", "failed"]


@dataclass(frozen=True)
class AccountRunResult:
    account_id: str
    account_no: str
    status: AccountRunStatus
    invoice_id: str | None = None
    total_amount_due: Decimal | None = None
    error: str | None = None


@dataclass
class BillingRunSummary:
    run_date: date
    mode: BillingRunMode
    billing_period: str
    billing_days: list[int]
    selected: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    results: list[AccountRunResult] = field(default_factory=list)
    run_id: str | None = None

    def record(self, result: AccountRunResult) -> None:
        self.results.append(result)
        if result.status in ("generated", "previewed"):
            self.generated += 1
        elif result.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append({"account_no": result.account_no, "error": result.error})

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["mode"] = self.mode.value
        return payload


def _bill_account(
    db: Session,
    account_id: str,
    *,
    run_date: date,
    billing_period: str,
    operator_id: str,
    mode: BillingRunMode,
    now: datetime,
) -> AccountRunResult:
    account = lock_account(db, account_id)
    if account is None:
        raise LookupError(f"Account {account_id} disappeared before billing")

    if invoice_exists_for_period(db, account_id=account.id, billing_period=billing_period):
        return AccountRunResult(account_id=account.id, account_no=account.account_no, status="skipped")

    snapshot = load_billing_snapshot(db, account, billing_date=run_date)
    plan = allocate(
        snapshot,
        vat_rate=settings.billing_vat_rate,
        vat_on_carry_forward=settings.billing_vat_on_carry_forward,
        prorate_first_invoice=settings.billing_prorate_first_invoice,
    )

    if mode == BillingRunMode.PREVIEW:
        return AccountRunResult(
            account_id=account.id,
            account_no=account.account_no,
            status="previewed",
            total_amount_due=plan.total_amount_due,
        )

    documents = compose_invoice(db, account, plan, operator_id=operator_id, now=now)
    ledger_service.apply_invoice(db, account, documents.invoice, on=run_date)
    db.commit()
    log_event(
        billing_logger,
        "invoice_generated",
        account_id=account.id,
        invoice_id=documents.invoice.id,
        invoice_no=documents.invoice.invoice_no,
        billing_period=billing_period,
        total_amount_due=documents.invoice.total_amount_due,
    )

    try:
        enqueue_billing_documents(
            db,
            account=account,
            invoice=documents.invoice,
            statement=documents.statement,
            now=now,
        )
        db.commit()
    except Exception as exc:  # noqa: BLE001 - billing is committed, dispatch is best effort
        db.rollback()
        log_event(
            billing_logger,
            "dispatch_enqueue_failed",
            level=logging.WARNING,
            account_id=account.id,
            invoice_id=documents.invoice.id,
            error=str(exc),
        )

    return AccountRunResult(
        account_id=documents.invoice.account_id,
        account_no=account.account_no,
        status="generated",
        invoice_id=documents.invoice.id,
        total_amount_due=documents.invoice.total_amount_due,
    )


def run_billing_cycle(
    db: Session,
    *,
    run_date: date,
    operator_id: str | None = None,
    mode: BillingRunMode = BillingRunMode.GENERATE,
    billing_day_override: int | None = None,
    now: datetime | None = None,
) -> BillingRunSummary:
    """Bill every account due on ``run_date``, one transaction per account.

    A failing account is rolled back, logged and counted; the batch carries
    on. Preview mode allocates but never writes.
    """
    started_at = now or datetime.now(timezone.utc)
    actor = operator_id or settings.billing_system_operator_id
    billing_period = billing_period_for(run_date)
    summary = BillingRunSummary(
        run_date=run_date,
        mode=mode,
        billing_period=billing_period,
        billing_days=billing_days_for(run_date, override=billing_day_override),
    )

    accounts = select_due_accounts(db, run_date=run_date, billing_day_override=billing_day_override)
    candidates = [(account.id, account.account_no) for account in accounts]
    db.rollback()
    summary.selected = len(candidates)
    log_event(
        billing_logger,
        "billing_run_started",
        run_date=run_date,
        mode=mode.value,
        billing_days=summary.billing_days,
        selected=summary.selected,
    )

    for account_id, account_no in candidates:
        try:
            result = _bill_account(
                db,
                account_id,
                run_date=run_date,
                billing_period=billing_period,
                operator_id=actor,
                mode=mode,
                now=started_at,
            )
            if mode == BillingRunMode.PREVIEW:
                db.rollback()
        except Exception as exc:  # noqa: BLE001 - one bad account must not stop the batch
            db.rollback()
            result = AccountRunResult(
                account_id=account_id,
                account_no=account_no,
                status="failed",
                error=str(exc),
            )
            log_event(
                billing_logger,
                "invoice_generation_failed",
                level=logging.ERROR,
                account_id=account_id,
                account_no=account_no,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        summary.record(result)

    if mode == BillingRunMode.GENERATE:
        run = BillingRun(
            id=new_id(),
            run_date=run_date,
            mode=mode.value,
            operator_id=actor,
            billing_days=summary.billing_days,
            selected_count=summary.selected,
            generated_count=summary.generated,
            skipped_count=summary.skipped,
            failed_count=summary.failed,
            errors_json=summary.errors or None,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )
        db.add(run)
        log_audit_event(
            db,
            actor_id=actor,
            action="billing.run",
            target_type="billing_run",
            target_id=run.id,
            metadata_json={
                "run_date": run_date.isoformat(),
                "billing_period": billing_period,
                "generated": summary.generated,
                "skipped": summary.skipped,
                "failed": summary.failed,
            },
        )
        db.commit()
        summary.run_id = run.id

    log_event(
        billing_logger,
        "billing_run_completed",
        run_date=run_date,
        mode=mode.value,
        selected=summary.selected,
        generated=summary.generated,
        skipped=summary.skipped,
        failed=summary.failed,
    )
    return summary
