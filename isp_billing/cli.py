"""Cron entrypoints.

    isp-billing-run          daily billing cycle (preview or generate)
    isp-payment-worker       one payment settlement tick, every two minutes
    isp-dispatch-documents   deliver pending / retry failed billing emails
"""

import argparse
import json
import logging
from datetime import date

from isp_billing.core.config import settings
from isp_billing.core.observability import billing_logger, log_event, setup_observability, worker_logger
from isp_billing.db.session import SessionLocal
from isp_billing.models.enums import BillingRunMode
from isp_billing.services.billing_scheduler import run_billing_cycle
from isp_billing.services.dispatch_service import process_pending_documents, retry_failed_documents
from isp_billing.services.payment_gateway import get_payment_gateway
from isp_billing.services.payment_worker import run_worker_tick


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def billing_run_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate invoices and statements for accounts due today.")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in BillingRunMode],
        default=BillingRunMode.GENERATE.value,
        help="preview computes totals without writing anything.",
    )
    parser.add_argument(
        "--day",
        type=int,
        default=None,
        help="Billing day to run instead of today's (0 = end-of-month accounts).",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Run date as YYYY-MM-DD (defaults to today).",
    )
    parser.add_argument(
        "--operator",
        default=settings.billing_system_operator_id,
        help="Operator id recorded on generated invoices.",
    )
    args = parser.parse_args(argv)

    setup_observability()
    db = SessionLocal()
    try:
        summary = run_billing_cycle(
            db,
            run_date=args.date or date.today(),
            operator_id=args.operator,
            mode=BillingRunMode(args.mode),
            billing_day_override=args.day,
        )
    except Exception as exc:  # noqa: BLE001 - surfaced as exit status for cron
        log_event(billing_logger, "billing_run_crashed", level=logging.ERROR, error=str(exc))
        return 1
    finally:
        db.close()

    _print_json(summary.to_dict())
    return 0


def _print_counts(label: str, counts: dict[str, int]) -> None:
    print(f"{label}: " + ", ".join(f"{status}={count}" for status, count in counts.items()))


def payment_worker_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run one payment settlement tick.")
    parser.parse_args(argv)

    setup_observability()
    try:
        gateway = get_payment_gateway()
    except ValueError as exc:
        log_event(worker_logger, "worker_config_error", level=logging.ERROR, error=str(exc))
        return 1
    db = SessionLocal()
    try:
        result = run_worker_tick(db, gateway=gateway)
    finally:
        db.close()

    _print_counts("before", result.before)
    if result.status == "locked":
        print("Another payment worker holds the lease; exiting.")
        return result.exit_code
    _print_counts("after", result.after)
    print(
        f"processed={result.processed} paid={result.paid} failed={result.failed} "
        f"retried={result.retried} requeued={result.requeued}"
    )
    if result.error:
        print(f"tick aborted: {result.error}")
    return result.exit_code


def dispatch_documents_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Deliver queued billing documents by email.")
    parser.add_argument(
        "--retry",
        action="store_true",
        help="Retry failed entries that are still under the attempt limit.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.dispatch_batch_size,
        help="Maximum entries to handle in this run.",
    )
    args = parser.parse_args(argv)

    setup_observability()
    db = SessionLocal()
    try:
        if args.retry:
            summary = retry_failed_documents(db, limit=args.batch_size)
        else:
            summary = process_pending_documents(db, limit=args.batch_size)
    finally:
        db.close()

    _print_json({"processed": summary.processed, "sent": summary.sent, "failed": summary.failed})
    return 0


if __name__ == "__main__":
    raise SystemExit(billing_run_main())
