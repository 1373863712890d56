import logging
import os
import socket
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from isp_billing.core.config import settings
from isp_billing.core.observability import log_event, worker_logger
from isp_billing.models.account import BillingAccount
from isp_billing.models.enums import PaymentIntentStatus
from isp_billing.models.invoice import Invoice
from isp_billing.models.payment import PaymentIntent
from isp_billing.services import ledger_service
from isp_billing.services.payment_gateway import (
    GatewayChargeRequest,
    GatewayOutcome,
    GatewayResult,
    PaymentGateway,
)
from isp_billing.services.worker_lock import acquire_lease, release_lease

PAYMENT_WORKER_LOCK = "payment_worker"
_ERROR_MAX_LENGTH = 255

WorkerTickStatus = Literal["completed", "locked", "aborted"]


@dataclass(frozen=True)
class WorkerTickResult:
    status: WorkerTickStatus
    holder: str
    before: dict[str, int]
    after: dict[str, int] = field(default_factory=dict)
    requeued: int = 0
    processed: int = 0
    paid: int = 0
    failed: int = 0
    retried: int = 0
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status == "completed" else 1


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def get_statistics(db: Session) -> dict[str, int]:
    rows = db.execute(
        select(PaymentIntent.status, func.count(PaymentIntent.id)).group_by(PaymentIntent.status)
    ).all()
    counts = {status.value.lower(): 0 for status in PaymentIntentStatus}
    for status, count in rows:
        counts[str(status).lower()] = int(count or 0)
    return counts


def retry_delay_seconds(attempts: int, *, base_seconds: int | None = None, max_seconds: int | None = None) -> int:
    base = base_seconds or settings.payment_retry_base_seconds
    cap = max_seconds or settings.payment_retry_max_seconds
    exponent = max(attempts - 1, 0)
    return min(base * (2 ** exponent), cap)


def _requeue_stale_processing(db: Session, now: datetime, max_attempts: int) -> int:
    """Recover claims abandoned by a crashed tick.

    Intents that already spent their retry budget fail instead of going back
    to the queue. Returns the number requeued.
    """
    cutoff = now - timedelta(seconds=settings.payment_processing_stale_seconds)
    stale = (
        PaymentIntent.status == PaymentIntentStatus.PROCESSING.value,
        or_(PaymentIntent.last_attempt_at.is_(None), PaymentIntent.last_attempt_at < cutoff),
    )
    exhausted = db.execute(
        update(PaymentIntent)
        .where(*stale, PaymentIntent.attempts >= max_attempts)
        .values(
            status=PaymentIntentStatus.FAILED.value,
            next_attempt_at=None,
            last_error="Retry limit reached before the claim completed",
        )
        .execution_options(synchronize_session=False)
    )
    if exhausted.rowcount:
        log_event(
            worker_logger,
            "payment_intent_stale_failed",
            level=logging.WARNING,
            count=exhausted.rowcount,
            max_attempts=max_attempts,
        )
    result = db.execute(
        update(PaymentIntent)
        .where(*stale, PaymentIntent.attempts < max_attempts)
        .values(status=PaymentIntentStatus.QUEUED.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _promote_ready(db: Session, now: datetime) -> int:
    pending = db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.status == PaymentIntentStatus.PENDING.value)
        .values(status=PaymentIntentStatus.QUEUED.value)
        .execution_options(synchronize_session=False)
    )
    retries = db.execute(
        update(PaymentIntent)
        .where(
            PaymentIntent.status == PaymentIntentStatus.API_RETRY.value,
            or_(PaymentIntent.next_attempt_at.is_(None), PaymentIntent.next_attempt_at <= now),
        )
        .values(status=PaymentIntentStatus.QUEUED.value)
        .execution_options(synchronize_session=False)
    )
    return (pending.rowcount or 0) + (retries.rowcount or 0)


def _claim(db: Session, intent_id: str, now: datetime) -> bool:
    result = db.execute(
        update(PaymentIntent)
        .where(
            PaymentIntent.id == intent_id,
            PaymentIntent.status == PaymentIntentStatus.QUEUED.value,
        )
        .values(
            status=PaymentIntentStatus.PROCESSING.value,
            attempts=PaymentIntent.attempts + 1,
            last_attempt_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _charge_request(db: Session, intent: PaymentIntent) -> GatewayChargeRequest:
    account = db.get(BillingAccount, intent.account_id)
    invoice = db.get(Invoice, intent.invoice_id) if intent.invoice_id else None
    return GatewayChargeRequest(
        reference_no=intent.reference_no,
        account_no=account.account_no if account is not None else intent.account_id,
        amount=intent.amount,
        invoice_no=invoice.invoice_no if invoice is not None else None,
    )


def _settle(db: Session, intent: PaymentIntent, result: GatewayResult, now: datetime) -> None:
    account = db.execute(
        select(BillingAccount).where(BillingAccount.id == intent.account_id).with_for_update()
    ).scalar_one()
    ledger_service.apply_payment(
        db,
        account,
        amount=intent.amount,
        reference_no=intent.reference_no,
        paid_at=now,
        invoice_id=intent.invoice_id,
        payment_intent_id=intent.id,
    )
    intent.status = PaymentIntentStatus.PAID.value
    intent.next_attempt_at = None
    intent.last_error = None
    intent.gateway_payload = result.payload


def _process_intent(
    db: Session,
    intent: PaymentIntent,
    gateway: PaymentGateway,
    *,
    now: datetime,
    max_attempts: int,
) -> PaymentIntentStatus:
    result = gateway.charge(_charge_request(db, intent))

    if result.outcome == GatewayOutcome.SUCCESS:
        _settle(db, intent, result, now)
    elif result.outcome == GatewayOutcome.DECLINED:
        intent.status = PaymentIntentStatus.FAILED.value
        intent.next_attempt_at = None
        intent.last_error = (result.detail or "Declined by gateway")[:_ERROR_MAX_LENGTH]
        intent.gateway_payload = result.payload
    elif intent.attempts < max_attempts:
        intent.status = PaymentIntentStatus.API_RETRY.value
        intent.next_attempt_at = now + timedelta(seconds=retry_delay_seconds(intent.attempts))
        intent.last_error = (result.detail or "Retryable gateway error")[:_ERROR_MAX_LENGTH]
    else:
        intent.status = PaymentIntentStatus.FAILED.value
        intent.next_attempt_at = None
        intent.last_error = (result.detail or "Retry limit reached")[:_ERROR_MAX_LENGTH]

    db.commit()
    outcome = PaymentIntentStatus(intent.status)
    log_event(
        worker_logger,
        "payment_intent_processed",
        level=logging.WARNING if outcome == PaymentIntentStatus.FAILED else logging.INFO,
        intent_id=intent.id,
        reference_no=intent.reference_no,
        attempts=intent.attempts,
        status=outcome.value,
        error=intent.last_error,
        terminal=outcome.is_terminal,
    )
    return outcome


def _log_contention(holder: str, lease_holder: str, contended_ticks: int) -> None:
    log_event(
        worker_logger,
        "worker_lock_contended",
        level=logging.WARNING if contended_ticks >= settings.worker_contention_warn_ticks else logging.INFO,
        holder=holder,
        lease_holder=lease_holder,
        contended_ticks=contended_ticks,
    )


def run_worker_tick(
    db: Session,
    *,
    gateway: PaymentGateway,
    now: datetime | None = None,
    holder: str | None = None,
    batch_limit: int | None = None,
    max_attempts: int | None = None,
) -> WorkerTickResult:
    """Run one settlement pass under the ``payment_worker`` lease."""
    tick_now = now or datetime.now(timezone.utc)
    worker_id = holder or default_holder()
    attempts_cap = max_attempts or settings.payment_max_attempts
    before = get_statistics(db)

    lease = acquire_lease(db, lock_name=PAYMENT_WORKER_LOCK, holder=worker_id, now=tick_now)
    if not lease.acquired:
        _log_contention(worker_id, lease.holder, lease.contended_ticks)
        return WorkerTickResult(status="locked", holder=worker_id, before=before, after=before)

    requeued = 0
    processed = 0
    outcomes: list[PaymentIntentStatus] = []
    try:
        requeued = _requeue_stale_processing(db, tick_now, attempts_cap)
        _promote_ready(db, tick_now)
        db.commit()

        queued_ids = db.execute(
            select(PaymentIntent.id)
            .where(PaymentIntent.status == PaymentIntentStatus.QUEUED.value)
            .order_by(PaymentIntent.created_at.asc(), PaymentIntent.id.asc())
            .limit(batch_limit or settings.payment_batch_limit)
        ).scalars().all()

        for intent_id in queued_ids:
            if not _claim(db, intent_id, tick_now):
                continue
            intent = db.get(PaymentIntent, intent_id, populate_existing=True)
            processed += 1
            outcomes.append(_process_intent(db, intent, gateway, now=tick_now, max_attempts=attempts_cap))
    except Exception as exc:  # noqa: BLE001 - claimed items stay PROCESSING for stale recovery
        db.rollback()
        log_event(
            worker_logger,
            "worker_tick_aborted",
            level=logging.ERROR,
            holder=worker_id,
            error=str(exc),
            traceback=traceback.format_exc(limit=10),
        )
        return WorkerTickResult(
            status="aborted",
            holder=worker_id,
            before=before,
            after=get_statistics(db),
            requeued=requeued,
            processed=processed,
            error=str(exc),
        )
    finally:
        release_lease(db, lock_name=PAYMENT_WORKER_LOCK, holder=worker_id, now=tick_now)

    result = WorkerTickResult(
        status="completed",
        holder=worker_id,
        before=before,
        after=get_statistics(db),
        requeued=requeued,
        processed=processed,
        paid=outcomes.count(PaymentIntentStatus.PAID),
        failed=outcomes.count(PaymentIntentStatus.FAILED),
        retried=outcomes.count(PaymentIntentStatus.API_RETRY),
    )
    log_event(
        worker_logger,
        "worker_tick_completed",
        holder=worker_id,
        requeued=result.requeued,
        processed=result.processed,
        paid=result.paid,
        failed=result.failed,
        retried=result.retried,
    )
    return result
