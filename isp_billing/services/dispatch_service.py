import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from isp_billing.core.config import settings
from isp_billing.core.id_utils import new_id
from isp_billing.core.observability import dispatch_logger, log_event
from isp_billing.models.account import BillingAccount
from isp_billing.models.dispatch import EmailQueue
from isp_billing.models.enums import DispatchStatus, DocumentType
from isp_billing.models.invoice import Invoice, StatementOfAccount
from isp_billing.services.email_service import DocumentSender, OutgoingDocument, get_document_sender
from isp_billing.services.pdf_export_service import build_text_pdf, invoice_lines, statement_lines

_ERROR_MAX_LENGTH = 255


@dataclass(frozen=True)
class DispatchSummary:
    processed: int
    sent: int
    failed: int


def _write_attachment(storage_dir: Path, filename: str, payload: bytes) -> str:
    storage_dir.mkdir(parents=True, exist_ok=True)
    path = storage_dir / filename
    path.write_bytes(payload)
    return str(path)


def _document_body(account: BillingAccount, title: str, invoice: Invoice) -> str:
    return (
        f"<p>Dear {account.customer_name},</p>"
        f"<p>Please find attached your {title.lower()} for billing period {invoice.billing_period}.</p>"
        f"<p>Total amount due: <strong>{invoice.total_amount_due:,.2f}</strong>"
        f" on or before {invoice.due_date.isoformat()}.</p>"
        f"<p>Account no: {account.account_no}</p>"
    )


def enqueue_billing_documents(
    db: Session,
    *,
    account: BillingAccount,
    invoice: Invoice,
    statement: StatementOfAccount,
    now: datetime | None = None,
    storage_dir: Path | None = None,
) -> list[EmailQueue]:
    """Queue the invoice and statement emails for a freshly committed bill."""
    if not account.email:
        log_event(
            dispatch_logger,
            "dispatch_skipped_no_email",
            account_id=account.id,
            invoice_id=invoice.id,
        )
        return []

    generated_at = now or datetime.now(timezone.utc)
    target_dir = storage_dir or settings.document_storage_dir
    documents = [
        (
            DocumentType.INVOICE,
            "Invoice",
            f"{invoice.invoice_no}-invoice.pdf",
            invoice_lines(account, invoice),
        ),
        (
            DocumentType.STATEMENT,
            "Statement of Account",
            f"{invoice.invoice_no}-statement.pdf",
            statement_lines(account, statement),
        ),
    ]

    entries: list[EmailQueue] = []
    for document_type, title, filename, lines in documents:
        attachment_path = _write_attachment(
            Path(target_dir),
            filename,
            build_text_pdf(title=f"{title} {invoice.billing_period}", lines=lines, generated_at=generated_at),
        )
        entry = EmailQueue(
            id=new_id(),
            account_id=account.id,
            invoice_id=invoice.id,
            document_type=document_type.value,
            recipient_email=account.email,
            subject=f"{title} for {invoice.billing_period} - {account.account_no}",
            body_html=_document_body(account, title, invoice),
            attachment_path=attachment_path,
            status=DispatchStatus.PENDING.value,
            attempts=0,
        )
        db.add(entry)
        entries.append(entry)

    log_event(
        dispatch_logger,
        "dispatch_enqueued",
        account_id=account.id,
        invoice_id=invoice.id,
        entries=len(entries),
    )
    return entries


def _remove_attachment(entry: EmailQueue) -> None:
    if not entry.attachment_path:
        return
    try:
        Path(entry.attachment_path).unlink(missing_ok=True)
    except OSError as exc:
        log_event(
            dispatch_logger,
            "dispatch_attachment_cleanup_failed",
            level=logging.WARNING,
            entry_id=entry.id,
            error=str(exc),
        )


def _deliver(db: Session, entry: EmailQueue, sender: DocumentSender, now: datetime) -> bool:
    result = sender.send(
        OutgoingDocument(
            recipient_email=entry.recipient_email,
            subject=entry.subject,
            body_html=entry.body_html,
            attachment_path=entry.attachment_path,
        )
    )
    if result.delivered:
        entry.status = DispatchStatus.SENT.value
        entry.sent_at = now
        entry.last_error = None
        db.commit()
        _remove_attachment(entry)
        log_event(dispatch_logger, "dispatch_sent", entry_id=entry.id, document_type=entry.document_type)
        return True

    entry.attempts += 1
    entry.status = DispatchStatus.FAILED.value
    entry.last_error = (result.detail or result.status)[:_ERROR_MAX_LENGTH]
    db.commit()
    log_event(
        dispatch_logger,
        "dispatch_failed",
        level=logging.WARNING,
        entry_id=entry.id,
        attempts=entry.attempts,
        error=entry.last_error,
    )
    return False


def _run_batch(db: Session, entries: list[EmailQueue], sender: DocumentSender, now: datetime) -> DispatchSummary:
    processed = 0
    sent = 0
    failed = 0
    for entry in entries:
        processed += 1
        if _deliver(db, entry, sender, now):
            sent += 1
        else:
            failed += 1
    return DispatchSummary(processed=processed, sent=sent, failed=failed)


def process_pending_documents(
    db: Session,
    *,
    sender: DocumentSender | None = None,
    limit: int | None = None,
    now: datetime | None = None,
) -> DispatchSummary:
    entries = db.execute(
        select(EmailQueue)
        .where(EmailQueue.status == DispatchStatus.PENDING.value)
        .order_by(EmailQueue.created_at.asc(), EmailQueue.id.asc())
        .limit(limit or settings.dispatch_batch_size)
    ).scalars().all()
    return _run_batch(db, entries, sender or get_document_sender(), now or datetime.now(timezone.utc))


def retry_failed_documents(
    db: Session,
    *,
    sender: DocumentSender | None = None,
    limit: int | None = None,
    max_attempts: int | None = None,
    now: datetime | None = None,
) -> DispatchSummary:
    attempts_cap = max_attempts or settings.dispatch_max_attempts
    entries = db.execute(
        select(EmailQueue)
        .where(
            EmailQueue.status == DispatchStatus.FAILED.value,
            EmailQueue.attempts < attempts_cap,
        )
        .order_by(EmailQueue.updated_at.asc(), EmailQueue.id.asc())
        .limit(limit or settings.dispatch_batch_size)
    ).scalars().all()
    return _run_batch(db, entries, sender or get_document_sender(), now or datetime.now(timezone.utc))


def reset_document_to_pending(db: Session, entry_id: str) -> EmailQueue:
    entry = db.get(EmailQueue, entry_id)
    if entry is None:
        raise LookupError(f"Dispatch entry {entry_id} not found")
    if entry.status == DispatchStatus.SENT.value:
        raise ValueError("Document already sent")

    entry.status = DispatchStatus.PENDING.value
    entry.attempts = 0
    entry.last_error = None
    db.commit()
    db.refresh(entry)
    log_event(dispatch_logger, "dispatch_reset", entry_id=entry.id)
    return entry
