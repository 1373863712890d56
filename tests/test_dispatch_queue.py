from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import select

from conftest import create_account, create_plan
from isp_billing.models.dispatch import EmailQueue
from isp_billing.models.enums import DispatchStatus, DocumentType
from isp_billing.services.billing_scheduler import run_billing_cycle
from isp_billing.services.dispatch_service import (
    process_pending_documents,
    reset_document_to_pending,
    retry_failed_documents,
)
from isp_billing.services.email_service import (
    EmailDeliveryResult,
    OutgoingDocument,
    StubDocumentSender,
    get_document_sender,
)

NOW = datetime(2026, 10, 15, 9, 0, tzinfo=timezone.utc)


@dataclass
class FailingSender:
    name: str = "failing"
    calls: list[OutgoingDocument] = field(default_factory=list)

    def send(self, document: OutgoingDocument) -> EmailDeliveryResult:
        self.calls.append(document)
        return EmailDeliveryResult(status="failed", detail="Mailbox unavailable")


def _seed(session_local, *, email="subscriber@example.com"):
    db = session_local()
    try:
        plan = create_plan(db)
        create_account(db, plan, account_no="A-3001", billing_day=15, email=email)
        db.commit()
        run_billing_cycle(db, run_date=date(2026, 10, 15), operator_id="ops-1")
    finally:
        db.close()


def _entries(session_local) -> list[EmailQueue]:
    db = session_local()
    try:
        rows = db.execute(select(EmailQueue).order_by(EmailQueue.document_type)).scalars().all()
        db.expunge_all()
        return rows
    finally:
        db.close()


def test_billing_run_queues_invoice_and_statement(session_local):
    _seed(session_local)

    entries = _entries(session_local)

    assert sorted(entry.document_type for entry in entries) == [
        DocumentType.INVOICE.value,
        DocumentType.STATEMENT.value,
    ]
    for entry in entries:
        assert entry.status == DispatchStatus.PENDING.value
        assert entry.attempts == 0
        assert entry.recipient_email == "subscriber@example.com"
        assert "A-3001" in entry.subject
        assert Path(entry.attachment_path).read_bytes().startswith(b"%PDF-1.4")


def test_account_without_email_gets_no_entries(session_local):
    _seed(session_local, email=None)

    assert _entries(session_local) == []


def test_pending_documents_are_sent_and_attachments_removed(session_local):
    _seed(session_local)
    sender = StubDocumentSender()

    db = session_local()
    try:
        summary = process_pending_documents(db, sender=sender, now=NOW)
    finally:
        db.close()

    assert (summary.processed, summary.sent, summary.failed) == (2, 2, 0)
    assert len(sender.sent) == 2
    for entry in _entries(session_local):
        assert entry.status == DispatchStatus.SENT.value
        assert entry.sent_at is not None
        assert not Path(entry.attachment_path).exists()

    db = session_local()
    try:
        again = process_pending_documents(db, sender=sender, now=NOW)
    finally:
        db.close()
    assert again.processed == 0


def test_failed_send_records_error_and_keeps_attachment(session_local):
    _seed(session_local)

    db = session_local()
    try:
        summary = process_pending_documents(db, sender=FailingSender(), now=NOW)
    finally:
        db.close()

    assert (summary.processed, summary.sent, summary.failed) == (2, 0, 2)
    for entry in _entries(session_local):
        assert entry.status == DispatchStatus.FAILED.value
        assert entry.attempts == 1
        assert entry.last_error == "Mailbox unavailable"
        assert Path(entry.attachment_path).exists()


def test_retry_stops_at_attempt_limit(session_local):
    _seed(session_local)
    sender = FailingSender()

    db = session_local()
    try:
        process_pending_documents(db, sender=sender, now=NOW)
        first = retry_failed_documents(db, sender=sender, max_attempts=3, now=NOW)
        second = retry_failed_documents(db, sender=sender, max_attempts=3, now=NOW)
        third = retry_failed_documents(db, sender=sender, max_attempts=3, now=NOW)
    finally:
        db.close()

    assert first.processed == 2
    assert second.processed == 2
    assert third.processed == 0
    assert len(sender.calls) == 6
    assert all(entry.attempts == 3 for entry in _entries(session_local))


def test_retry_delivers_after_transient_failure(session_local):
    _seed(session_local)

    db = session_local()
    try:
        process_pending_documents(db, sender=FailingSender(), now=NOW)
        summary = retry_failed_documents(db, sender=StubDocumentSender(), now=NOW)
    finally:
        db.close()

    assert summary.sent == 2
    assert all(entry.status == DispatchStatus.SENT.value for entry in _entries(session_local))


def test_reset_returns_failed_entry_to_pending(session_local):
    _seed(session_local)

    db = session_local()
    try:
        process_pending_documents(db, sender=FailingSender(), now=NOW)
        entry_id = db.execute(select(EmailQueue.id).limit(1)).scalar_one()
        entry = reset_document_to_pending(db, entry_id)
        assert entry.status == DispatchStatus.PENDING.value
        assert entry.attempts == 0
        assert entry.last_error is None
    finally:
        db.close()


def test_reset_rejects_sent_and_unknown_entries(session_local):
    _seed(session_local)

    db = session_local()
    try:
        process_pending_documents(db, sender=StubDocumentSender(), now=NOW)
        entry_id = db.execute(select(EmailQueue.id).limit(1)).scalar_one()
        with pytest.raises(ValueError):
            reset_document_to_pending(db, entry_id)
        with pytest.raises(LookupError):
            reset_document_to_pending(db, "missing")
    finally:
        db.close()


def test_unknown_sender_name_is_rejected():
    with pytest.raises(ValueError):
        get_document_sender("pigeon")
    assert get_document_sender("stub").name == "stub"
