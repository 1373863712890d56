from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import requests
from sqlalchemy import select

from conftest import create_account, create_plan
from isp_billing import cli
from isp_billing.core.config import settings
from isp_billing.core.id_utils import new_id
from isp_billing.models.account import BillingAccount
from isp_billing.models.enums import InvoiceStatus, PaymentIntentStatus
from isp_billing.models.invoice import Invoice, PaymentTransaction
from isp_billing.models.payment import PaymentIntent, WorkerLock
from isp_billing.services.billing_scheduler import run_billing_cycle
from isp_billing.services.payment_gateway import (
    GatewayOutcome,
    GatewayResult,
    HttpPaymentGateway,
    GatewayChargeRequest,
)
from isp_billing.services.payment_worker import PAYMENT_WORKER_LOCK, _claim, retry_delay_seconds, run_worker_tick
from isp_billing.services.worker_lock import acquire_lease

NOW = datetime(2026, 10, 16, 8, 0, tzinfo=timezone.utc)


class FakeGateway:
    name = "fake"

    def __init__(self, *outcomes: GatewayOutcome):
        self.outcomes = list(outcomes)
        self.calls: list[GatewayChargeRequest] = []

    def charge(self, request: GatewayChargeRequest) -> GatewayResult:
        self.calls.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if outcome == GatewayOutcome.SUCCESS:
            return GatewayResult(outcome=outcome, transaction_ref="gw-1", payload={"status": "PAID"})
        if outcome == GatewayOutcome.DECLINED:
            return GatewayResult(outcome=outcome, detail="Card declined", payload={"status": "DECLINED"})
        return GatewayResult(outcome=outcome, detail="Gateway timeout")


def _seed_billed_account(session_local):
    db = session_local()
    try:
        plan = create_plan(db, price="999.00")
        account = create_account(db, plan, account_no="A-9001", billing_day=15)
        db.commit()
        account_id = account.id
    finally:
        db.close()

    db = session_local()
    try:
        run_billing_cycle(db, run_date=date(2026, 10, 15), operator_id="ops-1")
    finally:
        db.close()
    return account_id


def _add_intent(session_local, account_id: str, amount: str, **extra) -> str:
    db = session_local()
    try:
        intent = PaymentIntent(
            id=new_id(),
            reference_no=f"PAY-{new_id()[:8]}",
            account_id=account_id,
            amount=Decimal(amount),
            **extra,
        )
        db.add(intent)
        db.commit()
        return intent.id
    finally:
        db.close()


def _tick(session_local, gateway, now=NOW, holder="worker-a"):
    db = session_local()
    try:
        return run_worker_tick(db, gateway=gateway, now=now, holder=holder)
    finally:
        db.close()


def test_successful_charge_marks_paid_and_updates_ledger(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(session_local, account_id, "1118.88")
    gateway = FakeGateway(GatewayOutcome.SUCCESS)

    result = _tick(session_local, gateway)

    assert result.status == "completed"
    assert result.exit_code == 0
    assert result.paid == 1
    assert result.before["pending"] == 1
    assert result.after["paid"] == 1
    assert len(gateway.calls) == 1
    assert gateway.calls[0].account_no == "A-9001"

    db = session_local()
    try:
        intent = db.get(PaymentIntent, intent_id)
        assert intent.status == PaymentIntentStatus.PAID.value
        assert intent.attempts == 1

        invoice = db.execute(select(Invoice).where(Invoice.account_id == account_id)).scalar_one()
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.received_payment == Decimal("1118.88")

        transaction = db.execute(
            select(PaymentTransaction).where(PaymentTransaction.payment_intent_id == intent_id)
        ).scalar_one()
        assert transaction.invoice_id == invoice.id
        assert db.get(BillingAccount, account_id).account_balance == Decimal("0.00")
    finally:
        db.close()


def test_partial_payment_leaves_invoice_partial(session_local):
    account_id = _seed_billed_account(session_local)
    _add_intent(session_local, account_id, "600.00")

    _tick(session_local, FakeGateway(GatewayOutcome.SUCCESS))

    db = session_local()
    try:
        invoice = db.execute(select(Invoice).where(Invoice.account_id == account_id)).scalar_one()
        assert invoice.status == InvoiceStatus.PARTIAL.value
        assert db.get(BillingAccount, account_id).account_balance == Decimal("518.88")
    finally:
        db.close()


def test_decline_is_terminal(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(session_local, account_id, "100.00")
    gateway = FakeGateway(GatewayOutcome.DECLINED)

    _tick(session_local, gateway)
    _tick(session_local, gateway, now=NOW + timedelta(hours=2))

    assert len(gateway.calls) == 1
    db = session_local()
    try:
        intent = db.get(PaymentIntent, intent_id)
        assert intent.status == PaymentIntentStatus.FAILED.value
        assert intent.last_error == "Card declined"
        assert db.get(BillingAccount, account_id).account_balance == Decimal("1118.88")
    finally:
        db.close()


def test_always_timing_out_intent_fails_after_max_attempts(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(session_local, account_id, "100.00")
    gateway = FakeGateway(GatewayOutcome.RETRYABLE)

    statuses = []
    now = NOW
    for _ in range(6):
        _tick(session_local, gateway, now=now)
        db = session_local()
        try:
            statuses.append(db.get(PaymentIntent, intent_id).status)
        finally:
            db.close()
        now += timedelta(hours=2)

    assert len(gateway.calls) == 3
    assert statuses[:3] == ["API_RETRY", "API_RETRY", "FAILED"]
    assert PaymentIntentStatus.PAID.value not in statuses

    db = session_local()
    try:
        intent = db.get(PaymentIntent, intent_id)
        assert intent.attempts == 3
        assert intent.status == PaymentIntentStatus.FAILED.value
    finally:
        db.close()


def test_retry_waits_for_backoff(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(session_local, account_id, "100.00")
    gateway = FakeGateway(GatewayOutcome.RETRYABLE, GatewayOutcome.SUCCESS)

    _tick(session_local, gateway, now=NOW)
    _tick(session_local, gateway, now=NOW + timedelta(seconds=30))

    assert len(gateway.calls) == 1

    _tick(session_local, gateway, now=NOW + timedelta(seconds=retry_delay_seconds(1)))

    assert len(gateway.calls) == 2
    db = session_local()
    try:
        assert db.get(PaymentIntent, intent_id).status == PaymentIntentStatus.PAID.value
    finally:
        db.close()


def test_backoff_doubles_and_is_capped():
    assert retry_delay_seconds(1, base_seconds=120, max_seconds=3600) == 120
    assert retry_delay_seconds(2, base_seconds=120, max_seconds=3600) == 240
    assert retry_delay_seconds(3, base_seconds=120, max_seconds=3600) == 480
    assert retry_delay_seconds(10, base_seconds=120, max_seconds=3600) == 3600


def test_second_worker_exits_while_lease_is_held(session_local):
    account_id = _seed_billed_account(session_local)
    _add_intent(session_local, account_id, "100.00")

    db = session_local()
    try:
        lease = acquire_lease(db, lock_name=PAYMENT_WORKER_LOCK, holder="worker-a", now=NOW)
        assert lease.acquired
    finally:
        db.close()

    gateway = FakeGateway(GatewayOutcome.SUCCESS)
    result = _tick(session_local, gateway, holder="worker-b")

    assert result.status == "locked"
    assert result.exit_code == 1
    assert gateway.calls == []

    db = session_local()
    try:
        lock = db.get(WorkerLock, PAYMENT_WORKER_LOCK)
        assert lock.locked_by == "worker-a"
        assert lock.contended_ticks == 1
    finally:
        db.close()


def test_expired_lease_is_taken_over(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(session_local, account_id, "100.00")

    db = session_local()
    try:
        acquire_lease(db, lock_name=PAYMENT_WORKER_LOCK, holder="crashed-worker", now=NOW - timedelta(hours=1))
    finally:
        db.close()

    result = _tick(session_local, FakeGateway(GatewayOutcome.SUCCESS), holder="worker-b")

    assert result.status == "completed"
    db = session_local()
    try:
        assert db.get(PaymentIntent, intent_id).status == PaymentIntentStatus.PAID.value
        assert db.get(WorkerLock, PAYMENT_WORKER_LOCK).contended_ticks == 0
    finally:
        db.close()


def test_stale_processing_item_is_recovered(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(
        session_local,
        account_id,
        "100.00",
        status=PaymentIntentStatus.PROCESSING.value,
        attempts=1,
        last_attempt_at=NOW - timedelta(hours=1),
    )
    fresh_id = _add_intent(
        session_local,
        account_id,
        "50.00",
        status=PaymentIntentStatus.PROCESSING.value,
        attempts=1,
        last_attempt_at=NOW - timedelta(seconds=30),
    )

    result = _tick(session_local, FakeGateway(GatewayOutcome.SUCCESS))

    assert result.requeued == 1
    db = session_local()
    try:
        assert db.get(PaymentIntent, intent_id).status == PaymentIntentStatus.PAID.value
        assert db.get(PaymentIntent, fresh_id).status == PaymentIntentStatus.PROCESSING.value
    finally:
        db.close()


def test_http_gateway_maps_unreachable_to_retry(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(requests, "post", boom)
    gateway = HttpPaymentGateway("https://gateway.example.com", api_key="key", timeout_seconds=1)

    result = gateway.charge(GatewayChargeRequest(reference_no="PAY-1", account_no="A-1", amount=Decimal("10.00")))

    assert result.outcome == GatewayOutcome.RETRYABLE


class _FakeResponse:
    def __init__(self, status_code: int, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def test_http_gateway_classifies_responses(monkeypatch):
    responses = [
        _FakeResponse(200, {"status": "SETTLED", "transaction_ref": "gw-9"}),
        _FakeResponse(200, {"status": "EXPIRED"}),
        _FakeResponse(200, {"status": "PENDING_REVIEW"}),
        _FakeResponse(402, {"message": "Insufficient funds"}),
        _FakeResponse(503, {}),
        _FakeResponse(200, ValueError("not json")),
    ]
    captured = {}

    def fake_post(url, json, headers, timeout):
        captured["url"] = url
        captured["timeout"] = timeout
        captured["authorization"] = headers.get("Authorization")
        return responses.pop(0)

    monkeypatch.setattr(requests, "post", fake_post)
    gateway = HttpPaymentGateway("https://gateway.example.com/", api_key="secret", timeout_seconds=10)
    request = GatewayChargeRequest(reference_no="PAY-1", account_no="A-1", amount=Decimal("10.00"))

    outcomes = [gateway.charge(request) for _ in range(6)]

    assert [item.outcome for item in outcomes] == [
        GatewayOutcome.SUCCESS,
        GatewayOutcome.DECLINED,
        GatewayOutcome.RETRYABLE,
        GatewayOutcome.DECLINED,
        GatewayOutcome.RETRYABLE,
        GatewayOutcome.RETRYABLE,
    ]
    assert outcomes[0].transaction_ref == "gw-9"
    assert outcomes[3].detail == "Insufficient funds"
    assert captured["url"] == "https://gateway.example.com/payments/charge"
    assert captured["timeout"] == 10
    assert captured["authorization"] == "Bearer secret"


def test_only_one_claim_moves_an_item_out_of_queued(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(session_local, account_id, "100.00", status=PaymentIntentStatus.QUEUED.value)

    first = session_local()
    second = session_local()
    try:
        assert _claim(first, intent_id, NOW) is True
        assert _claim(second, intent_id, NOW) is False
    finally:
        first.close()
        second.close()

    db = session_local()
    try:
        intent = db.get(PaymentIntent, intent_id)
        assert intent.status == PaymentIntentStatus.PROCESSING.value
        assert intent.attempts == 1
    finally:
        db.close()


def test_stale_item_past_retry_budget_fails_without_another_charge(session_local):
    account_id = _seed_billed_account(session_local)
    intent_id = _add_intent(
        session_local,
        account_id,
        "100.00",
        status=PaymentIntentStatus.PROCESSING.value,
        attempts=3,
        last_attempt_at=NOW - timedelta(hours=1),
    )
    gateway = FakeGateway(GatewayOutcome.RETRYABLE)

    db = session_local()
    try:
        result = run_worker_tick(db, gateway=gateway, now=NOW, holder="worker-a", max_attempts=3)
    finally:
        db.close()

    assert result.requeued == 0
    assert result.processed == 0
    assert gateway.calls == []
    db = session_local()
    try:
        intent = db.get(PaymentIntent, intent_id)
        assert intent.status == PaymentIntentStatus.FAILED.value
        assert intent.attempts == 3
        assert intent.next_attempt_at is None
    finally:
        db.close()


def test_unlinked_payment_settles_oldest_invoices_first(session_local):
    db = session_local()
    try:
        plan = create_plan(db, price="1000.00")
        account = create_account(db, plan, account_no="A-9101", billing_day=15)
        db.commit()
        account_id = account.id
    finally:
        db.close()

    for run_date in (date(2026, 8, 15), date(2026, 9, 15)):
        db = session_local()
        try:
            run_billing_cycle(db, run_date=run_date, operator_id="ops-1")
        finally:
            db.close()

    intent_id = _add_intent(session_local, account_id, "5000.00")
    _tick(session_local, FakeGateway(GatewayOutcome.SUCCESS))

    db = session_local()
    try:
        august, september = db.execute(
            select(Invoice).where(Invoice.account_id == account_id).order_by(Invoice.invoice_date.asc())
        ).scalars().all()
        assert august.received_payment == august.total_amount_due
        assert august.status == InvoiceStatus.PAID.value
        assert september.received_payment == september.total_amount_due
        assert september.status == InvoiceStatus.PAID.value

        credit = Decimal("5000.00") - august.total_amount_due - september.total_amount_due
        transaction = db.execute(
            select(PaymentTransaction).where(PaymentTransaction.payment_intent_id == intent_id)
        ).scalar_one()
        assert transaction.invoice_id == august.id
        assert transaction.distribution_summary.startswith(f"{august.invoice_no}: {august.total_amount_due} (Paid)")
        assert transaction.distribution_summary.endswith(f" | Credit: {credit}")
    finally:
        db.close()


def test_unlinked_payment_caps_each_invoice_at_its_open_balance(session_local):
    db = session_local()
    try:
        plan = create_plan(db, price="1000.00")
        account = create_account(db, plan, account_no="A-9102", billing_day=15)
        db.commit()
        account_id = account.id
    finally:
        db.close()

    for run_date in (date(2026, 8, 15), date(2026, 9, 15)):
        db = session_local()
        try:
            run_billing_cycle(db, run_date=run_date, operator_id="ops-1")
        finally:
            db.close()

    db = session_local()
    try:
        august = db.execute(
            select(Invoice).where(Invoice.account_id == account_id).order_by(Invoice.invoice_date.asc())
        ).scalars().first()
        amount = august.total_amount_due + Decimal("100.00")
    finally:
        db.close()

    _add_intent(session_local, account_id, str(amount))
    _tick(session_local, FakeGateway(GatewayOutcome.SUCCESS))

    db = session_local()
    try:
        august, september = db.execute(
            select(Invoice).where(Invoice.account_id == account_id).order_by(Invoice.invoice_date.asc())
        ).scalars().all()
        assert august.status == InvoiceStatus.PAID.value
        assert august.received_payment == august.total_amount_due
        assert september.status == InvoiceStatus.PARTIAL.value
        assert september.received_payment == Decimal("100.00")
    finally:
        db.close()


def test_http_gateway_declines_rejection_without_json_body(monkeypatch):
    monkeypatch.setattr(
        requests,
        "post",
        lambda *args, **kwargs: _FakeResponse(403, ValueError("<html>Forbidden</html>")),
    )
    gateway = HttpPaymentGateway("https://gateway.example.com", api_key="key", timeout_seconds=1)

    result = gateway.charge(GatewayChargeRequest(reference_no="PAY-1", account_no="A-1", amount=Decimal("10.00")))

    assert result.outcome == GatewayOutcome.DECLINED
    assert result.detail == "Gateway rejected request (403)"
    assert result.payload is None


def test_only_paid_and_failed_are_terminal():
    assert {status for status in PaymentIntentStatus if status.is_terminal} == {
        PaymentIntentStatus.PAID,
        PaymentIntentStatus.FAILED,
    }


def test_worker_cli_reports_gateway_misconfiguration(monkeypatch):
    events = []
    monkeypatch.setattr(settings, "payment_gateway_provider", "http")
    monkeypatch.setattr(settings, "payment_gateway_base_url", None)
    monkeypatch.setattr(cli, "log_event", lambda logger, event, **fields: events.append((event, fields)))

    assert cli.payment_worker_main([]) == 1
    assert events[0][0] == "worker_config_error"
    assert "PAYMENT_GATEWAY_BASE_URL" in events[0][1]["error"]
