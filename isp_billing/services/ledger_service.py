import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from isp_billing.core.id_utils import new_id
from isp_billing.core.money import ZERO_MONEY, to_money
from isp_billing.core.observability import billing_logger, log_event
from isp_billing.models.account import BillingAccount
from isp_billing.models.enums import InvoiceStatus, PaymentSource
from isp_billing.models.invoice import Invoice, PaymentTransaction
from isp_billing.services.billing_repository import latest_statement, unrolled_payments_total

_SUMMARY_MAX_LENGTH = 255


def _set_balance(account: BillingAccount, balance: Decimal, on: date) -> Decimal:
    account.account_balance = to_money(balance)
    account.balance_update_date = on
    return account.account_balance


def recompute_balance(db: Session, account: BillingAccount, *, on: date) -> Decimal:
    """Rebuild ``account_balance`` from the latest statement and unrolled payments."""
    db.flush()
    statement = latest_statement(db, account.id)
    base = statement.total_amount_due if statement is not None else account.opening_balance
    return _set_balance(account, to_money(base) - unrolled_payments_total(db, account.id), on)


def apply_invoice(db: Session, account: BillingAccount, invoice: Invoice, *, on: date) -> Decimal:
    """Move the balance onto the new statement.

    ``carried_forward`` is the previous balance as the allocator saw it, so the
    result equals the statement total less anything still unrolled (an
    advance-payment credit created by the same composition).
    """
    db.flush()
    previous_balance = to_money(account.account_balance or ZERO_MONEY)
    outstanding_credits = unrolled_payments_total(db, account.id)
    incremental = (
        previous_balance
        + to_money(invoice.total_amount_due)
        - to_money(invoice.carried_forward)
        - to_money(invoice.received_payment)
        - outstanding_credits
    )
    new_balance = to_money(invoice.total_amount_due) - to_money(invoice.received_payment) - outstanding_credits
    if to_money(incremental) != to_money(new_balance):
        log_event(
            billing_logger,
            "ledger_balance_drift",
            level=logging.WARNING,
            account_id=account.id,
            stored_balance=previous_balance,
            carried_forward=invoice.carried_forward,
        )
    _set_balance(account, new_balance, on)
    log_event(
        billing_logger,
        "ledger_invoice_applied",
        account_id=account.id,
        invoice_id=invoice.id,
        previous_balance=previous_balance,
        new_balance=account.account_balance,
    )
    return account.account_balance


def _open_invoices(db: Session, account_id: str) -> list[Invoice]:
    return list(
        db.execute(
            select(Invoice)
            .where(
                Invoice.account_id == account_id,
                Invoice.status != InvoiceStatus.PAID.value,
            )
            .order_by(Invoice.invoice_date.asc(), Invoice.created_at.asc(), Invoice.id.asc())
        ).scalars()
    )


def _distribute(
    invoices: list[Invoice], amount: Decimal, reference_no: str
) -> tuple[list[tuple[Invoice, Decimal]], Decimal]:
    """Settle ``invoices`` in order, each capped at its open balance.

    Returns the (invoice, applied) pairs and the unapplied remainder.
    """
    remaining = amount
    applications: list[tuple[Invoice, Decimal]] = []
    for invoice in invoices:
        if remaining <= ZERO_MONEY:
            break
        total = to_money(invoice.total_amount_due)
        received = to_money(invoice.received_payment or ZERO_MONEY)
        open_balance = total - received
        if open_balance <= ZERO_MONEY:
            continue
        applied = min(remaining, open_balance)
        invoice.received_payment = to_money(received + applied)
        invoice.transaction_ref = reference_no
        if invoice.received_payment >= total:
            invoice.status = InvoiceStatus.PAID.value
        else:
            invoice.status = InvoiceStatus.PARTIAL.value
        applications.append((invoice, to_money(applied)))
        remaining = to_money(remaining - applied)
    return applications, remaining


def apply_payment(
    db: Session,
    account: BillingAccount,
    *,
    amount: Decimal,
    reference_no: str,
    paid_at: datetime,
    invoice_id: str | None = None,
    payment_intent_id: str | None = None,
    source: PaymentSource = PaymentSource.GATEWAY,
) -> PaymentTransaction:
    """Record a payment and spread it over the account's open invoices.

    A linked invoice is settled first. Whatever is left goes to the other
    unpaid invoices oldest first, and any remainder stays on the ledger as
    credit against the next statement.
    """
    payment_amount = to_money(amount)
    if payment_amount <= ZERO_MONEY:
        raise ValueError("Payment amount must be positive")

    linked = db.get(Invoice, invoice_id) if invoice_id else None
    if linked is not None and linked.account_id != account.id:
        raise ValueError(f"Invoice {invoice_id} does not belong to account {account.account_no}")

    invoices = [invoice for invoice in _open_invoices(db, account.id) if linked is None or invoice.id != linked.id]
    if linked is not None:
        invoices.insert(0, linked)

    applications, remaining = _distribute(invoices, payment_amount, reference_no)
    if not applications:
        distribution_summary = "Applied as credit (no unpaid invoices)"
    else:
        distribution_summary = ", ".join(
            f"{invoice.invoice_no}: {applied} ({invoice.status})" for invoice, applied in applications
        )
        if remaining > ZERO_MONEY:
            distribution_summary += f" | Credit: {remaining}"
    primary = linked or (applications[0][0] if applications else None)

    transaction = PaymentTransaction(
        id=new_id(),
        account_id=account.id,
        invoice_id=primary.id if primary is not None else None,
        payment_intent_id=payment_intent_id,
        statement_id=None,
        source=source.value,
        amount=payment_amount,
        reference_no=reference_no,
        distribution_summary=distribution_summary[:_SUMMARY_MAX_LENGTH],
        payment_date=paid_at,
    )
    db.add(transaction)
    new_balance = recompute_balance(db, account, on=paid_at.date())
    log_event(
        billing_logger,
        "ledger_payment_applied",
        account_id=account.id,
        invoice_id=transaction.invoice_id,
        reference_no=reference_no,
        amount=payment_amount,
        invoices_settled=len(applications),
        credit=remaining,
        new_balance=new_balance,
    )
    return transaction
