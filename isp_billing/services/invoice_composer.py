from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from isp_billing.core.id_utils import generate_invoice_no, new_id
from isp_billing.core.money import ZERO_MONEY
from isp_billing.models.account import BillingAccount
from isp_billing.models.enums import InstrumentStatus, InvoiceStatus, PaymentSource, StaggeredStatus
from isp_billing.models.instruments import (
    AdvancedPayment,
    Discount,
    MassRebate,
    RebateUsage,
    ServiceChargeLog,
    StaggeredInstallation,
    StaggeredInstallment,
)
from isp_billing.models.invoice import Invoice, PaymentTransaction, StatementOfAccount
from isp_billing.services.allocation import AllocationPlan, ConsumedInstrument, InstrumentKind, StepKind
from isp_billing.services.errors import InstrumentAlreadyConsumed

_INSTRUMENT_MODELS = {
    InstrumentKind.STAGGERED_INSTALLMENT: StaggeredInstallment,
    InstrumentKind.DISCOUNT: Discount,
    InstrumentKind.REBATE_USAGE: RebateUsage,
    InstrumentKind.SERVICE_CHARGE: ServiceChargeLog,
    InstrumentKind.ADVANCED_PAYMENT: AdvancedPayment,
}


@dataclass(frozen=True)
class ComposedDocuments:
    invoice: Invoice
    statement: StatementOfAccount
    advance_credit: PaymentTransaction | None


def _consume_instrument(db: Session, item: ConsumedInstrument, *, invoice_id: str, now: datetime) -> None:
    model = _INSTRUMENT_MODELS[item.kind]
    values = {
        "status": InstrumentStatus.USED.value,
        "invoice_used_id": invoice_id,
        "used_at": now,
    }
    if item.kind == InstrumentKind.ADVANCED_PAYMENT:
        values["applied_amount"] = item.applied_amount

    result = db.execute(
        update(model)
        .where(model.id == item.id, model.status == InstrumentStatus.UNUSED.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InstrumentAlreadyConsumed(item.kind.value, item.id)


def _close_rebate_if_exhausted(db: Session, rebate_id: str) -> None:
    remaining = db.execute(
        select(func.count(RebateUsage.id)).where(
            RebateUsage.rebate_id == rebate_id,
            RebateUsage.status == InstrumentStatus.UNUSED.value,
        )
    ).scalar_one()
    if int(remaining or 0) == 0:
        db.execute(
            update(MassRebate)
            .where(MassRebate.id == rebate_id)
            .values(status=InstrumentStatus.USED.value)
            .execution_options(synchronize_session=False)
        )


def _complete_schedule_if_exhausted(db: Session, installation_id: str) -> None:
    remaining = db.execute(
        select(func.count(StaggeredInstallment.id)).where(
            StaggeredInstallment.installation_id == installation_id,
            StaggeredInstallment.status == InstrumentStatus.UNUSED.value,
        )
    ).scalar_one()
    if int(remaining or 0) == 0:
        db.execute(
            update(StaggeredInstallation)
            .where(StaggeredInstallation.id == installation_id)
            .values(status=StaggeredStatus.COMPLETED.value)
            .execution_options(synchronize_session=False)
        )


def _roll_payments(db: Session, plan: AllocationPlan, *, statement_id: str) -> None:
    if not plan.rolled_payment_ids:
        return
    result = db.execute(
        update(PaymentTransaction)
        .where(
            PaymentTransaction.id.in_(plan.rolled_payment_ids),
            PaymentTransaction.statement_id.is_(None),
        )
        .values(statement_id=statement_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(plan.rolled_payment_ids):
        raise InstrumentAlreadyConsumed("payment_transaction", ",".join(plan.rolled_payment_ids))


def compose_invoice(
    db: Session,
    account: BillingAccount,
    plan: AllocationPlan,
    *,
    operator_id: str,
    now: datetime,
) -> ComposedDocuments:
    """Persist the invoice and statement for ``plan`` and consume its instruments.

    Runs inside the caller's transaction. Any guard that finds an instrument
    already used raises ``InstrumentAlreadyConsumed``; the caller rolls back.
    """
    invoice = Invoice(
        id=new_id(),
        invoice_no=generate_invoice_no(plan.billing_date),
        account_id=account.id,
        billing_period=plan.billing_period,
        invoice_date=plan.billing_date,
        due_date=plan.due_date,
        carried_forward=plan.carried_forward,
        monthly_service_fee=plan.amount_for(StepKind.MONTHLY_FEE),
        staggered=plan.amount_for(StepKind.STAGGERED),
        discounts=plan.amount_for(StepKind.DISCOUNT),
        rebate=plan.amount_for(StepKind.REBATE),
        service_charge=plan.amount_for(StepKind.SERVICE_CHARGE),
        advanced_payment=plan.amount_for(StepKind.ADVANCED_PAYMENT),
        vat=plan.vat,
        total_amount_due=plan.total_amount_due,
        received_payment=ZERO_MONEY,
        status=(InvoiceStatus.PAID.value if plan.total_amount_due <= ZERO_MONEY else InvoiceStatus.UNPAID.value),
        created_by=operator_id,
    )
    statement = StatementOfAccount(
        id=new_id(),
        account_id=account.id,
        invoice_id=invoice.id,
        billing_period=plan.billing_period,
        statement_date=plan.billing_date,
        due_date=plan.due_date,
        balance_from_previous_bill=plan.balance_from_previous_bill,
        payment_received_previous=plan.payment_received_previous,
        remaining_balance_previous=plan.carried_forward,
        monthly_service_fee=invoice.monthly_service_fee,
        staggered=invoice.staggered,
        discounts=invoice.discounts,
        rebate=invoice.rebate,
        service_charge=invoice.service_charge,
        advanced_payment=invoice.advanced_payment,
        vat=plan.vat,
        amount_due=plan.period_charges,
        total_amount_due=plan.total_amount_due,
        created_by=operator_id,
    )
    db.add(invoice)
    db.flush()
    db.add(statement)
    db.flush()

    for item in plan.consumed:
        _consume_instrument(db, item, invoice_id=invoice.id, now=now)
        if item.kind == InstrumentKind.REBATE_USAGE and item.parent_id:
            _close_rebate_if_exhausted(db, item.parent_id)
        if item.kind == InstrumentKind.STAGGERED_INSTALLMENT and item.parent_id:
            _complete_schedule_if_exhausted(db, item.parent_id)

    _roll_payments(db, plan, statement_id=statement.id)

    advance_credit = None
    if plan.advance_credit > ZERO_MONEY:
        advance_credit = PaymentTransaction(
            id=new_id(),
            account_id=account.id,
            invoice_id=invoice.id,
            payment_intent_id=None,
            statement_id=None,
            source=PaymentSource.ADVANCE_CREDIT.value,
            amount=plan.advance_credit,
            reference_no=f"ADV-{invoice.invoice_no}",
            distribution_summary="Advance payment excess carried to next statement",
            payment_date=now,
        )
        db.add(advance_credit)

    db.flush()
    return ComposedDocuments(invoice=invoice, statement=statement, advance_credit=advance_credit)
