from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from isp_billing.db.base import Base
from isp_billing.models.enums import InvoiceStatus, PaymentSource


def _money_column(**kwargs) -> Mapped[Decimal]:
    return mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        server_default="0",
        **kwargs,
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    invoice_no: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    carried_forward: Mapped[Decimal] = _money_column()
    monthly_service_fee: Mapped[Decimal] = _money_column()
    staggered: Mapped[Decimal] = _money_column()
    discounts: Mapped[Decimal] = _money_column()
    rebate: Mapped[Decimal] = _money_column()
    service_charge: Mapped[Decimal] = _money_column()
    advanced_payment: Mapped[Decimal] = _money_column()
    vat: Mapped[Decimal] = _money_column()
    total_amount_due: Mapped[Decimal] = _money_column()
    received_payment: Mapped[Decimal] = _money_column()
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InvoiceStatus.UNPAID.value,
        server_default=InvoiceStatus.UNPAID.value,
    )
    transaction_ref: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_by: Mapped[str] = mapped_column(String(60), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("account_id", "billing_period", name="uq_invoices_account_period"),
        Index("ix_invoices_account_status_invoice_date", "account_id", "status", "invoice_date"),
    )


class StatementOfAccount(Base):
    __tablename__ = "statements_of_account"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=False, unique=True)
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False)
    statement_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    balance_from_previous_bill: Mapped[Decimal] = _money_column()
    payment_received_previous: Mapped[Decimal] = _money_column()
    remaining_balance_previous: Mapped[Decimal] = _money_column()
    monthly_service_fee: Mapped[Decimal] = _money_column()
    staggered: Mapped[Decimal] = _money_column()
    discounts: Mapped[Decimal] = _money_column()
    rebate: Mapped[Decimal] = _money_column()
    service_charge: Mapped[Decimal] = _money_column()
    advanced_payment: Mapped[Decimal] = _money_column()
    vat: Mapped[Decimal] = _money_column()
    amount_due: Mapped[Decimal] = _money_column()
    total_amount_due: Mapped[Decimal] = _money_column()
    created_by: Mapped[str] = mapped_column(String(60), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "billing_period", name="uq_statements_account_period"),
        Index("ix_statements_account_statement_date", "account_id", "statement_date"),
    )


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=True, index=True)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("payment_intents.id"),
        nullable=True,
        unique=True,
    )
    statement_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("statements_of_account.id"),
        nullable=True,
        index=True,
    )
    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentSource.GATEWAY.value,
        server_default=PaymentSource.GATEWAY.value,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reference_no: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    distribution_summary: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_payment_transactions_account_statement", "account_id", "statement_id"),
    )
