from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from isp_billing.db.base import Base
from isp_billing.models.enums import InstrumentStatus, StaggeredStatus


class _ConsumableMixin:
    """One-shot instrument columns: Unused until an invoice consumes it."""

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InstrumentStatus.UNUSED.value,
        server_default=InstrumentStatus.UNUSED.value,
    )
    invoice_used_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("invoices.id"), nullable=True, index=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Discount(_ConsumableMixin, Base):
    __tablename__ = "discounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    remarks: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_discounts_account_status_created_at", "account_id", "status", "created_at"),
    )


class MassRebate(Base):
    __tablename__ = "mass_rebates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rebate_type: Mapped[str] = mapped_column(String(20), nullable=False)
    selected_rebate: Mapped[str] = mapped_column(String(120), nullable=False)
    number_of_dates: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InstrumentStatus.UNUSED.value,
        server_default=InstrumentStatus.UNUSED.value,
    )
    remarks: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class RebateUsage(_ConsumableMixin, Base):
    __tablename__ = "rebate_usages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rebate_id: Mapped[str] = mapped_column(String(36), ForeignKey("mass_rebates.id"), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("rebate_id", "account_id", name="uq_rebate_usages_rebate_account"),
    )


class StaggeredInstallation(Base):
    __tablename__ = "staggered_installations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    staggered_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    months_to_pay: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_payment: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    start_period: Mapped[str] = mapped_column(String(7), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=StaggeredStatus.ACTIVE.value,
        server_default=StaggeredStatus.ACTIVE.value,
    )
    remarks: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class StaggeredInstallment(_ConsumableMixin, Base):
    __tablename__ = "staggered_installments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    installation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("staggered_installations.id"),
        nullable=False,
        index=True,
    )
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    installment_no: Mapped[int] = mapped_column(Integer, nullable=False)
    due_period: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    __table_args__ = (
        UniqueConstraint("installation_id", "installment_no", name="uq_staggered_installments_installation_no"),
        Index("ix_staggered_installments_account_due_period", "account_id", "due_period"),
    )


class ServiceChargeLog(_ConsumableMixin, Base):
    __tablename__ = "service_charge_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    service_charge: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    charge_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class AdvancedPayment(_ConsumableMixin, Base):
    __tablename__ = "advanced_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("billing_accounts.id"), nullable=False, index=True)
    payment_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_period: Mapped[str] = mapped_column(String(7), nullable=False)
    applied_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    reference_no: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    __table_args__ = (
        Index("ix_advanced_payments_account_period_status", "account_id", "payment_period", "status"),
    )
