"""create billing cycle, settlement and dispatch tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 02:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _ensure_index(table_name: str, index_name: str, columns: list[str]) -> None:
    inspector = sa.inspect(op.get_bind())
    if _table_exists(inspector, table_name) and not _index_exists(inspector, table_name, index_name):
        op.create_index(index_name, table_name, columns, unique=False)


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=False, server_default="0")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _consumable_columns() -> list[sa.Column]:
    return [
        sa.Column("status", sa.String(length=20), nullable=False, server_default="Unused"),
        sa.Column("invoice_used_id", sa.String(length=36), sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "service_plans"):
        op.create_table(
            "service_plans",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("plan_name", sa.String(length=120), nullable=False),
            sa.Column("price", sa.Numeric(12, 2), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("plan_name"),
        )

    if not _table_exists(inspector, "billing_accounts"):
        op.create_table(
            "billing_accounts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_no", sa.String(length=40), nullable=False),
            sa.Column("customer_name", sa.String(length=160), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("plan_id", sa.String(length=36), nullable=True),
            sa.Column("billing_day", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("date_installed", sa.Date(), nullable=True),
            _money("opening_balance"),
            _money("account_balance"),
            sa.Column("balance_update_date", sa.Date(), nullable=True),
            sa.Column("lcp", sa.String(length=80), nullable=True),
            sa.Column("lcpnap", sa.String(length=80), nullable=True),
            sa.Column("location", sa.String(length=120), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["plan_id"], ["service_plans.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("account_no"),
        )

    if not _table_exists(inspector, "invoices"):
        op.create_table(
            "invoices",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("invoice_no", sa.String(length=40), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=False),
            sa.Column("billing_period", sa.String(length=7), nullable=False),
            sa.Column("invoice_date", sa.Date(), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            _money("carried_forward"),
            _money("monthly_service_fee"),
            _money("staggered"),
            _money("discounts"),
            _money("rebate"),
            _money("service_charge"),
            _money("advanced_payment"),
            _money("vat"),
            _money("total_amount_due"),
            _money("received_payment"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Unpaid"),
            sa.Column("transaction_ref", sa.String(length=120), nullable=True),
            sa.Column("created_by", sa.String(length=60), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("invoice_no"),
            sa.UniqueConstraint("account_id", "billing_period", name="uq_invoices_account_period"),
        )

    if not _table_exists(inspector, "statements_of_account"):
        op.create_table(
            "statements_of_account",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=False),
            sa.Column("invoice_id", sa.String(length=36), nullable=False),
            sa.Column("billing_period", sa.String(length=7), nullable=False),
            sa.Column("statement_date", sa.Date(), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            _money("balance_from_previous_bill"),
            _money("payment_received_previous"),
            _money("remaining_balance_previous"),
            _money("monthly_service_fee"),
            _money("staggered"),
            _money("discounts"),
            _money("rebate"),
            _money("service_charge"),
            _money("advanced_payment"),
            _money("vat"),
            _money("amount_due"),
            _money("total_amount_due"),
            sa.Column("created_by", sa.String(length=60), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"]),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("invoice_id"),
            sa.UniqueConstraint("account_id", "billing_period", name="uq_statements_account_period"),
        )

    if not _table_exists(inspector, "payment_intents"):
        op.create_table(
            "payment_intents",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("reference_no", sa.String(length=120), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=False),
            sa.Column("invoice_id", sa.String(length=36), nullable=True),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_error", sa.String(length=255), nullable=True),
            sa.Column("gateway_payload", sa.JSON(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"]),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("reference_no"),
        )

    if not _table_exists(inspector, "payment_transactions"):
        op.create_table(
            "payment_transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=False),
            sa.Column("invoice_id", sa.String(length=36), nullable=True),
            sa.Column("payment_intent_id", sa.String(length=36), nullable=True),
            sa.Column("statement_id", sa.String(length=36), nullable=True),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="gateway"),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("reference_no", sa.String(length=120), nullable=True),
            sa.Column("distribution_summary", sa.String(length=255), nullable=True),
            sa.Column("payment_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"]),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
            sa.ForeignKeyConstraint(["payment_intent_id"], ["payment_intents.id"]),
            sa.ForeignKeyConstraint(["statement_id"], ["statements_of_account.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("payment_intent_id"),
        )

    if not _table_exists(inspector, "discounts"):
        op.create_table(
            "discounts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), sa.ForeignKey("billing_accounts.id"), nullable=False),
            sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("remarks", sa.String(length=255), nullable=True),
            *_consumable_columns(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "mass_rebates"):
        op.create_table(
            "mass_rebates",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("rebate_type", sa.String(length=20), nullable=False),
            sa.Column("selected_rebate", sa.String(length=120), nullable=False),
            sa.Column("number_of_dates", sa.Integer(), nullable=False),
            sa.Column("billing_period", sa.String(length=7), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Unused"),
            sa.Column("remarks", sa.String(length=255), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "rebate_usages"):
        op.create_table(
            "rebate_usages",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("rebate_id", sa.String(length=36), sa.ForeignKey("mass_rebates.id"), nullable=False),
            sa.Column("account_id", sa.String(length=36), sa.ForeignKey("billing_accounts.id"), nullable=False),
            *_consumable_columns(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("rebate_id", "account_id", name="uq_rebate_usages_rebate_account"),
        )

    if not _table_exists(inspector, "staggered_installations"):
        op.create_table(
            "staggered_installations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), sa.ForeignKey("billing_accounts.id"), nullable=False),
            sa.Column("staggered_balance", sa.Numeric(12, 2), nullable=False),
            sa.Column("months_to_pay", sa.Integer(), nullable=False),
            sa.Column("monthly_payment", sa.Numeric(12, 2), nullable=False),
            sa.Column("start_period", sa.String(length=7), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Active"),
            sa.Column("remarks", sa.String(length=255), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "staggered_installments"):
        op.create_table(
            "staggered_installments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column(
                "installation_id",
                sa.String(length=36),
                sa.ForeignKey("staggered_installations.id"),
                nullable=False,
            ),
            sa.Column("account_id", sa.String(length=36), sa.ForeignKey("billing_accounts.id"), nullable=False),
            sa.Column("installment_no", sa.Integer(), nullable=False),
            sa.Column("due_period", sa.String(length=7), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            *_consumable_columns(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("installation_id", "installment_no", name="uq_staggered_installments_installation_no"),
        )

    if not _table_exists(inspector, "service_charge_logs"):
        op.create_table(
            "service_charge_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), sa.ForeignKey("billing_accounts.id"), nullable=False),
            sa.Column("service_charge", sa.Numeric(12, 2), nullable=False),
            sa.Column("charge_date", sa.Date(), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            *_consumable_columns(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "advanced_payments"):
        op.create_table(
            "advanced_payments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), sa.ForeignKey("billing_accounts.id"), nullable=False),
            sa.Column("payment_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("payment_period", sa.String(length=7), nullable=False),
            sa.Column("applied_amount", sa.Numeric(12, 2), nullable=True),
            sa.Column("reference_no", sa.String(length=120), nullable=True),
            *_consumable_columns(),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "email_queue"):
        op.create_table(
            "email_queue",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=True),
            sa.Column("invoice_id", sa.String(length=36), nullable=True),
            sa.Column("document_type", sa.String(length=20), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("subject", sa.String(length=255), nullable=False),
            sa.Column("body_html", sa.Text(), nullable=False),
            sa.Column("attachment_path", sa.String(length=500), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.String(length=255), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"]),
            sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "worker_locks"):
        op.create_table(
            "worker_locks",
            sa.Column("lock_name", sa.String(length=60), nullable=False),
            sa.Column("locked_by", sa.String(length=160), nullable=False),
            sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("contended_ticks", sa.Integer(), nullable=False, server_default="0"),
            sa.PrimaryKeyConstraint("lock_name"),
        )

    if not _table_exists(inspector, "billing_runs"):
        op.create_table(
            "billing_runs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("run_date", sa.Date(), nullable=False),
            sa.Column("mode", sa.String(length=20), nullable=False),
            sa.Column("operator_id", sa.String(length=60), nullable=False),
            sa.Column("billing_days", sa.JSON(), nullable=False),
            sa.Column("selected_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("generated_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("errors_json", sa.JSON(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("actor_id", sa.String(length=60), nullable=False),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("target_type", sa.String(length=100), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint("id"),
        )

    for table_name, index_name, columns in _INDEXES:
        _ensure_index(table_name, index_name, columns)


_INDEXES: list[tuple[str, str, list[str]]] = [
    ("billing_accounts", "ix_billing_accounts_plan_id", ["plan_id"]),
    ("billing_accounts", "ix_billing_accounts_status_billing_day", ["status", "billing_day"]),
    ("invoices", "ix_invoices_account_id", ["account_id"]),
    ("invoices", "ix_invoices_invoice_date", ["invoice_date"]),
    ("invoices", "ix_invoices_account_status_invoice_date", ["account_id", "status", "invoice_date"]),
    ("statements_of_account", "ix_statements_of_account_account_id", ["account_id"]),
    ("statements_of_account", "ix_statements_of_account_statement_date", ["statement_date"]),
    ("statements_of_account", "ix_statements_account_statement_date", ["account_id", "statement_date"]),
    ("payment_intents", "ix_payment_intents_account_id", ["account_id"]),
    ("payment_intents", "ix_payment_intents_invoice_id", ["invoice_id"]),
    ("payment_intents", "ix_payment_intents_status_next_attempt", ["status", "next_attempt_at"]),
    ("payment_transactions", "ix_payment_transactions_account_id", ["account_id"]),
    ("payment_transactions", "ix_payment_transactions_invoice_id", ["invoice_id"]),
    ("payment_transactions", "ix_payment_transactions_statement_id", ["statement_id"]),
    ("payment_transactions", "ix_payment_transactions_account_statement", ["account_id", "statement_id"]),
    ("discounts", "ix_discounts_account_id", ["account_id"]),
    ("discounts", "ix_discounts_invoice_used_id", ["invoice_used_id"]),
    ("discounts", "ix_discounts_account_status_created_at", ["account_id", "status", "created_at"]),
    ("mass_rebates", "ix_mass_rebates_billing_period", ["billing_period"]),
    ("rebate_usages", "ix_rebate_usages_rebate_id", ["rebate_id"]),
    ("rebate_usages", "ix_rebate_usages_account_id", ["account_id"]),
    ("rebate_usages", "ix_rebate_usages_invoice_used_id", ["invoice_used_id"]),
    ("staggered_installations", "ix_staggered_installations_account_id", ["account_id"]),
    ("staggered_installments", "ix_staggered_installments_installation_id", ["installation_id"]),
    ("staggered_installments", "ix_staggered_installments_account_id", ["account_id"]),
    ("staggered_installments", "ix_staggered_installments_invoice_used_id", ["invoice_used_id"]),
    ("staggered_installments", "ix_staggered_installments_account_due_period", ["account_id", "due_period"]),
    ("service_charge_logs", "ix_service_charge_logs_account_id", ["account_id"]),
    ("service_charge_logs", "ix_service_charge_logs_invoice_used_id", ["invoice_used_id"]),
    ("advanced_payments", "ix_advanced_payments_account_id", ["account_id"]),
    ("advanced_payments", "ix_advanced_payments_invoice_used_id", ["invoice_used_id"]),
    ("advanced_payments", "ix_advanced_payments_account_period_status", ["account_id", "payment_period", "status"]),
    ("email_queue", "ix_email_queue_account_id", ["account_id"]),
    ("email_queue", "ix_email_queue_invoice_id", ["invoice_id"]),
    ("email_queue", "ix_email_queue_status_attempts_created_at", ["status", "attempts", "created_at"]),
    ("billing_runs", "ix_billing_runs_run_date_mode", ["run_date", "mode"]),
    ("audit_logs", "ix_audit_logs_actor_id", ["actor_id"]),
    ("audit_logs", "ix_audit_logs_target_id", ["target_id"]),
    ("audit_logs", "ix_audit_logs_action_created_at", ["action", "created_at"]),
]

_TABLES_IN_DROP_ORDER = [
    "audit_logs",
    "billing_runs",
    "worker_locks",
    "email_queue",
    "advanced_payments",
    "service_charge_logs",
    "staggered_installments",
    "staggered_installations",
    "rebate_usages",
    "mass_rebates",
    "discounts",
    "payment_transactions",
    "payment_intents",
    "statements_of_account",
    "invoices",
    "billing_accounts",
    "service_plans",
]


def downgrade() -> None:
    bind = op.get_bind()
    for table_name in _TABLES_IN_DROP_ORDER:
        inspector = sa.inspect(bind)
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
