"""billing periods initial schema

Revision ID: 3b8e41c0d9a2
Revises:
Create Date: 2025-10-02 09:41:17.220314

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b8e41c0d9a2'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name="created_at"):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False)


def upgrade():
    op.create_table(
        "users",
        sa.Column("username", sa.String(), primary_key=True),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        _ts(),
        sa.CheckConstraint("role in ('admin','manager','accountant')", name="ck_users_role"),
    )

    op.create_table(
        "agents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("desired_commission_percent", sa.Numeric(5, 2)),
        sa.Column("commission_on_top", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("commission_in_our_amount", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts(),
        sa.CheckConstraint(
            "desired_commission_percent is null or "
            "(desired_commission_percent >= 0 and desired_commission_percent <= 100)",
            name="ck_agents_percent"),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("partner_commission_percent", sa.Numeric(5, 2)),
        sa.CheckConstraint(
            "partner_commission_percent is null or "
            "(partner_commission_percent >= 0 and partner_commission_percent <= 100)",
            name="ck_products_percent"),
    )

    op.create_table(
        "clients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("account_manager", sa.String()),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id", ondelete="SET NULL")),
    )
    op.create_index("idx_clients_account_manager", "clients", ["account_manager"])
    op.create_index("idx_clients_agent", "clients", ["agent_id"])

    op.create_table(
        "services",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Integer(),
                  sa.ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="SET NULL")),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("billing_cadence", sa.String(16), nullable=False),
        sa.Column("prepayment_policy", sa.String(16), nullable=False, server_default="POSTPAY"),
        sa.Column("price_minor", sa.BigInteger()),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        _ts(),
        sa.CheckConstraint("billing_cadence in ('ONE_TIME','MONTHLY','QUARTERLY','YEARLY')",
                           name="ck_services_cadence"),
        sa.CheckConstraint("prepayment_policy in ('FULL_PREPAY','PARTIAL_PREPAY','POSTPAY')",
                           name="ck_services_prepayment"),
        sa.CheckConstraint("status in ('ACTIVE','PAUSED','CLOSED')", name="ck_services_status"),
        sa.CheckConstraint("price_minor is null or price_minor >= 0", name="ck_services_price_ge_0"),
    )
    op.create_index("idx_services_client", "services", ["client_id"])
    op.create_index("idx_services_status", "services", ["status"])

    op.create_table(
        "billing_periods",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("service_id", sa.Integer(),
                  sa.ForeignKey("services.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("date_from", sa.Date(), nullable=False),
        sa.Column("date_to", sa.Date(), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False, server_default="STANDARD"),
        sa.Column("expected_amount_minor", sa.BigInteger()),
        sa.Column("invoice_not_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts(),
        sa.UniqueConstraint("service_id", "date_from", "date_to",
                            name="uq_billing_periods_natural_key"),
        sa.CheckConstraint("date_to >= date_from", name="ck_billing_periods_range"),
        sa.CheckConstraint("kind in ('STANDARD','EXTENDED','BONUS','COMPENSATION')",
                           name="ck_billing_periods_kind"),
        sa.CheckConstraint("expected_amount_minor is null or expected_amount_minor >= 0",
                           name="ck_billing_periods_expected_ge_0"),
    )
    op.create_index("idx_billing_periods_dates", "billing_periods", ["date_from", "date_to"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("period_id", sa.Integer(),
                  sa.ForeignKey("billing_periods.id", ondelete="RESTRICT")),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("public_token", sa.String(64), nullable=False, unique=True),
        sa.Column("issued_on", sa.Date(), nullable=False),
        _ts(),
        sa.CheckConstraint("amount_minor >= 0", name="ck_invoices_amount_ge_0"),
    )
    op.create_index("idx_invoices_period", "invoices", ["period_id"])

    op.create_table(
        "invoice_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("invoice_id", sa.Integer(),
                  sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("period_id", sa.Integer(),
                  sa.ForeignKey("billing_periods.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("amount_minor >= 0", name="ck_invoice_lines_amount_ge_0"),
    )
    op.create_index("idx_invoice_lines_period", "invoice_lines", ["period_id"])

    op.create_table(
        "incomes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("period_id", sa.Integer(),
                  sa.ForeignKey("billing_periods.id", ondelete="RESTRICT")),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("received_on", sa.Date(), nullable=False),
        sa.Column("comment", sa.Text()),
        _ts(),
        sa.CheckConstraint("amount_minor >= 0", name="ck_incomes_amount_ge_0"),
    )
    op.create_index("idx_incomes_period", "incomes", ["period_id"])

    op.create_table(
        "period_reports",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("period_id", sa.Integer(),
                  sa.ForeignKey("billing_periods.id", ondelete="CASCADE"),
                  nullable=False, unique=True),
        sa.Column("payment_type", sa.String(16), nullable=False),
        sa.Column("author", sa.String()),
        _ts(),
        sa.CheckConstraint("payment_type in ('PREPAY','POSTPAY','FRACTIONAL')",
                           name="ck_period_reports_payment_type"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _ts("ts"),
        sa.Column("actor", sa.String(128)),
        sa.Column("actor_role", sa.String(32)),
        sa.Column("ip", sa.String(64)),
        sa.Column("method", sa.String(8)),
        sa.Column("path", sa.String(512)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("target_type", sa.String(32)),
        sa.Column("target_id", sa.String(128)),
        sa.Column("outcome", sa.String(16)),
        sa.Column("status", sa.Integer()),
        sa.Column("extra", sa.JSON()),
        sa.Column("prev_hash", sa.String(128)),
        sa.Column("hash", sa.String(128)),
        sa.Column("signature", sa.String(128)),
        sa.Column("key_id", sa.String(16)),
        sa.CheckConstraint(
            "outcome in ('success','failure','partial','blocked','noop') or outcome is null",
            name="ck_audit_outcome"),
    )
    op.create_index("idx_audit_ts", "audit_log", ["ts"])
    op.create_index("idx_audit_action", "audit_log", ["action"])
    op.create_index("idx_audit_target", "audit_log", ["target_type", "target_id"])


def downgrade():
    for table in ("audit_log", "period_reports", "incomes", "invoice_lines",
                  "invoices", "billing_periods", "services", "clients",
                  "products", "agents", "users"):
        op.drop_table(table)
