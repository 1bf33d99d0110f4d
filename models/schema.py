# models/schema.py
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    JSON, BigInteger, Boolean, CheckConstraint, Date, DateTime, ForeignKey,
    Index, Integer, Numeric, String, Text, UniqueConstraint,
)
from models.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- USERS (actors for the access gate)


class User(Base):
    __tablename__ = "users"
    username: Mapped[str] = mapped_column(String, primary_key=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(
        String, nullable=False)  # ('admin','manager','accountant')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)
    __table_args__ = (
        CheckConstraint("role in ('admin','manager','accountant')",
                        name="ck_users_role"),
    )


# --- CATALOG


class Agent(Base):
    __tablename__ = "agents"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    desired_commission_percent: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2))
    # commission is paid on top of the agreed price
    commission_on_top: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)
    # commission is carved out of our own collected revenue
    commission_in_our_amount: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    clients = relationship("Client", back_populates="agent")

    __table_args__ = (
        CheckConstraint(
            "desired_commission_percent is null or "
            "(desired_commission_percent >= 0 and desired_commission_percent <= 100)",
            name="ck_agents_percent"),
    )


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    # standard partner-role commission for this service type
    partner_commission_percent: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2))

    __table_args__ = (
        CheckConstraint(
            "partner_commission_percent is null or "
            "(partner_commission_percent >= 0 and partner_commission_percent <= 100)",
            name="ck_products_percent"),
    )


class Client(Base):
    __tablename__ = "clients"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_manager: Mapped[str | None] = mapped_column(
        String)  # users.username; owner for "mine" scopes
    agent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("agents.id", ondelete="SET NULL"))

    agent = relationship("Agent", back_populates="clients")
    services = relationship("Service", back_populates="client")

    __table_args__ = (
        Index("idx_clients_account_manager", "account_manager"),
        Index("idx_clients_agent", "agent_id"),
    )


class Service(Base):
    __tablename__ = "services"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    product_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="SET NULL"))

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    billing_cadence: Mapped[str] = mapped_column(
        String(16), nullable=False)   # ONE_TIME|MONTHLY|QUARTERLY|YEARLY
    prepayment_policy: Mapped[str] = mapped_column(
        String(16), nullable=False, default="POSTPAY")
    price_minor: Mapped[int | None] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    client = relationship("Client", back_populates="services")
    product = relationship("Product")
    periods = relationship("BillingPeriod", back_populates="service",
                           order_by="BillingPeriod.date_from")

    __table_args__ = (
        CheckConstraint(
            "billing_cadence in ('ONE_TIME','MONTHLY','QUARTERLY','YEARLY')",
            name="ck_services_cadence"),
        CheckConstraint(
            "prepayment_policy in ('FULL_PREPAY','PARTIAL_PREPAY','POSTPAY')",
            name="ck_services_prepayment"),
        CheckConstraint("status in ('ACTIVE','PAUSED','CLOSED')",
                        name="ck_services_status"),
        CheckConstraint("price_minor is null or price_minor >= 0",
                        name="ck_services_price_ge_0"),
        Index("idx_services_client", "client_id"),
        Index("idx_services_status", "status"),
    )


# --- BILLING PERIODS


class BillingPeriod(Base):
    __tablename__ = "billing_periods"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("services.id", ondelete="RESTRICT"), nullable=False)
    date_from: Mapped[date] = mapped_column(Date, nullable=False)
    date_to: Mapped[date] = mapped_column(Date, nullable=False)  # inclusive
    kind: Mapped[str] = mapped_column(
        String(16), nullable=False, default="STANDARD")
    # NULL -> fall back to the service price at read time
    expected_amount_minor: Mapped[int | None] = mapped_column(BigInteger)
    invoice_not_required: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    service = relationship("Service", back_populates="periods")

    __table_args__ = (
        # natural key; the only concurrency control the materializer needs
        UniqueConstraint("service_id", "date_from", "date_to",
                         name="uq_billing_periods_natural_key"),
        CheckConstraint("date_to >= date_from",
                        name="ck_billing_periods_range"),
        CheckConstraint(
            "kind in ('STANDARD','EXTENDED','BONUS','COMPENSATION')",
            name="ck_billing_periods_kind"),
        CheckConstraint(
            "expected_amount_minor is null or expected_amount_minor >= 0",
            name="ck_billing_periods_expected_ge_0"),
        Index("idx_billing_periods_dates", "date_from", "date_to"),
    )


class Invoice(Base):
    __tablename__ = "invoices"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    # single-period invoice; multi-period invoices use invoice_lines instead
    period_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("billing_periods.id", ondelete="RESTRICT"))
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    public_token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True)
    issued_on: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    lines = relationship("InvoiceLine", back_populates="invoice",
                         cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_invoices_amount_ge_0"),
        Index("idx_invoices_period", "period_id"),
    )


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    period_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("billing_periods.id", ondelete="RESTRICT"), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    invoice = relationship("Invoice", back_populates="lines")

    __table_args__ = (
        CheckConstraint("amount_minor >= 0",
                        name="ck_invoice_lines_amount_ge_0"),
        Index("idx_invoice_lines_period", "period_id"),
    )


class Income(Base):
    __tablename__ = "incomes"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    period_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("billing_periods.id", ondelete="RESTRICT"))
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    received_on: Mapped[date] = mapped_column(Date, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_incomes_amount_ge_0"),
        Index("idx_incomes_period", "period_id"),
    )


class PeriodReport(Base):
    __tablename__ = "period_reports"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    period_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("billing_periods.id", ondelete="CASCADE"),
        nullable=False, unique=True)
    payment_type: Mapped[str] = mapped_column(
        String(16), nullable=False)  # PREPAY|POSTPAY|FRACTIONAL
    author: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("payment_type in ('PREPAY','POSTPAY','FRACTIONAL')",
                        name="ck_period_reports_payment_type"),
    )


# --- AUDIT


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)

    actor: Mapped[str | None] = mapped_column(String(128))
    actor_role: Mapped[str | None] = mapped_column(String(32))
    ip: Mapped[str | None] = mapped_column(String(64))  # anonymized
    method: Mapped[str | None] = mapped_column(String(8))
    path: Mapped[str | None] = mapped_column(String(512))

    action: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(32))
    target_id: Mapped[str | None] = mapped_column(String(128))
    outcome: Mapped[str | None] = mapped_column(String(16))
    status: Mapped[int | None] = mapped_column(Integer)
    extra: Mapped[dict | None] = mapped_column(JSON)

    # tamper-evident chain
    prev_hash: Mapped[str | None] = mapped_column(String(128))
    hash: Mapped[str | None] = mapped_column(String(128))
    signature: Mapped[str | None] = mapped_column(String(128))
    key_id: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "outcome in ('success','failure','partial','blocked','noop') or outcome is null",
            name="ck_audit_outcome"),
        Index("idx_audit_ts", "ts"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_target", "target_type", "target_id"),
    )
