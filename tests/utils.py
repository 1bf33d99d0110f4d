# tests/utils.py
from datetime import date, datetime, timezone
from decimal import Decimal
from itertools import count

from models.base import session_scope
from models.schema import (
    Agent, BillingPeriod, Client, Income, Invoice, InvoiceLine, PeriodReport,
    Product, Service,
)
from models.users_db import create_user

_tokens = count(1)


def at_noon(y, m, d) -> datetime:
    return datetime(y, m, d, 12, 0, tzinfo=timezone.utc)


def login_user(client, username, password):
    return client.post("/login",
                       data={"username": username, "password": password},
                       follow_redirects=False)


def login_as(client, username, role, password="secret-pass-1"):
    create_user(username, password, role=role)
    resp = login_user(client, username, password)
    assert resp.status_code == 200, resp.get_data(as_text=True)
    return resp


def make_agent(name="Agent Smith", percent=None, on_top=False, in_our_amount=False) -> int:
    with session_scope() as s:
        a = Agent(name=name,
                  desired_commission_percent=None if percent is None else Decimal(str(percent)),
                  commission_on_top=on_top, commission_in_our_amount=in_our_amount)
        s.add(a)
        s.flush()
        return a.id


def make_product(name="SEO", partner_percent=None) -> int:
    with session_scope() as s:
        p = Product(name=name,
                    partner_commission_percent=(None if partner_percent is None
                                                else Decimal(str(partner_percent))))
        s.add(p)
        s.flush()
        return p.id


def make_client(name="Acme", account_manager="mgr1", agent_id=None) -> int:
    with session_scope() as s:
        c = Client(name=name, account_manager=account_manager, agent_id=agent_id)
        s.add(c)
        s.flush()
        return c.id


def make_service(client_id, start, *, cadence="MONTHLY", end=None, price_minor=100_000,
                 policy="POSTPAY", status="ACTIVE", product_id=None) -> int:
    with session_scope() as s:
        svc = Service(client_id=client_id, product_id=product_id, start_date=start,
                      end_date=end, billing_cadence=cadence, prepayment_policy=policy,
                      price_minor=price_minor, status=status)
        s.add(svc)
        s.flush()
        return svc.id


def add_period(service_id, date_from, date_to, *, kind="STANDARD",
               expected_minor=None, invoice_not_required=False) -> int:
    with session_scope() as s:
        p = BillingPeriod(service_id=service_id, date_from=date_from, date_to=date_to,
                          kind=kind, expected_amount_minor=expected_minor,
                          invoice_not_required=invoice_not_required)
        s.add(p)
        s.flush()
        return p.id


def add_income(period_id, amount_minor, received_on=date(2025, 1, 20)) -> int:
    with session_scope() as s:
        i = Income(period_id=period_id, amount_minor=amount_minor, received_on=received_on)
        s.add(i)
        s.flush()
        return i.id


def add_invoice(period_id, amount_minor, issued_on=date(2025, 1, 10)) -> int:
    with session_scope() as s:
        inv = Invoice(period_id=period_id, amount_minor=amount_minor,
                      public_token=f"tok-{next(_tokens)}", issued_on=issued_on)
        s.add(inv)
        s.flush()
        return inv.id


def add_line_invoice(lines, issued_on=date(2025, 1, 10)) -> int:
    """One invoice covering several periods: lines = [(period_id, amount_minor), ...]."""
    with session_scope() as s:
        inv = Invoice(period_id=None, amount_minor=sum(a for _, a in lines),
                      public_token=f"tok-{next(_tokens)}", issued_on=issued_on)
        s.add(inv)
        s.flush()
        for pid, amount in lines:
            s.add(InvoiceLine(invoice_id=inv.id, period_id=pid, amount_minor=amount))
        return inv.id


def add_report(period_id, payment_type="POSTPAY") -> int:
    with session_scope() as s:
        r = PeriodReport(period_id=period_id, payment_type=payment_type, author="mgr1")
        s.add(r)
        s.flush()
        return r.id
