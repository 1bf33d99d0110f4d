# models/periods_store.py (billing period create/read repository)
from __future__ import annotations
from datetime import date

from sqlalchemy import func, select, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.base import session_scope
from models.schema import BillingPeriod, Income, Invoice, InvoiceLine, Service
from services.errors import InvalidRange, NotFound, PeriodConflict, PeriodLocked
from services.periods import PeriodRange, parse_kind

NATURAL_KEY = ("service_id", "date_from", "date_to")

# dialects with INSERT .. ON CONFLICT DO NOTHING
_UPSERT_INSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_period_if_absent(s: Session, service_id: int, rng: PeriodRange, *,
                            kind: str = "STANDARD",
                            expected_amount_minor: int | None = None,
                            invoice_not_required: bool = False) -> bool:
    """
    Idempotent create-by-natural-key. True when this call wrote the row,
    False when a row with the same (service_id, date_from, date_to) exists,
    including one committed by a concurrent caller a moment ago.
    """
    values = {
        "service_id": service_id,
        "date_from": rng.date_from,
        "date_to": rng.date_to,
        "kind": parse_kind(kind).value,
        "expected_amount_minor": expected_amount_minor,
        "invoice_not_required": bool(invoice_not_required),
    }
    insert = _UPSERT_INSERT.get(s.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(BillingPeriod).values(**values).on_conflict_do_nothing(
            index_elements=list(NATURAL_KEY))
        return s.execute(stmt).rowcount == 1

    # other backends: the unique constraint decides inside a savepoint
    try:
        with s.begin_nested():
            s.add(BillingPeriod(**values))
            s.flush()
        return True
    except IntegrityError:
        return False


def existing_keys(service_id: int) -> set[tuple[date, date]]:
    with session_scope() as s:
        rows = s.execute(
            select(BillingPeriod.date_from, BillingPeriod.date_to).where(
                BillingPeriod.service_id == service_id)
        ).all()
        return {(r[0], r[1]) for r in rows}


def _first_overlap(s: Session, service_id: int, date_from: date, date_to: date):
    return s.execute(
        select(BillingPeriod.id, BillingPeriod.date_from, BillingPeriod.date_to).where(
            BillingPeriod.service_id == service_id,
            BillingPeriod.date_from <= date_to,
            BillingPeriod.date_to >= date_from,
        ).order_by(BillingPeriod.date_from).limit(1)
    ).first()


def create_manual_period(service_id: int, date_from: date, date_to: date, *,
                         kind: str = "STANDARD", invoice_not_required: bool = False,
                         expected_amount_minor: int | None = None) -> int:
    if date_to < date_from:
        raise InvalidRange("period ends before it starts",
                           date_from=date_from.isoformat(), date_to=date_to.isoformat())
    if expected_amount_minor is not None and expected_amount_minor < 0:
        raise InvalidRange("expected amount cannot be negative")
    kind = parse_kind(kind).value

    with session_scope() as s:
        # row lock on the service serializes overlap check + insert per service
        svc = s.execute(
            select(Service.id).where(Service.id == service_id).with_for_update()
        ).first()
        if not svc:
            raise NotFound(f"service {service_id} not found")
        clash = _first_overlap(s, service_id, date_from, date_to)
        if clash:
            raise PeriodConflict(
                "period overlaps an existing period of this service",
                period_id=clash.id,
                date_from=clash.date_from.isoformat(), date_to=clash.date_to.isoformat())
        p = BillingPeriod(
            service_id=service_id, date_from=date_from, date_to=date_to,
            kind=kind, invoice_not_required=bool(invoice_not_required),
            expected_amount_minor=expected_amount_minor,
        )
        try:
            with s.begin_nested():
                s.add(p)
                s.flush()
        except IntegrityError:
            raise PeriodConflict(
                "a period with the same dates was created concurrently",
                date_from=date_from.isoformat(), date_to=date_to.isoformat()) from None
        return p.id


def delete_period(period_id: int) -> dict:
    """Remove a period that nothing financial points at. Returns what was deleted."""
    with session_scope() as s:
        p = s.get(BillingPeriod, period_id)
        if not p:
            raise NotFound(f"period {period_id} not found")

        attached = {
            "invoices": s.execute(select(func.count(Invoice.id)).where(
                Invoice.period_id == period_id)).scalar_one(),
            "invoice_lines": s.execute(select(func.count(InvoiceLine.id)).where(
                InvoiceLine.period_id == period_id)).scalar_one(),
            "incomes": s.execute(select(func.count(Income.id)).where(
                Income.period_id == period_id)).scalar_one(),
        }
        if any(attached.values()):
            raise PeriodLocked(
                "period has invoices or incomes attached", **attached)

        out = {
            "id": p.id,
            "service_id": p.service_id,
            "date_from": p.date_from.isoformat(),
            "date_to": p.date_to.isoformat(),
        }
        s.execute(delete(BillingPeriod).where(BillingPeriod.id == period_id))
        return out


def get_period(period_id: int) -> dict:
    with session_scope() as s:
        row = s.execute(
            select(BillingPeriod, Service).join(
                Service, Service.id == BillingPeriod.service_id).where(
                BillingPeriod.id == period_id)
        ).first()
        if not row:
            raise NotFound(f"period {period_id} not found")
        p, svc = row
        return {
            "id": p.id,
            "service_id": p.service_id,
            "client_id": svc.client_id,
            "date_from": p.date_from,
            "date_to": p.date_to,
            "kind": p.kind,
            "expected_amount_minor": p.expected_amount_minor,
            "invoice_not_required": p.invoice_not_required,
        }
