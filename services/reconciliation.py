# services/reconciliation.py
"""
Period reconciliation view.

Merges persisted billing periods with "virtual" ones (projected from the
cadence but not materialized yet) and attaches invoicing / collection
activity, due dates, balances and overdue flags to each. Read-only: nothing
here writes, and "today" always comes from the caller's `as_of`.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import ClassVar, Iterable

from sqlalchemy import select

from models.base import session_scope
from models.catalog_store import (
    ServiceSnapshot, apply_service_filters, get_service, list_services,
    service_snapshot,
)
from models.schema import (
    BillingPeriod, Client, Income, Invoice, InvoiceLine, PeriodReport,
    Product, Service,
)
from services.access import Scope, require_owner
from services.datetimex import local_today
from services.errors import InvalidCadence, InvalidRange
from services.materializer import resolve_horizon
from services.metrics import VIEW_ROWS, VIEWS_BUILT
from services.money import Money
from services.periods import (
    DateWindow, PeriodRange, payment_due_date, project, suggest_next_period,
)

logger = logging.getLogger(__name__)

_IN_CHUNK = 500


@dataclass(frozen=True)
class ReconciliationFilter:
    date_from: date
    date_to: date
    owner: str | None = None
    client_id: int | None = None
    client_ids: frozenset[int] | None = None
    payment_from: date | None = None
    payment_to: date | None = None
    overdue_only: bool = False

    def __post_init__(self):
        if self.date_to < self.date_from:
            raise InvalidRange("window ends before it starts",
                               date_from=self.date_from.isoformat(),
                               date_to=self.date_to.isoformat())
        if self.payment_from and self.payment_to and self.payment_to < self.payment_from:
            raise InvalidRange("payment window ends before it starts")

    @property
    def window(self) -> DateWindow:
        """
        Range of periods to load. A payment window selects by due date, and a
        due date always lies inside its period, so the range is widened to
        cover the payment window; `keeps` then filters exactly.
        """
        lo = min(d for d in (self.date_from, self.payment_from) if d is not None)
        hi = max(d for d in (self.date_to, self.payment_to) if d is not None)
        return DateWindow(lo, hi)

    def keeps(self, row: "RowFacts") -> bool:
        if self.payment_from and row.payment_due_date < self.payment_from:
            return False
        if self.payment_to and row.payment_due_date > self.payment_to:
            return False
        if self.overdue_only and not (row.is_overdue or row.risk):
            return False
        return True


@dataclass(frozen=True)
class RowFacts:
    service_id: int
    client_id: int
    client_name: str
    account_manager: str | None
    product_name: str | None
    date_from: date
    date_to: date
    kind: str
    invoice_not_required: bool
    prepayment_policy: str
    payment_due_date: date
    expected: Money
    collected: Money
    invoiced: Money
    invoice_count: int
    has_report: bool
    balance: Money
    is_overdue: bool
    is_payment_overdue: bool
    risk: bool

    source: ClassVar[str] = ""

    @property
    def key(self) -> tuple[int, date, date]:
        return (self.service_id, self.date_from, self.date_to)

    @property
    def range(self) -> PeriodRange:
        return PeriodRange(self.date_from, self.date_to)

    @property
    def has_invoice(self) -> bool:
        return self.invoice_count > 0

    @property
    def period_id(self) -> int | None:
        return None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "periodId": self.period_id,
            "serviceId": self.service_id,
            "clientId": self.client_id,
            "clientName": self.client_name,
            "accountManager": self.account_manager,
            "productName": self.product_name,
            "dateFrom": self.date_from.isoformat(),
            "dateTo": self.date_to.isoformat(),
            "kind": self.kind,
            "invoiceNotRequired": self.invoice_not_required,
            "prepaymentPolicy": self.prepayment_policy,
            "paymentDueDate": self.payment_due_date.isoformat(),
            "expectedAmount": self.expected.minor,
            "collected": self.collected.minor,
            "invoiced": self.invoiced.minor,
            "invoiceCount": self.invoice_count,
            "hasReport": self.has_report,
            "balance": self.balance.minor,
            "isOverdue": self.is_overdue,
            "isPaymentOverdue": self.is_payment_overdue,
            "risk": self.risk,
        }


@dataclass(frozen=True)
class PersistedRow(RowFacts):
    # billing_periods.id, exposed as period_id
    id: int = 0

    source: ClassVar[str] = "persisted"

    @property
    def period_id(self) -> int | None:
        return self.id


@dataclass(frozen=True)
class VirtualRow(RowFacts):
    """Projected range with no persisted period behind it yet."""

    source: ClassVar[str] = "virtual"


@dataclass
class _Activity:
    collected: int = 0
    invoices: dict[int, int] = field(default_factory=dict)  # invoice id -> amount
    has_report: bool = False


def _chunks(ids: list[int]) -> Iterable[list[int]]:
    for i in range(0, len(ids), _IN_CHUNK):
        yield ids[i:i + _IN_CHUNK]


def _load_activity(s, period_ids: Iterable[int]) -> dict[int, _Activity]:
    """Collected sum, invoices (direct and by line) and report presence per period."""
    acts: dict[int, _Activity] = defaultdict(_Activity)
    ids = sorted(set(period_ids))
    for chunk in _chunks(ids):
        for pid, amount in s.execute(
            select(Income.period_id, Income.amount_minor).where(
                Income.period_id.in_(chunk))
        ).all():
            acts[pid].collected += int(amount or 0)

        for pid, inv_id, amount in s.execute(
            select(Invoice.period_id, Invoice.id, Invoice.amount_minor).where(
                Invoice.period_id.in_(chunk))
        ).all():
            acts[pid].invoices.setdefault(inv_id, int(amount or 0))

        line_sums: dict[tuple[int, int], int] = defaultdict(int)
        for pid, inv_id, amount in s.execute(
            select(InvoiceLine.period_id, InvoiceLine.invoice_id, InvoiceLine.amount_minor).where(
                InvoiceLine.period_id.in_(chunk))
        ).all():
            line_sums[(pid, inv_id)] += int(amount or 0)
        # line amounts are the period's share of a multi-period invoice
        for (pid, inv_id), amount in line_sums.items():
            acts[pid].invoices[inv_id] = amount

        for (pid,) in s.execute(
            select(PeriodReport.period_id).where(
                PeriodReport.period_id.in_(chunk))
        ).all():
            acts[pid].has_report = True
    return acts


def _row(cls, svc: ServiceSnapshot, rng: PeriodRange, *, today: date, expected: Money,
         activity: _Activity | None = None, kind: str = "STANDARD",
         invoice_not_required: bool = False, **extra) -> RowFacts:
    act = activity or _Activity()
    due = payment_due_date(rng, svc.prepayment_policy)
    collected = Money(act.collected)
    balance = expected - collected
    has_invoice = bool(act.invoices)
    is_overdue = not act.has_report and rng.date_to < today
    return cls(
        service_id=svc.id,
        client_id=svc.client_id,
        client_name=svc.client_name,
        account_manager=svc.account_manager,
        product_name=svc.product_name,
        date_from=rng.date_from,
        date_to=rng.date_to,
        kind=kind,
        invoice_not_required=bool(invoice_not_required),
        prepayment_policy=svc.prepayment_policy,
        payment_due_date=due,
        expected=expected,
        collected=collected,
        invoiced=Money(sum(act.invoices.values())),
        invoice_count=len(act.invoices),
        has_report=act.has_report,
        balance=balance,
        is_overdue=is_overdue,
        is_payment_overdue=due < today and balance.is_positive,
        risk=is_overdue or (not act.has_report and has_invoice and rng.date_to >= today),
        **extra,
    )


def _persisted(s, stmt, today: date) -> list[PersistedRow]:
    found = s.execute(stmt).all()
    acts = _load_activity(s, (p.id for p, *_ in found))
    rows = []
    for p, svc, client, product in found:
        snap = service_snapshot(svc, client, product)
        expected = Money.of(p.expected_amount_minor
                            if p.expected_amount_minor is not None else svc.price_minor)
        rows.append(_row(
            PersistedRow, snap, PeriodRange(p.date_from, p.date_to), today=today,
            expected=expected, activity=acts.get(p.id), kind=p.kind,
            invoice_not_required=p.invoice_not_required, id=p.id,
        ))
    return rows


def _period_select():
    return (
        select(BillingPeriod, Service, Client, Product)
        .join(Service, Service.id == BillingPeriod.service_id)
        .join(Client, Client.id == Service.client_id)
        .outerjoin(Product, Product.id == Service.product_id)
    )


def _sort_key(row: RowFacts):
    return (row.date_to, row.service_id, row.date_from)


def build_view(flt: ReconciliationFilter, scope: Scope, *, as_of: datetime) -> list[RowFacts]:
    """
    Persisted periods intersecting the window plus virtual rows for every
    projected range of an active service that has no persisted counterpart,
    sorted by date_to. A persisted row always wins over a virtual one with
    the same (service, date_from, date_to).
    """
    today = local_today(as_of)
    win = flt.window

    stmt = apply_service_filters(_period_select(), scope, owner=flt.owner,
                                 client_id=flt.client_id, client_ids=flt.client_ids)
    stmt = stmt.where(BillingPeriod.date_from <= win.date_to,
                      BillingPeriod.date_to >= win.date_from)
    if flt.client_ids is not None and not flt.client_ids:
        persisted = []
    else:
        with session_scope() as s:
            persisted = _persisted(s, stmt, today)
    taken = {r.key for r in persisted}

    virtual: list[RowFacts] = []
    for svc in list_services(scope, owner=flt.owner, client_id=flt.client_id,
                             client_ids=flt.client_ids, active_only=True):
        try:
            ranges = project(svc.start_date, svc.cadence, svc.end_date, horizon=win.date_to)
            for rng in ranges:
                if not win.intersects(rng) or (svc.id, rng.date_from, rng.date_to) in taken:
                    continue
                virtual.append(_row(VirtualRow, svc, rng, today=today, expected=svc.price))
        except (InvalidRange, InvalidCadence) as e:
            logger.warning("reconciliation: skipping service=%s: %s", svc.id, e)

    rows = [r for r in persisted + virtual if flt.keeps(r)]
    rows.sort(key=_sort_key)

    VIEWS_BUILT.inc()
    for src in ("persisted", "virtual"):
        VIEW_ROWS.labels(source=src).inc(sum(1 for r in rows if r.source == src))
    return rows


def service_overview(service_id: int, scope: Scope, *, as_of: datetime,
                     horizon_periods: int | None = None) -> dict:
    """Expected periods of one service up to its horizon, matched to persisted ones."""
    svc = get_service(service_id)
    require_owner(scope, svc.account_manager, f"service {service_id}")
    today = local_today(as_of)
    horizon = resolve_horizon(svc, as_of, horizon_periods)

    with session_scope() as s:
        persisted = _persisted(
            s, _period_select().where(BillingPeriod.service_id == service_id), today)
    by_key = {r.key: r for r in persisted}

    rows: list[RowFacts] = list(persisted)
    for rng in project(svc.start_date, svc.cadence, svc.end_date, horizon=horizon):
        if (svc.id, rng.date_from, rng.date_to) not in by_key:
            rows.append(_row(VirtualRow, svc, rng, today=today, expected=svc.price))
    rows.sort(key=_sort_key)

    last_end = max((r.date_to for r in persisted), default=None)
    return {
        "serviceId": svc.id,
        "clientId": svc.client_id,
        "clientName": svc.client_name,
        "cadence": svc.cadence,
        "prepaymentPolicy": svc.prepayment_policy,
        "status": svc.status,
        "startDate": svc.start_date.isoformat(),
        "endDate": svc.end_date.isoformat() if svc.end_date else None,
        "horizon": horizon.isoformat(),
        "periods": [r.to_dict() for r in rows],
        "suggestedNext": suggest_next_period(svc.start_date, svc.cadence, last_end).to_dict(),
    }
