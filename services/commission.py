# services/commission.py
"""
Agent commission earnings.

For every client attributed to an agent, every service of that client and
every period (persisted or virtual) whose payment due date falls inside the
window:

    expected_earning = expected amount  x percent
    actual_paid      = collected amount x percent

so a fully collected period earns exactly what was expected, and a partly
collected one earns the same fraction.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from models.catalog_store import AgentSnapshot, get_agent, list_services
from services.access import Scope
from services.metrics import EARNINGS_COMPUTED
from services.money import D, Money, ZERO
from services.periods import DateWindow
from services.reconciliation import ReconciliationFilter, build_view


def effective_percent(agent: AgentSnapshot, partner_percent: Decimal | None) -> Decimal | None:
    """Agent's own rate when paid out of our amount, else the product's partner rate."""
    if agent.commission_in_our_amount:
        pct = agent.desired_commission_percent
    else:
        pct = partner_percent
    return None if pct is None else D(pct)


def accounting_label(agent: AgentSnapshot) -> str:
    # informational only; no total in the engine depends on it
    return "on_top" if agent.commission_on_top else "carved_out"


@dataclass
class ServiceEarning:
    service_id: int
    product_name: str | None
    price: Money
    percent: Decimal | None
    periods: int = 0
    expected_amount: Money = ZERO
    collected: Money = ZERO
    expected_earning: Money = ZERO
    actual_paid: Money = ZERO

    def to_dict(self) -> dict:
        return {
            "serviceId": self.service_id,
            "productName": self.product_name,
            "price": self.price.minor,
            "percent": str(self.percent) if self.percent is not None else None,
            "periods": self.periods,
            "expectedAmount": self.expected_amount.minor,
            "collected": self.collected.minor,
            "expectedEarning": self.expected_earning.minor,
            "actualPaid": self.actual_paid.minor,
        }


@dataclass
class ClientEarnings:
    client_id: int
    client_name: str
    services: list[ServiceEarning] = field(default_factory=list)

    @property
    def expected_total(self) -> Money:
        return Money.total(x.expected_earning for x in self.services)

    @property
    def actual_paid_total(self) -> Money:
        return Money.total(x.actual_paid for x in self.services)

    def to_dict(self) -> dict:
        return {
            "client": {"id": self.client_id, "name": self.client_name},
            "services": [x.to_dict() for x in self.services],
            "expectedTotal": self.expected_total.minor,
            "actualPaidTotal": self.actual_paid_total.minor,
        }


@dataclass
class AgentEarnings:
    agent: AgentSnapshot
    window: DateWindow
    clients: list[ClientEarnings] = field(default_factory=list)

    @property
    def total_expected(self) -> Money:
        return Money.total(c.expected_total for c in self.clients)

    @property
    def total_actual_paid(self) -> Money:
        return Money.total(c.actual_paid_total for c in self.clients)

    def to_dict(self) -> dict:
        a = self.agent
        return {
            "agent": {
                "id": a.id,
                "name": a.name,
                "commissionPercent": (str(a.desired_commission_percent)
                                      if a.desired_commission_percent is not None else None),
                "commissionOnTop": a.commission_on_top,
                "commissionInOurAmount": a.commission_in_our_amount,
                "accounting": accounting_label(a),
            },
            "periodFrom": self.window.date_from.isoformat(),
            "periodTo": self.window.date_to.isoformat(),
            "clientEarnings": [c.to_dict() for c in self.clients],
            "totalExpected": self.total_expected.minor,
            "totalActualPaid": self.total_actual_paid.minor,
        }


def compute_earnings(agent_id: int, window: DateWindow, *, as_of: datetime,
                     scope: Scope = Scope.everything()) -> AgentEarnings:
    agent = get_agent(agent_id)
    out = AgentEarnings(agent=agent, window=window)
    EARNINGS_COMPUTED.inc()
    if not agent.client_ids:
        return out

    services = list_services(scope, client_ids=agent.client_ids, active_only=False)
    flt = ReconciliationFilter(
        date_from=window.date_from, date_to=window.date_to,
        client_ids=agent.client_ids,
        payment_from=window.date_from, payment_to=window.date_to,
    )
    rows_by_service: dict[int, list] = {}
    for row in build_view(flt, scope, as_of=as_of):
        rows_by_service.setdefault(row.service_id, []).append(row)

    by_client: dict[int, ClientEarnings] = {}
    for cid, name in agent.clients:
        by_client[cid] = ClientEarnings(cid, name)

    for svc in services:
        pct = effective_percent(agent, svc.partner_commission_percent)
        se = ServiceEarning(svc.id, svc.product_name, svc.price, pct)
        for row in rows_by_service.get(svc.id, []):
            se.periods += 1
            se.expected_amount += row.expected
            se.collected += row.collected
            if pct is not None:
                se.expected_earning += row.expected.percent(pct)
                se.actual_paid += row.collected.percent(pct)
        by_client[svc.client_id].services.append(se)

    out.clients = [c for c in by_client.values() if c.services or scope.is_all]
    return out
