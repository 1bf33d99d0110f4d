# models/catalog_store.py (read repository: services, clients, agents)
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select, exists

from models.base import session_scope
from models.schema import Agent, BillingPeriod, Client, Product, Service
from services.access import Scope
from services.errors import NotFound
from services.money import Money


@dataclass(frozen=True)
class ServiceSnapshot:
    id: int
    client_id: int
    client_name: str
    account_manager: str | None
    product_id: int | None
    product_name: str | None
    partner_commission_percent: Decimal | None
    start_date: date
    end_date: date | None
    cadence: str
    prepayment_policy: str
    price: Money
    status: str

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"


@dataclass(frozen=True)
class AgentSnapshot:
    id: int
    name: str
    desired_commission_percent: Decimal | None
    commission_on_top: bool
    commission_in_our_amount: bool
    clients: tuple[tuple[int, str], ...] = field(default_factory=tuple)

    @property
    def client_ids(self) -> frozenset[int]:
        return frozenset(cid for cid, _ in self.clients)


def service_snapshot(svc: Service, client: Client, product: Product | None) -> ServiceSnapshot:
    return ServiceSnapshot(
        id=svc.id,
        client_id=client.id,
        client_name=client.name,
        account_manager=client.account_manager,
        product_id=product.id if product else None,
        product_name=product.name if product else None,
        partner_commission_percent=product.partner_commission_percent if product else None,
        start_date=svc.start_date,
        end_date=svc.end_date,
        cadence=svc.billing_cadence,
        prepayment_policy=svc.prepayment_policy,
        price=Money.of(svc.price_minor),
        status=svc.status,
    )


def apply_service_filters(stmt, scope: Scope, *, owner: str | None = None,
                          client_id: int | None = None,
                          client_ids: frozenset[int] | None = None):
    """Narrow a statement that already joins Client by scope/owner/client."""
    if not scope.is_all:
        stmt = stmt.where(Client.account_manager == scope.owner)
    if owner:
        stmt = stmt.where(Client.account_manager == owner)
    if client_id is not None:
        stmt = stmt.where(Client.id == client_id)
    if client_ids is not None:
        stmt = stmt.where(Client.id.in_(sorted(client_ids)))
    return stmt


def _service_select():
    return (
        select(Service, Client, Product)
        .join(Client, Client.id == Service.client_id)
        .outerjoin(Product, Product.id == Service.product_id)
    )


def list_services(scope: Scope, *, owner: str | None = None, client_id: int | None = None,
                  client_ids: frozenset[int] | None = None, active_only: bool = True) -> list[ServiceSnapshot]:
    if client_ids is not None and not client_ids:
        return []
    stmt = apply_service_filters(_service_select(), scope, owner=owner,
                                 client_id=client_id, client_ids=client_ids)
    if active_only:
        stmt = stmt.where(Service.status == "ACTIVE")
    stmt = stmt.order_by(Service.id)
    with session_scope() as s:
        return [service_snapshot(svc, c, p) for (svc, c, p) in s.execute(stmt).all()]


def get_service(service_id: int) -> ServiceSnapshot:
    with session_scope() as s:
        row = s.execute(_service_select().where(
            Service.id == service_id)).first()
        if not row:
            raise NotFound(f"service {service_id} not found")
        return service_snapshot(*row)


def get_agent(agent_id: int) -> AgentSnapshot:
    with session_scope() as s:
        a = s.get(Agent, agent_id)
        if not a:
            raise NotFound(f"agent {agent_id} not found")
        clients = s.execute(
            select(Client.id, Client.name).where(
                Client.agent_id == agent_id).order_by(Client.name, Client.id)
        ).all()
        return AgentSnapshot(
            id=a.id,
            name=a.name,
            desired_commission_percent=a.desired_commission_percent,
            commission_on_top=bool(a.commission_on_top),
            commission_in_our_amount=bool(a.commission_in_our_amount),
            clients=tuple((cid, name) for cid, name in clients),
        )


def services_without_periods(scope: Scope) -> list[ServiceSnapshot]:
    """Active services that have never had a billing period persisted."""
    has_period = exists().where(BillingPeriod.service_id == Service.id)
    stmt = apply_service_filters(_service_select(), scope)
    stmt = stmt.where(Service.status == "ACTIVE", ~has_period).order_by(
        Client.name, Service.id)
    with session_scope() as s:
        return [service_snapshot(svc, c, p) for (svc, c, p) in s.execute(stmt).all()]
