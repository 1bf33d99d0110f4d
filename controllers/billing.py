# controllers/billing.py
from __future__ import annotations
import logging
from datetime import date, datetime, timezone

import pandas as pd
from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import current_user

from controllers.auth import section_required
from models.audit_store import audit
from models.catalog_store import get_service, services_without_periods
from models.periods_store import create_manual_period, delete_period, get_period
from services.access import require_owner, resolve_scope
from services.commission import compute_earnings
from services.datetimex import local_today, month_bounds, now_utc, parse_iso_date
from services.errors import BillingError, InvalidRange, PeriodLocked
from services.exports import reconciliation_csv
from services.materializer import materialize_scope, materialize_service
from services.metrics import CSV_DOWNLOADS, MANUAL_PERIODS
from services.periods import DateWindow
from services.plan_fact import aggregate_plan_fact
from services.reconciliation import ReconciliationFilter, build_view, service_overview

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__)


@billing_bp.errorhandler(BillingError)
def _billing_error(e: BillingError):
    logger.info("%s %s -> %s %s", request.method, request.path, e.status_code, e.message)
    return jsonify(e.to_dict()), e.status_code


# ---------- request parsing ----------

def _date_arg(data, name: str, default: date | None = None) -> date | None:
    raw = data.get(name)
    if raw in (None, ""):
        return default
    d = parse_iso_date(str(raw))
    if d is None:
        raise InvalidRange(f"{name} must be YYYY-MM-DD", field=name)
    return d


def _int_arg(data, name: str, default: int | None = None) -> int | None:
    raw = data.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BillingError(f"{name} must be an integer", field=name) from None


def _bool_arg(data, name: str) -> bool:
    raw = data.get(name)
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in ("1", "true", "yes", "on")


def _as_of() -> datetime:
    """Clock for this request; ?asOf= pins it (reports re-run for a past day)."""
    raw = request.args.get("asOf")
    if not raw:
        return now_utc()
    ts = pd.to_datetime(raw, format="ISO8601", errors="coerce")
    if pd.isna(ts):
        raise InvalidRange("asOf must be an ISO timestamp", field="asOf")
    dt = ts.to_pydatetime()
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _window(args, as_of: datetime, lo: str, hi: str) -> DateWindow:
    first, last = month_bounds(local_today(as_of))
    d_from = _date_arg(args, lo, first)
    d_to = _date_arg(args, hi, last)
    if d_to < d_from:
        raise InvalidRange(f"{hi} precedes {lo}")
    return DateWindow(d_from, d_to)


def _client_ids(args) -> frozenset[int] | None:
    raw = args.get("clientIds")
    if not raw:
        return None
    try:
        return frozenset(int(x) for x in raw.split(",") if x.strip())
    except ValueError:
        raise BillingError("clientIds must be a comma-separated list of ids") from None


# ---------- payments (reconciliation) ----------

def _payments_rows():
    as_of = _as_of()
    scope = resolve_scope(current_user, "payments")
    args = request.args
    win = _window(args, as_of, "dateFrom", "dateTo")
    flt = ReconciliationFilter(
        date_from=win.date_from,
        date_to=win.date_to,
        owner=(current_user.username if _bool_arg(args, "mine") else args.get("owner") or None),
        client_id=_int_arg(args, "clientId"),
        client_ids=_client_ids(args),
        payment_from=_date_arg(args, "paymentFrom"),
        payment_to=_date_arg(args, "paymentTo"),
        overdue_only=_bool_arg(args, "overdueOnly"),
    )
    if current_app.config.get("MATERIALIZE_ON_VIEW"):
        materialize_scope(scope, as_of=as_of)
    rows = build_view(flt, scope, as_of=as_of)
    return flt, rows, aggregate_plan_fact(rows), as_of


@billing_bp.get("/payments/view")
@section_required("payments")
def payments_view():
    flt, rows, pf, as_of = _payments_rows()
    return jsonify({
        "asOf": as_of.isoformat(),
        "dateFrom": flt.date_from.isoformat(),
        "dateTo": flt.date_to.isoformat(),
        "paymentFrom": flt.payment_from.isoformat() if flt.payment_from else None,
        "paymentTo": flt.payment_to.isoformat() if flt.payment_to else None,
        "rows": [r.to_dict() for r in rows],
        "totals": pf.to_dict(),
    })


@billing_bp.get("/payments/view.csv")
@section_required("payments")
def payments_view_csv():
    flt, rows, pf, _ = _payments_rows()
    fname, csv_text = reconciliation_csv(rows, pf, date_from=flt.date_from, date_to=flt.date_to)
    CSV_DOWNLOADS.labels(kind="reconciliation").inc()
    return Response(
        csv_text,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={fname}"},
    )


# ---------- periods ----------

@billing_bp.get("/services/<int:service_id>/periods/expected")
@section_required("periods")
def expected_periods(service_id: int):
    scope = resolve_scope(current_user, "periods")
    out = service_overview(service_id, scope, as_of=_as_of(),
                           horizon_periods=_int_arg(request.args, "horizonPeriods"))
    return jsonify(out)


@billing_bp.post("/services/<int:service_id>/periods/materialize")
@section_required("periods")
def materialize_one(service_id: int):
    scope = resolve_scope(current_user, "periods")
    svc = get_service(service_id)
    require_owner(scope, svc.account_manager, f"service {service_id}")
    payload = request.get_json(silent=True) or {}
    res = materialize_service(service_id, as_of=_as_of(),
                              horizon_periods=_int_arg(payload, "horizonPeriods"))
    return jsonify(res.to_dict())


@billing_bp.post("/periods/materialize")
@section_required("periods")
def materialize_all():
    scope = resolve_scope(current_user, "periods")
    payload = request.get_json(silent=True) or {}
    results = materialize_scope(scope, as_of=_as_of(),
                                horizon_periods=_int_arg(payload, "horizonPeriods"))
    return jsonify({
        "services": len(results),
        "created": sum(r.created for r in results),
        "alreadyPresent": sum(r.already_present for r in results),
        "failed": sum(r.failed for r in results),
        "errors": sum(1 for r in results if r.error),
        "results": [r.to_dict() for r in results],
    })


@billing_bp.post("/periods")
@section_required("periods")
def create_period():
    scope = resolve_scope(current_user, "periods")
    payload = request.get_json(silent=True) or {}
    service_id = _int_arg(payload, "serviceId")
    if service_id is None:
        raise BillingError("serviceId is required", field="serviceId")
    d_from = _date_arg(payload, "dateFrom")
    d_to = _date_arg(payload, "dateTo")
    if d_from is None or d_to is None:
        raise InvalidRange("dateFrom and dateTo are required")

    svc = get_service(service_id)
    require_owner(scope, svc.account_manager, f"service {service_id}")
    kind = payload.get("kind") or "STANDARD"
    try:
        pid = create_manual_period(
            service_id, d_from, d_to,
            kind=kind,
            invoice_not_required=_bool_arg(payload, "invoiceNotRequired"),
            expected_amount_minor=_int_arg(payload, "expectedAmount"),
        )
    except BillingError:
        MANUAL_PERIODS.labels(op="create", outcome="failure").inc()
        raise
    MANUAL_PERIODS.labels(op="create", outcome="success").inc()
    audit("periods.create", target_type="period", target_id=str(pid),
          outcome="success", status=201,
          extra={"service_id": service_id, "date_from": d_from.isoformat(),
                 "date_to": d_to.isoformat(), "kind": kind})
    return jsonify(id=pid, serviceId=service_id,
                   dateFrom=d_from.isoformat(), dateTo=d_to.isoformat()), 201


@billing_bp.delete("/periods/<int:period_id>")
@section_required("periods")
def remove_period(period_id: int):
    scope = resolve_scope(current_user, "periods")
    p = get_period(period_id)
    require_owner(scope, get_service(p["service_id"]).account_manager, f"period {period_id}")
    try:
        out = delete_period(period_id)
    except PeriodLocked as e:
        MANUAL_PERIODS.labels(op="delete", outcome="blocked").inc()
        audit("periods.delete.blocked", target_type="period", target_id=str(period_id),
              outcome="blocked", status=409, extra={"attached": e.details})
        raise
    MANUAL_PERIODS.labels(op="delete", outcome="success").inc()
    audit("periods.delete", target_type="period", target_id=str(period_id),
          outcome="success", status=200,
          extra={"service_id": out["service_id"], "date_from": out["date_from"],
                 "date_to": out["date_to"]})
    return jsonify(deleted=out)


# ---------- agents / reports ----------

@billing_bp.get("/agents/<int:agent_id>/earnings")
@section_required("agents")
def agent_earnings(agent_id: int):
    scope = resolve_scope(current_user, "agents")
    as_of = _as_of()
    win = _window(request.args, as_of, "periodFrom", "periodTo")
    return jsonify(compute_earnings(agent_id, win, as_of=as_of, scope=scope).to_dict())


@billing_bp.get("/reports/services-without-periods")
@section_required("reports")
def report_services_without_periods():
    scope = resolve_scope(current_user, "reports")
    rows = services_without_periods(scope)
    return jsonify({
        "count": len(rows),
        "services": [{
            "serviceId": s.id,
            "clientId": s.client_id,
            "clientName": s.client_name,
            "accountManager": s.account_manager,
            "productName": s.product_name,
            "cadence": s.cadence,
            "startDate": s.start_date.isoformat(),
            "endDate": s.end_date.isoformat() if s.end_date else None,
        } for s in rows],
    })
