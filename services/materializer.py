# services/materializer.py
"""
Turns projected billing ranges into persisted billing_periods rows.

Safe to run any number of times, from any number of requests at once: every
range goes through an insert-if-absent on the natural key, each in its own
transaction, so a lost race counts as "already present" and a failure on
one range does not roll back the others.
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.exc import SQLAlchemyError

from models.audit_store import audit
from models.base import session_scope
from models.catalog_store import ServiceSnapshot, get_service, list_services
from models.periods_store import existing_keys, insert_period_if_absent
from services.access import Scope
from services.datetimex import local_today
from services.errors import InvalidCadence, InvalidRange
from services.metrics import (
    MATERIALIZE_LATENCY, MATERIALIZE_SKIPPED, PERIODS_MATERIALIZED,
)
from services.periods import PeriodRange, horizon_for, project

logger = logging.getLogger(__name__)


def _horizon_cfg() -> int:
    raw = os.getenv("BILLING_HORIZON_PERIODS", "1")
    try:
        return max(int(raw), 0)
    except ValueError:
        logger.warning("BILLING_HORIZON_PERIODS=%r is not an integer; using 1", raw)
        return 1


@dataclass
class MaterializeResult:
    service_id: int
    created: int = 0
    already_present: int = 0
    failed: int = 0
    horizon: date | None = None
    skipped_reason: str | None = None
    error: dict | None = None
    created_ranges: list[PeriodRange] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0

    def to_dict(self) -> dict:
        return {
            "serviceId": self.service_id,
            "created": self.created,
            "alreadyPresent": self.already_present,
            "failed": self.failed,
            "horizon": self.horizon.isoformat() if self.horizon else None,
            "skippedReason": self.skipped_reason,
            "error": self.error,
            "createdRanges": [r.to_dict() for r in self.created_ranges],
        }


def resolve_horizon(svc: ServiceSnapshot, as_of: datetime, horizon_periods: int | None = None) -> date:
    """Ended services run to their end; open-ended ones N cadence steps past today."""
    if svc.end_date is not None:
        return svc.end_date
    n = _horizon_cfg() if horizon_periods is None else max(int(horizon_periods), 0)
    return horizon_for(local_today(as_of), svc.cadence, n)


def _materialize(svc: ServiceSnapshot, as_of: datetime, horizon_periods: int | None) -> MaterializeResult:
    res = MaterializeResult(svc.id)
    if not svc.is_active:
        res.skipped_reason = f"status:{svc.status}"
        MATERIALIZE_SKIPPED.labels(reason="inactive").inc()
        return res

    res.horizon = resolve_horizon(svc, as_of, horizon_periods)
    planned = project(svc.start_date, svc.cadence, svc.end_date, horizon=res.horizon)
    have = existing_keys(svc.id)
    missing = [r for r in planned if (r.date_from, r.date_to) not in have]
    res.already_present = len(planned) - len(missing)

    with MATERIALIZE_LATENCY.time():
        for rng in missing:
            try:
                with session_scope() as s:
                    created = insert_period_if_absent(s, svc.id, rng)
            except SQLAlchemyError:
                logger.exception("materialize failed service=%s range=%s..%s",
                                 svc.id, rng.date_from, rng.date_to)
                res.failed += 1
                PERIODS_MATERIALIZED.labels(outcome="failed").inc()
                continue
            if created:
                res.created += 1
                res.created_ranges.append(rng)
                PERIODS_MATERIALIZED.labels(outcome="created").inc()
            else:
                res.already_present += 1
                PERIODS_MATERIALIZED.labels(outcome="existing").inc()

    if res.created or res.failed:
        logger.info("materialized service=%s created=%s existing=%s failed=%s horizon=%s",
                    svc.id, res.created, res.already_present, res.failed, res.horizon)
        audit("periods.materialize", target_type="service", target_id=str(svc.id),
              outcome="partial" if res.failed else "success",
              extra={"created": res.created, "existing": res.already_present,
                     "failed": res.failed, "horizon": res.horizon.isoformat()})
    return res


def materialize_service(service_id: int, *, as_of: datetime,
                        horizon_periods: int | None = None) -> MaterializeResult:
    """
    Ensure every projected period of one service up to its horizon exists.

    Raises NotFound for an unknown service and InvalidRange / InvalidCadence
    when the service row itself is malformed.
    """
    return _materialize(get_service(service_id), as_of, horizon_periods)


def materialize_scope(scope: Scope, *, as_of: datetime,
                      horizon_periods: int | None = None) -> list[MaterializeResult]:
    results = []
    for svc in list_services(scope, active_only=True):
        try:
            results.append(_materialize(svc, as_of, horizon_periods))
        except (InvalidRange, InvalidCadence) as e:
            logger.warning("skipping malformed service=%s: %s", svc.id, e)
            results.append(MaterializeResult(svc.id, error=e.to_dict()))
    return results
