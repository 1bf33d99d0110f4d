from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from models import periods_store
from models.audit_store import list_audit
from models.base import session_scope
from models.schema import BillingPeriod
from services import materializer
from services.access import Scope
from services.errors import NotFound
from services.materializer import materialize_scope, materialize_service
from services.periods import PeriodRange
from tests.utils import at_noon, make_client, make_service

AS_OF = at_noon(2025, 3, 20)


def _keys(service_id):
    with session_scope() as s:
        rows = s.execute(
            select(BillingPeriod.date_from, BillingPeriod.date_to)
            .where(BillingPeriod.service_id == service_id)
            .order_by(BillingPeriod.date_from)
        ).all()
        return [(r[0], r[1]) for r in rows]


@pytest.mark.db
def test_materialize_creates_projected_periods_up_to_horizon():
    cid = make_client()
    sid = make_service(cid, date(2025, 1, 15))

    res = materialize_service(sid, as_of=AS_OF, horizon_periods=1)

    # today 03-20 + 1 month = 04-20 -> ranges starting 01-15, 02-15, 03-15, 04-15
    assert res.created == 4
    assert res.horizon == date(2025, 4, 20)
    assert _keys(sid)[0] == (date(2025, 1, 15), date(2025, 2, 14))
    assert _keys(sid)[-1] == (date(2025, 4, 15), date(2025, 5, 14))

    with session_scope() as s:
        p = s.execute(select(BillingPeriod).limit(1)).scalars().one()
        assert p.kind == "STANDARD"
        assert p.expected_amount_minor is None
        assert p.invoice_not_required is False


@pytest.mark.db
def test_materialize_twice_is_idempotent():
    cid = make_client()
    sid = make_service(cid, date(2025, 1, 15))

    first = materialize_service(sid, as_of=AS_OF, horizon_periods=1)
    before = _keys(sid)
    second = materialize_service(sid, as_of=AS_OF, horizon_periods=1)

    assert first.created == len(before)
    assert second.created == 0
    assert second.already_present == len(before)
    assert _keys(sid) == before


@pytest.mark.db
def test_insert_if_absent_reports_existing_row():
    cid = make_client()
    sid = make_service(cid, date(2025, 1, 1))
    rng = PeriodRange(date(2025, 1, 1), date(2025, 1, 31))

    with session_scope() as s:
        assert periods_store.insert_period_if_absent(s, sid, rng) is True
    with session_scope() as s:
        assert periods_store.insert_period_if_absent(s, sid, rng) is False
    assert _keys(sid) == [(date(2025, 1, 1), date(2025, 1, 31))]


@pytest.mark.db
def test_concurrent_materialization_has_no_duplicates():
    cid = make_client()
    sid = make_service(cid, date(2024, 1, 1))

    def run(_):
        return materialize_service(sid, as_of=AS_OF, horizon_periods=2)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(run, range(4)))

    keys = _keys(sid)
    assert len(keys) == len(set(keys))
    # every range was created exactly once across all callers
    assert sum(r.created for r in results) == len(keys)
    assert all(r.failed == 0 for r in results)

    with session_scope() as s:
        dupes = s.execute(
            select(BillingPeriod.date_from, func.count())
            .group_by(BillingPeriod.service_id, BillingPeriod.date_from, BillingPeriod.date_to)
            .having(func.count() > 1)
        ).all()
        assert dupes == []


@pytest.mark.db
def test_one_failing_range_does_not_stop_the_others(monkeypatch):
    cid = make_client()
    sid = make_service(cid, date(2025, 1, 1), end=date(2025, 3, 31))
    real = materializer.insert_period_if_absent

    def flaky(s, service_id, rng, **kw):
        if rng.date_from == date(2025, 2, 1):
            raise OperationalError("INSERT", {}, Exception("disk hiccup"))
        return real(s, service_id, rng, **kw)

    monkeypatch.setattr(materializer, "insert_period_if_absent", flaky)
    res = materialize_service(sid, as_of=AS_OF)

    assert res.created == 2
    assert res.failed == 1
    assert not res.ok
    assert _keys(sid) == [(date(2025, 1, 1), date(2025, 1, 31)),
                          (date(2025, 3, 1), date(2025, 3, 31))]
    entry = list_audit(limit=1, action="periods.materialize")[0]
    assert entry["outcome"] == "partial"
    assert entry["extra"]["failed"] == 1


@pytest.mark.db
def test_ended_service_is_bounded_by_its_end_date():
    cid = make_client()
    sid = make_service(cid, date(2024, 1, 1), end=date(2024, 3, 15))

    res = materialize_service(sid, as_of=AS_OF, horizon_periods=12)

    assert res.horizon == date(2024, 3, 15)
    assert _keys(sid)[-1] == (date(2024, 3, 1), date(2024, 3, 15))
    assert res.created == 3


@pytest.mark.db
def test_inactive_service_is_skipped():
    cid = make_client()
    sid = make_service(cid, date(2025, 1, 1), status="PAUSED")

    res = materialize_service(sid, as_of=AS_OF)

    assert res.created == 0
    assert res.skipped_reason == "status:PAUSED"
    assert _keys(sid) == []


@pytest.mark.db
def test_unknown_service():
    with pytest.raises(NotFound):
        materialize_service(999_999, as_of=AS_OF)


@pytest.mark.db
def test_scope_batch_contains_malformed_service():
    cid = make_client(account_manager="mgr1")
    good = make_service(cid, date(2025, 1, 1), cadence="QUARTERLY")
    bad = make_service(cid, date(2025, 5, 1), end=date(2025, 4, 1))  # ends before it starts
    other = make_service(make_client("Other", account_manager="mgr2"), date(2025, 1, 1))

    results = {r.service_id: r for r in materialize_scope(Scope.owned_by("mgr1"), as_of=AS_OF)}

    assert set(results) == {good, bad}
    assert results[bad].error["code"] == "invalid_range"
    assert results[good].created >= 1
    assert _keys(other) == []


@pytest.mark.db
def test_horizon_defaults_from_environment(monkeypatch):
    monkeypatch.setenv("BILLING_HORIZON_PERIODS", "0")
    cid = make_client()
    sid = make_service(cid, date(2025, 1, 15))

    res = materialize_service(sid, as_of=AS_OF)

    assert res.horizon == date(2025, 3, 20)
    assert [k[0] for k in _keys(sid)] == [date(2025, 1, 15), date(2025, 2, 15), date(2025, 3, 15)]
