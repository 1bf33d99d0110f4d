from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from models import periods_store
from models.base import session_scope
from models.periods_store import create_manual_period, delete_period, get_period
from models.schema import BillingPeriod
from services.errors import InvalidRange, NotFound, PeriodConflict, PeriodLocked
from tests.utils import (
    add_income, add_invoice, add_line_invoice, add_period, make_client, make_service,
)


@pytest.mark.db
def test_manual_period_keeps_kind_and_override():
    sid = make_service(make_client(), date(2025, 1, 1))

    pid = create_manual_period(sid, date(2025, 1, 10), date(2025, 3, 9), kind="EXTENDED",
                               invoice_not_required=True, expected_amount_minor=250_000)

    p = get_period(pid)
    assert p["service_id"] == sid
    assert (p["date_from"], p["date_to"]) == (date(2025, 1, 10), date(2025, 3, 9))
    assert p["kind"] == "EXTENDED"
    assert p["invoice_not_required"] is True
    assert p["expected_amount_minor"] == 250_000


@pytest.mark.db
def test_manual_period_rejects_overlap():
    sid = make_service(make_client(), date(2025, 1, 1))
    existing = add_period(sid, date(2025, 1, 1), date(2025, 1, 31))

    with pytest.raises(PeriodConflict) as ei:
        create_manual_period(sid, date(2025, 1, 31), date(2025, 2, 27))
    assert ei.value.status_code == 409
    assert ei.value.details["period_id"] == existing

    # touching but not overlapping is fine
    assert create_manual_period(sid, date(2025, 2, 1), date(2025, 2, 28))


@pytest.mark.db
def test_manual_period_validation():
    sid = make_service(make_client(), date(2025, 1, 1))
    with pytest.raises(InvalidRange):
        create_manual_period(sid, date(2025, 2, 1), date(2025, 1, 1))
    with pytest.raises(InvalidRange):
        create_manual_period(sid, date(2025, 2, 1), date(2025, 2, 2), kind="HOLIDAY")
    with pytest.raises(InvalidRange):
        create_manual_period(sid, date(2025, 2, 1), date(2025, 2, 2), expected_amount_minor=-1)
    with pytest.raises(NotFound):
        create_manual_period(999_999, date(2025, 2, 1), date(2025, 2, 2))


@pytest.mark.db
def test_single_day_period_is_allowed():
    sid = make_service(make_client(), date(2025, 1, 1), cadence="ONE_TIME")
    pid = create_manual_period(sid, date(2025, 1, 1), date(2025, 1, 1), kind="BONUS")
    assert get_period(pid)["kind"] == "BONUS"


@pytest.mark.db
def test_delete_unreferenced_period():
    sid = make_service(make_client(), date(2025, 1, 1))
    pid = add_period(sid, date(2025, 1, 1), date(2025, 1, 31))

    out = delete_period(pid)

    assert out == {"id": pid, "service_id": sid,
                   "date_from": "2025-01-01", "date_to": "2025-01-31"}
    with pytest.raises(NotFound):
        get_period(pid)
    with pytest.raises(NotFound):
        delete_period(pid)


@pytest.mark.db
@pytest.mark.parametrize("attach", ["income", "invoice", "line"])
def test_delete_is_blocked_by_financial_records(attach):
    sid = make_service(make_client(), date(2025, 1, 1))
    pid = add_period(sid, date(2025, 1, 1), date(2025, 1, 31))
    if attach == "income":
        add_income(pid, 1_000)
    elif attach == "invoice":
        add_invoice(pid, 1_000)
    else:
        add_line_invoice([(pid, 1_000)])

    with pytest.raises(PeriodLocked) as ei:
        delete_period(pid)

    assert sum(ei.value.details.values()) == 1
    assert get_period(pid)["id"] == pid


def _period_count(service_id):
    with session_scope() as s:
        return s.execute(select(func.count(BillingPeriod.id)).where(
            BillingPeriod.service_id == service_id)).scalar_one()


@pytest.mark.db
def test_duplicate_key_at_insert_becomes_conflict(monkeypatch):
    sid = make_service(make_client(), date(2025, 1, 1))
    add_period(sid, date(2025, 1, 1), date(2025, 1, 31))
    # a concurrent writer committed between the overlap check and the insert
    monkeypatch.setattr(periods_store, "_first_overlap", lambda *a, **kw: None)

    with pytest.raises(PeriodConflict) as ei:
        create_manual_period(sid, date(2025, 1, 1), date(2025, 1, 31))

    assert ei.value.status_code == 409
    assert _period_count(sid) == 1


@pytest.mark.db
def test_concurrent_overlapping_creates_keep_one_period():
    sid = make_service(make_client(), date(2025, 1, 1))

    def create(i):
        try:
            return create_manual_period(sid, date(2025, 1, 1), date(2025, 1, 20) + timedelta(days=i))
        except PeriodConflict:
            return None

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(create, range(4)))

    assert sum(1 for r in results if r is not None) == 1
    assert _period_count(sid) == 1
