from datetime import date

import pytest

from models.audit_store import list_audit
from tests.utils import (
    add_income, add_period, login_as, make_agent, make_client, make_service,
)

AS_OF = "2025-04-01T12:00:00Z"
Q1 = {"dateFrom": "2025-01-01", "dateTo": "2025-03-31", "asOf": AS_OF}


def _half_paid_monthly():
    cid = make_client("Acme", account_manager="mgr1")
    sid = make_service(cid, date(2025, 1, 15), price_minor=100_000)
    pid = add_period(sid, date(2025, 1, 15), date(2025, 2, 14))
    add_income(pid, 50_000)
    return cid, sid, pid


@pytest.mark.db
def test_anonymous_gets_401(client):
    resp = client.get("/payments/view", query_string=Q1)
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "unauthorized"


@pytest.mark.db
def test_payments_view_json(client):
    _, sid, pid = _half_paid_monthly()
    login_as(client, "acc1", "accountant")

    resp = client.get("/payments/view", query_string=Q1)

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["dateFrom"] == "2025-01-01"
    assert [r["source"] for r in body["rows"]] == ["persisted", "virtual", "virtual"]
    assert body["rows"][0]["periodId"] == pid
    assert body["rows"][0]["collected"] == 50_000
    assert body["totals"] == {"planTotal": 300_000, "factTotal": 50_000,
                              "deviation": 250_000, "rows": 3}


@pytest.mark.db
def test_manager_sees_only_own_clients(client):
    _half_paid_monthly()
    other = make_client("Other", account_manager="mgr2")
    make_service(other, date(2025, 1, 1), cadence="QUARTERLY")
    login_as(client, "mgr2", "manager")

    rows = client.get("/payments/view", query_string=Q1).get_json()["rows"]

    assert {r["clientName"] for r in rows} == {"Other"}


@pytest.mark.db
def test_payments_view_filters(client):
    _half_paid_monthly()
    login_as(client, "acc1", "accountant")

    q = dict(Q1, overdueOnly="1")
    rows = client.get("/payments/view", query_string=q).get_json()["rows"]
    # 01-15..02-14 and 02-15..03-14 have ended without a report by 04-01
    assert [r["dateFrom"] for r in rows] == ["2025-01-15", "2025-02-15"]

    q = dict(Q1, paymentFrom="2025-04-01", paymentTo="2025-04-30")
    rows = client.get("/payments/view", query_string=q).get_json()["rows"]
    assert [r["paymentDueDate"] for r in rows] == ["2025-04-14"]


@pytest.mark.db
def test_bad_query_params_are_400(client):
    login_as(client, "acc1", "accountant")

    bad_window = client.get("/payments/view",
                            query_string={"dateFrom": "2025-03-01", "dateTo": "2025-01-01"})
    assert bad_window.status_code == 400
    assert bad_window.get_json()["code"] == "invalid_range"

    bad_date = client.get("/payments/view", query_string={"dateFrom": "yesterday-ish"})
    assert bad_date.status_code == 400

    bad_clock = client.get("/payments/view", query_string={"asOf": "not-a-time"})
    assert bad_clock.status_code == 400


@pytest.mark.db
def test_payments_csv_download(client):
    _half_paid_monthly()
    login_as(client, "acc1", "accountant")

    resp = client.get("/payments/view.csv", query_string=Q1)

    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    assert "payments_2025-01-01_2025-03-31.csv" in resp.headers["Content-Disposition"]
    text = resp.get_data(as_text=True)
    assert "plan_total,3000.00" in text.splitlines()


@pytest.mark.db
def test_section_gate_refuses_and_audits(client):
    _, sid, _ = _half_paid_monthly()
    login_as(client, "acc1", "accountant")

    resp = client.get(f"/services/{sid}/periods/expected", query_string={"asOf": AS_OF})

    assert resp.status_code == 403
    entry = list_audit(limit=1, action="auth.forbidden")[0]
    assert entry["actor"] == "acc1"
    assert entry["target"] == "section:periods"


@pytest.mark.db
def test_expected_periods_for_service(client):
    _, sid, pid = _half_paid_monthly()
    login_as(client, "mgr1", "manager")

    resp = client.get(f"/services/{sid}/periods/expected",
                      query_string={"asOf": "2025-02-01T12:00:00Z", "horizonPeriods": "1"})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["periods"][0]["periodId"] == pid
    assert body["suggestedNext"] == {"dateFrom": "2025-02-15", "dateTo": "2025-03-14"}

    assert client.get("/services/999999/periods/expected").status_code == 404


@pytest.mark.db
def test_materialize_service_endpoint_is_idempotent(client):
    cid = make_client(account_manager="mgr1")
    sid = make_service(cid, date(2025, 1, 15))
    login_as(client, "mgr1", "manager")
    url = f"/services/{sid}/periods/materialize?asOf=2025-03-20T12:00:00Z"

    first = client.post(url, json={"horizonPeriods": 1}).get_json()
    second = client.post(url, json={"horizonPeriods": 1}).get_json()

    assert first["created"] == 4
    assert first["createdRanges"][0] == {"dateFrom": "2025-01-15", "dateTo": "2025-02-14"}
    assert second["created"] == 0
    assert second["alreadyPresent"] == 4


@pytest.mark.db
def test_materialize_other_managers_service_is_forbidden(client):
    sid = make_service(make_client(account_manager="mgr2"), date(2025, 1, 15))
    login_as(client, "mgr1", "manager")

    resp = client.post(f"/services/{sid}/periods/materialize")

    assert resp.status_code == 403
    assert resp.get_json()["code"] == "forbidden"


@pytest.mark.db
def test_materialize_all_in_scope(client):
    cid = make_client(account_manager="mgr1")
    make_service(cid, date(2025, 1, 1), cadence="QUARTERLY")
    make_service(cid, date(2025, 5, 1), end=date(2025, 4, 1))
    login_as(client, "adm", "admin")

    body = client.post("/periods/materialize?asOf=2025-03-20T12:00:00Z", json={}).get_json()

    assert body["services"] == 2
    assert body["errors"] == 1
    assert body["created"] >= 1


@pytest.mark.db
def test_create_and_delete_manual_period(client):
    sid = make_service(make_client(account_manager="mgr1"), date(2025, 1, 1))
    login_as(client, "mgr1", "manager")

    resp = client.post("/periods", json={
        "serviceId": sid, "dateFrom": "2025-01-01", "dateTo": "2025-02-15",
        "kind": "EXTENDED", "expectedAmount": 150_000,
    })
    assert resp.status_code == 201
    pid = resp.get_json()["id"]

    clash = client.post("/periods", json={
        "serviceId": sid, "dateFrom": "2025-02-10", "dateTo": "2025-03-09"})
    assert clash.status_code == 409
    assert clash.get_json()["details"]["period_id"] == pid

    missing = client.post("/periods", json={"serviceId": sid, "dateFrom": "2025-02-10"})
    assert missing.status_code == 400

    gone = client.delete(f"/periods/{pid}")
    assert gone.status_code == 200
    assert gone.get_json()["deleted"]["id"] == pid

    actions = [e["action"] for e in list_audit(limit=10)]
    assert "periods.create" in actions and "periods.delete" in actions


@pytest.mark.db
def test_delete_period_with_income_is_blocked(client):
    _, _, pid = _half_paid_monthly()
    login_as(client, "mgr1", "manager")

    resp = client.delete(f"/periods/{pid}")

    assert resp.status_code == 409
    assert resp.get_json()["code"] == "period_locked"
    entry = list_audit(limit=1, action="periods.delete.blocked")[0]
    assert entry["outcome"] == "blocked"
    assert entry["extra"]["attached"]["incomes"] == 1


@pytest.mark.db
def test_agent_earnings_endpoint(client):
    aid = make_agent(percent=10, in_our_amount=True)
    cid = make_client("Acme", agent_id=aid)
    sid = make_service(cid, date(2025, 1, 1), price_minor=100_000)
    add_income(add_period(sid, date(2025, 1, 1), date(2025, 1, 31)), 100_000)

    login_as(client, "mgr1", "manager")
    assert client.get(f"/agents/{aid}/earnings").status_code == 403
    client.post("/logout")

    login_as(client, "acc1", "accountant")
    body = client.get(f"/agents/{aid}/earnings", query_string={
        "periodFrom": "2025-01-01", "periodTo": "2025-01-31", "asOf": AS_OF}).get_json()

    assert body["agent"]["accounting"] == "carved_out"
    assert body["totalExpected"] == 10_000
    assert body["totalActualPaid"] == 10_000
    assert body["clientEarnings"][0]["client"]["name"] == "Acme"

    assert client.get("/agents/999999/earnings").status_code == 404


@pytest.mark.db
def test_services_without_periods_report(client):
    cid = make_client("Acme", account_manager="mgr1")
    bare = make_service(cid, date(2025, 1, 1))
    covered = make_service(cid, date(2025, 1, 1))
    add_period(covered, date(2025, 1, 1), date(2025, 1, 31))
    make_service(cid, date(2025, 1, 1), status="CLOSED")
    make_service(make_client("Other", account_manager="mgr2"), date(2025, 1, 1))

    login_as(client, "mgr1", "manager")
    body = client.get("/reports/services-without-periods").get_json()

    assert body["count"] == 1
    assert body["services"][0]["serviceId"] == bare


@pytest.mark.db
def test_payment_window_alone_selects_by_due_date(client):
    sid = make_service(make_client(account_manager="mgr1"), date(2025, 4, 1),
                       cadence="QUARTERLY", policy="FULL_PREPAY")
    login_as(client, "acc1", "accountant")

    body = client.get("/payments/view", query_string={
        "paymentFrom": "2025-04-01", "paymentTo": "2025-04-30",
        "asOf": "2025-03-20T12:00:00Z"}).get_json()

    assert body["paymentFrom"] == "2025-04-01"
    assert [(r["serviceId"], r["dateFrom"], r["paymentDueDate"]) for r in body["rows"]] == [
        (sid, "2025-04-01", "2025-04-01")]
    assert body["totals"]["planTotal"] == 100_000


@pytest.mark.db
def test_non_iso_dates_are_rejected(client):
    login_as(client, "acc1", "accountant")

    resp = client.get("/payments/view", query_string={"dateFrom": "03/04/2025"})

    assert resp.status_code == 400
    assert resp.get_json()["details"] == {"field": "dateFrom"}
