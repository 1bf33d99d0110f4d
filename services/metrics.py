from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

# --- Auth flow metrics ---
LOGIN_SUCCESSES = Counter("auth_login_success_total",
                          "Login successes", registry=APP_REGISTRY)
LOGIN_FAILURES = Counter("auth_login_failure_total", "Login failures", [
                         "reason"], registry=APP_REGISTRY)
FORBIDDEN_REQUESTS = Counter(
    "auth_forbidden_total", "Requests refused by the section gate", ["section"], registry=APP_REGISTRY
)

# --- Billing periods ---
PERIODS_MATERIALIZED = Counter(
    "billing_periods_materialized_total", "Projected ranges processed by the materializer",
    ["outcome"], registry=APP_REGISTRY)  # created | existing | failed
MATERIALIZE_SKIPPED = Counter(
    "billing_materialize_skipped_total", "Services skipped by the materializer",
    ["reason"], registry=APP_REGISTRY)
MATERIALIZE_LATENCY = Histogram(
    "billing_materialize_duration_seconds", "Per-service materialization time",
    registry=APP_REGISTRY)
MANUAL_PERIODS = Counter(
    "billing_manual_periods_total", "Manual period maintenance", ["op", "outcome"], registry=APP_REGISTRY)

# --- Reconciliation / commission / CSV ---
VIEWS_BUILT = Counter("reconciliation_views_total",
                      "Reconciliation views built", registry=APP_REGISTRY)
VIEW_ROWS = Counter("reconciliation_rows_total", "Rows emitted by the reconciliation view", [
                    "source"], registry=APP_REGISTRY)
EARNINGS_COMPUTED = Counter("commission_earnings_total",
                            "Agent earnings computations", registry=APP_REGISTRY)
CSV_DOWNLOADS = Counter("csv_download_total", "CSV download events", [
                        "kind"], registry=APP_REGISTRY)


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    LOGIN_FAILURES.labels(reason="bad_credentials").inc(0)
    for section in ("payments", "periods", "agents", "reports"):
        FORBIDDEN_REQUESTS.labels(section=section).inc(0)
    for outcome in ("created", "existing", "failed"):
        PERIODS_MATERIALIZED.labels(outcome=outcome).inc(0)
    for source in ("persisted", "virtual"):
        VIEW_ROWS.labels(source=source).inc(0)
    CSV_DOWNLOADS.labels(kind="reconciliation").inc(0)
