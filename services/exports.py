# services/exports.py
from __future__ import annotations
from datetime import date
from typing import Iterable

import pandas as pd

from services.plan_fact import PlanFact

COLUMNS = [
    "source", "period_id", "client", "account_manager", "product", "service_id",
    "date_from", "date_to", "kind", "payment_due_date",
    "expected", "invoiced", "collected", "balance",
    "has_report", "is_overdue", "is_payment_overdue", "risk",
]


def _bool(v: bool) -> str:
    return "yes" if v else "no"


def reconciliation_frame(rows: Iterable) -> pd.DataFrame:
    data = [{
        "source": r.source,
        "period_id": r.period_id,
        "client": r.client_name,
        "account_manager": r.account_manager or "",
        "product": r.product_name or "",
        "service_id": r.service_id,
        "date_from": r.date_from.isoformat(),
        "date_to": r.date_to.isoformat(),
        "kind": r.kind,
        "payment_due_date": r.payment_due_date.isoformat(),
        "expected": r.expected.to_major(),
        "invoiced": r.invoiced.to_major(),
        "collected": r.collected.to_major(),
        # display: overpaid shows as zero outstanding
        "balance": r.balance.clamp_zero().to_major(),
        "has_report": _bool(r.has_report),
        "is_overdue": _bool(r.is_overdue),
        "is_payment_overdue": _bool(r.is_payment_overdue),
        "risk": _bool(r.risk),
    } for r in rows]
    df = pd.DataFrame(data, columns=COLUMNS)
    # nullable ints so virtual rows print an empty period_id instead of "nan"
    df["period_id"] = df["period_id"].astype("Int64")
    return df


def reconciliation_csv(rows: Iterable, plan_fact: PlanFact, *,
                       date_from: date | None = None, date_to: date | None = None) -> tuple[str, str]:
    """(filename, csv text); the plan/fact totals go in a trailing block."""
    df = reconciliation_frame(rows)
    body = df.to_csv(index=False, lineterminator="\n")
    totals = pd.DataFrame([
        {"metric": "plan_total", "value": plan_fact.plan_total.to_major()},
        {"metric": "fact_total", "value": plan_fact.fact_total.to_major()},
        {"metric": "deviation", "value": plan_fact.deviation.to_major()},
    ])
    body += "\n" + totals.to_csv(index=False, lineterminator="\n")

    span = f"{date_from.isoformat()}_{date_to.isoformat()}" if date_from and date_to else "all"
    return f"payments_{span}.csv", body
