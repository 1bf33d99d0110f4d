# services/plan_fact.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable

from services.money import Money, ZERO


@dataclass(frozen=True)
class PlanFact:
    plan_total: Money = ZERO
    fact_total: Money = ZERO
    deviation: Money = ZERO
    rows: int = 0

    def to_dict(self) -> dict:
        return {
            "planTotal": self.plan_total.minor,
            "factTotal": self.fact_total.minor,
            "deviation": self.deviation.minor,
            "rows": self.rows,
        }


def aggregate_plan_fact(rows: Iterable) -> PlanFact:
    """
    Plan is every row's expected amount; fact only counts money collected
    against persisted periods (virtual rows cannot have incomes).
    """
    plan = fact = ZERO
    n = 0
    for r in rows:
        n += 1
        plan += r.expected
        if r.source == "persisted":
            fact += r.collected
    return PlanFact(plan_total=plan, fact_total=fact, deviation=plan - fact, rows=n)
