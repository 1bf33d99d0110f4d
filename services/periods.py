# services/periods.py
"""
Billing calendar projection.

Pure functions only: nothing here reads the clock or the database. Callers
pass the horizon that bounds open-ended services, and pass the keys of
periods that already exist when they want them skipped.

Dates are calendar dates and every range is inclusive on both ends:
a MONTHLY service starting 2025-01-15 yields 01-15..02-14, 02-15..03-14, ...
"""
from __future__ import annotations
from datetime import date, timedelta
from enum import Enum
from typing import Iterable, NamedTuple

from dateutil.relativedelta import relativedelta

from services.errors import InvalidCadence, InvalidRange


class Cadence(str, Enum):
    ONE_TIME = "ONE_TIME"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class PrepaymentPolicy(str, Enum):
    FULL_PREPAY = "FULL_PREPAY"
    PARTIAL_PREPAY = "PARTIAL_PREPAY"
    POSTPAY = "POSTPAY"


class PeriodKind(str, Enum):
    STANDARD = "STANDARD"
    EXTENDED = "EXTENDED"
    BONUS = "BONUS"
    COMPENSATION = "COMPENSATION"


CADENCE_MONTHS = {
    Cadence.MONTHLY: 1,
    Cadence.QUARTERLY: 3,
    Cadence.YEARLY: 12,
}

_PREPAID = {PrepaymentPolicy.FULL_PREPAY, PrepaymentPolicy.PARTIAL_PREPAY}


class PeriodRange(NamedTuple):
    date_from: date
    date_to: date  # inclusive

    def intersects(self, lo: date, hi: date) -> bool:
        return self.date_from <= hi and self.date_to >= lo

    def overlaps(self, other: "PeriodRange") -> bool:
        return self.intersects(other.date_from, other.date_to)

    def to_dict(self) -> dict:
        return {"dateFrom": self.date_from.isoformat(), "dateTo": self.date_to.isoformat()}


class DateWindow(NamedTuple):
    """Inclusive reporting window."""
    date_from: date
    date_to: date

    def contains(self, d: date) -> bool:
        return self.date_from <= d <= self.date_to

    def intersects(self, rng: PeriodRange) -> bool:
        return rng.intersects(self.date_from, self.date_to)


def parse_cadence(value) -> Cadence:
    try:
        return Cadence(getattr(value, "value", value))
    except ValueError:
        raise InvalidCadence(f"unknown billing cadence {value!r}") from None


def parse_policy(value) -> PrepaymentPolicy:
    try:
        return PrepaymentPolicy(getattr(value, "value", value))
    except ValueError:
        raise InvalidCadence(f"unknown prepayment policy {value!r}") from None


def parse_kind(value) -> PeriodKind:
    try:
        return PeriodKind(getattr(value, "value", value) or PeriodKind.STANDARD)
    except ValueError:
        raise InvalidRange(f"unknown period kind {value!r}") from None


def _step(cadence: Cadence, n: int) -> relativedelta:
    return relativedelta(months=CADENCE_MONTHS[cadence] * n)


def project(
    service_start: date,
    cadence,
    service_end: date | None = None,
    *,
    horizon: date | None = None,
    existing: Iterable[tuple[date, date]] | None = None,
) -> list[PeriodRange]:
    """
    Ordered, contiguous, non-overlapping billing ranges for a service.

    Recurring ranges are anchored at `service_start` (the n-th starts at
    start + n*step, day clamped to month end), and are generated while
    date_from <= min(service_end, horizon). The last range is clipped to
    `service_end`. `existing` keys are matched exactly, not by overlap.
    """
    cadence = parse_cadence(cadence)
    if service_end is not None and service_end < service_start:
        raise InvalidRange(
            "service end precedes its start",
            start=service_start.isoformat(), end=service_end.isoformat())

    if cadence is Cadence.ONE_TIME:
        ranges = [PeriodRange(service_start, service_start)]
    else:
        if service_end is None and horizon is None:
            raise InvalidRange(
                "open-ended recurring service needs a projection horizon")
        limit = min(d for d in (service_end, horizon) if d is not None)
        ranges = []
        n = 0
        while True:
            frm = service_start + _step(cadence, n)
            if frm > limit:
                break
            to = service_start + _step(cadence, n + 1) - timedelta(days=1)
            if service_end is not None and to > service_end:
                to = service_end
            ranges.append(PeriodRange(frm, to))
            n += 1

    if existing:
        seen = {(f, t) for f, t in existing}
        ranges = [r for r in ranges if (r.date_from, r.date_to) not in seen]
    return ranges


def payment_due_date(rng: PeriodRange, policy) -> date:
    """Prepaid periods are due at their start, postpaid ones at their end."""
    if parse_policy(policy) in _PREPAID:
        return rng.date_from
    return rng.date_to


def horizon_for(today: date, cadence, periods_ahead: int) -> date:
    """today + periods_ahead cadence steps; ONE_TIME has no horizon to speak of."""
    cadence = parse_cadence(cadence)
    if cadence is Cadence.ONE_TIME:
        return today
    return today + _step(cadence, max(int(periods_ahead), 0))


def suggest_next_period(service_start: date, cadence, last_date_to: date | None = None) -> PeriodRange:
    """Next cadence-length range after the latest persisted one (or the first range)."""
    cadence = parse_cadence(cadence)
    frm = service_start if last_date_to is None else last_date_to + timedelta(days=1)
    if cadence is Cadence.ONE_TIME:
        return PeriodRange(frm, frm)
    return PeriodRange(frm, frm + _step(cadence, 1) - timedelta(days=1))
