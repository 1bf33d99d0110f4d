# services/datetimex.py
from __future__ import annotations
import os
from calendar import monthrange
from datetime import datetime, date, timezone
from zoneinfo import ZoneInfo
import pandas as pd

# reference zone for every "is in the past" comparison
APP_TZ = ZoneInfo(os.getenv("APP_TZ", "Europe/Moscow"))


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def local_today(as_of: datetime) -> date:
    """Calendar date of `as_of` in APP_TZ. Naive timestamps are taken as UTC."""
    if as_of.tzinfo is None:
        as_of = as_of.replace(tzinfo=timezone.utc)
    return as_of.astimezone(APP_TZ).date()


def parse_iso_date(s: str | None) -> date | None:
    """ISO 8601 date (or full timestamp) → date; None when empty/unparseable."""
    if not s:
        return None
    ts = pd.to_datetime(s.strip(), format="ISO8601", errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date()


def month_bounds(d: date) -> tuple[date, date]:
    return d.replace(day=1), d.replace(day=monthrange(d.year, d.month)[1])
