"""Billing-cycle date helpers shared by the credit services."""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_key(now: Optional[datetime] = None) -> str:
    current = as_utc(now) or utc_now()
    return current.strftime("%Y-%m")


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def monthly_period(start: datetime) -> Tuple[datetime, datetime]:
    start = as_utc(start)
    return start, add_months(start, 1)


def next_period_covering(previous_end: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """First monthly period starting at previous_end (stepping whole months) that contains now."""
    start = as_utc(previous_end)
    now = as_utc(now)
    end = add_months(start, 1)
    while end <= now:
        start, end = end, add_months(end, 1)
    return start, end
