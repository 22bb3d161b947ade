"""Calendar helpers.

Timestamps are persisted as naive UTC. Month and day boundaries are taken on
the local wall clock of the configured timezone and converted back to UTC, so
a "month" is the local calendar month rather than the UTC one.
"""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Tuple
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

Window = Tuple[datetime, datetime]


@lru_cache
def local_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_storage(value: datetime, tz: ZoneInfo) -> datetime:
    """Normalize a client datetime to naive UTC. Naive input is read as local time."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Turn a stored naive-UTC datetime into an aware local one."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def month_window(now: datetime, tz: ZoneInfo) -> Window:
    """Return ``[monthStart, nextMonthStart)`` of the local month containing ``now``."""

    local_now = to_local(now, tz)
    month_start = datetime.combine(local_now.date().replace(day=1), time.min, tzinfo=tz)
    next_month = month_start + relativedelta(months=1)
    return to_storage(month_start, tz), to_storage(next_month, tz)


def day_window(moment: datetime, tz: ZoneInfo) -> Window:
    """Return local midnight-to-midnight around ``moment`` as naive UTC."""

    local_moment = to_local(moment, tz)
    day_start = datetime.combine(local_moment.date(), time.min, tzinfo=tz)
    next_day = datetime.combine(local_moment.date() + timedelta(days=1), time.min, tzinfo=tz)
    return to_storage(day_start, tz), to_storage(next_day, tz)


def month_key(now: datetime, tz: ZoneInfo) -> str:
    return to_local(now, tz).strftime("%Y-%m")


def utcnow() -> datetime:
    """Naive UTC wall clock, the default clock of the services."""

    return datetime.now(timezone.utc).replace(tzinfo=None)
