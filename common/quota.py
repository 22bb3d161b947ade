"""Monthly quota usage readout.

Usage is always derived from the bookings themselves; nothing keeps a
running total. It can be computed by an SQL aggregate or by summing fetched
rows, and both paths must agree to two decimal places.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import Float, func
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.sql.expression import FunctionElement

from .config import Settings, get_settings
from .errors import ProfileNotFound, StorageUnavailable
from .models import Booking, Profile
from .timeutils import Window, local_zone, month_window, utcnow


class duration_seconds(FunctionElement):
    """``end - start`` in seconds, rendered per dialect."""

    type = Float()
    name = "duration_seconds"
    inherit_cache = True


@compiles(duration_seconds)
def _compile_duration_epoch(element, compiler, **kw):
    start, end = list(element.clauses)
    return "EXTRACT(EPOCH FROM (%s - %s))" % (compiler.process(end, **kw), compiler.process(start, **kw))


@compiles(duration_seconds, "sqlite")
def _compile_duration_sqlite(element, compiler, **kw):
    start, end = list(element.clauses)
    return "((julianday(%s) - julianday(%s)) * 86400.0)" % (compiler.process(end, **kw), compiler.process(start, **kw))


def quota_for(profile: Profile, settings: Settings) -> float:
    return profile.monthly_hours_quota or settings.default_quota_hours


def total_duration(bookings: Iterable[Booking]) -> timedelta:
    return sum((booking.end_time - booking.start_time for booking in bookings), timedelta())


def sum_hours(bookings: Iterable[Booking]) -> float:
    return total_duration(bookings).total_seconds() / 3600


def monthly_bookings(db: Session, user_id: int, window: Window) -> List[Booking]:
    month_start, month_end = window
    return (
        db.query(Booking)
        .filter(Booking.user_id == user_id, Booking.start_time >= month_start, Booking.start_time < month_end)
        .order_by(Booking.start_time)
        .all()
    )


def aggregate_hours(db: Session, user_id: int, window: Window) -> float:
    month_start, month_end = window
    seconds = (
        db.query(func.coalesce(func.sum(duration_seconds(Booking.start_time, Booking.end_time)), 0.0))
        .filter(Booking.user_id == user_id, Booking.start_time >= month_start, Booking.start_time < month_end)
        .scalar()
    )
    return float(seconds) / 3600


def hours_by_user(db: Session, window: Window) -> Dict[int, float]:
    month_start, month_end = window
    rows = (
        db.query(Booking.user_id, func.sum(duration_seconds(Booking.start_time, Booking.end_time)))
        .filter(Booking.start_time >= month_start, Booking.start_time < month_end)
        .group_by(Booking.user_id)
    )
    return {user_id: float(seconds or 0.0) / 3600 for user_id, seconds in rows}


@dataclass(frozen=True)
class QuotaUsage:
    user_id: int
    quota_hours: float
    used_hours: float
    month_start: datetime
    month_end: datetime
    full_name: Optional[str] = None
    company_name: Optional[str] = None
    assigned_room: Optional[str] = None

    @property
    def remaining_hours(self) -> float:
        return round(max(self.quota_hours - self.used_hours, 0.0), 2)

    @property
    def percentage(self) -> float:
        return round(min(self.used_hours / self.quota_hours * 100, 100.0), 1)

    @property
    def ratio(self) -> float:
        return self.used_hours / self.quota_hours


class QuotaService:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.tz = local_zone(self.settings.local_timezone)

    def window(self, now: Optional[datetime] = None) -> Window:
        return month_window(now or self.clock(), self.tz)

    def usage(self, user_id: int, now: Optional[datetime] = None, summed: bool = False) -> QuotaUsage:
        """Hours used this month by ``user_id``; ``summed`` selects row summation over the SQL aggregate."""

        window = self.window(now)
        try:
            profile = self.db.get(Profile, user_id)
            if profile is None:
                raise ProfileNotFound()
            if summed:
                used = sum_hours(monthly_bookings(self.db, user_id, window))
            else:
                used = aggregate_hours(self.db, user_id, window)
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailable() from exc
        return QuotaUsage(
            user_id=user_id,
            quota_hours=quota_for(profile, self.settings),
            used_hours=round(used, 2),
            month_start=window[0],
            month_end=window[1],
            full_name=profile.full_name,
            company_name=profile.company_name,
            assigned_room=profile.assigned_room,
        )

    def overview(self, search: Optional[str] = None, sort_by: str = "usage", now: Optional[datetime] = None) -> List[QuotaUsage]:
        window = self.window(now)
        try:
            profiles = self.db.query(Profile).order_by(Profile.full_name).all()
            used_by_user = hours_by_user(self.db, window)
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailable() from exc

        rows = [
            QuotaUsage(
                user_id=profile.id,
                quota_hours=quota_for(profile, self.settings),
                used_hours=round(used_by_user.get(profile.id, 0.0), 2),
                month_start=window[0],
                month_end=window[1],
                full_name=profile.full_name,
                company_name=profile.company_name,
                assigned_room=profile.assigned_room,
            )
            for profile in profiles
        ]
        if search:
            term = search.lower()
            rows = [
                row
                for row in rows
                if term in (row.full_name or "").lower() or term in (row.company_name or "").lower()
            ]
        if sort_by == "usage":
            rows.sort(key=lambda row: row.ratio, reverse=True)
        else:
            rows.sort(key=lambda row: (row.full_name or "").lower())
        return rows
