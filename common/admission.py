"""Booking admission: quota accounting and minimum-gap conflict detection.

A request goes through an ordered pipeline and any stage can abort it:

1. the range must be non-empty (``InvalidRange``);
2. the owner's hours this month plus the requested hours must fit the
   monthly quota (``QuotaExceeded``);
3. no booking of the same room may sit closer than the configured gap,
   overlaps included (``RoomConflict``);
4. the booking is inserted.

Stages 2-4 run while holding locks on the room and on the owner's
quota month, so two concurrent admissions cannot both pass on the same
snapshot. Locks are process-local and, on PostgreSQL, also taken as
transaction-scoped advisory locks so separate workers serialize as well.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .errors import CoworkingError, InvalidRange, ProfileNotFound, QuotaExceeded, RoomConflict, StorageUnavailable
from .events import BOOKING_CREATED, ChangeFeed, change_feed
from .locks import KeyedLocks, acquire_advisory_locks, admission_locks
from .models import Booking, Profile
from .quota import monthly_bookings, quota_for, total_duration
from .timeutils import Window, day_window, local_zone, month_key, month_window, to_storage, utcnow

logger = logging.getLogger("coworking.admission")


@dataclass(frozen=True)
class BookingRequest:
    owner_id: int
    room_id: str
    start_time: datetime
    end_time: datetime
    title: str
    requirements: Optional[str] = None
    user_unit: Optional[str] = None
    user_company_name: Optional[str] = None


def violates_gap(
    candidate_start: datetime,
    candidate_end: datetime,
    existing_start: datetime,
    existing_end: datetime,
    gap: timedelta,
) -> bool:
    """True unless one interval ends at least ``gap`` before the other starts."""

    return candidate_start - existing_end < gap and existing_start - candidate_end < gap


class BookingAdmissionEngine:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: KeyedLocks = admission_locks,
        feed: Optional[ChangeFeed] = change_feed,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.locks = locks
        self.feed = feed
        self.tz = local_zone(self.settings.local_timezone)
        self.gap = timedelta(minutes=self.settings.booking_gap_minutes)

    def _normalize(self, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        try:
            start, end = to_storage(start, self.tz), to_storage(end, self.tz)
            self.search_window(start, end)
        except OverflowError as exc:
            raise InvalidRange("Booking dates are outside the supported calendar") from exc
        if start >= end:
            raise InvalidRange()
        return start, end

    def search_window(self, start: datetime, end: datetime) -> Window:
        """The candidate's local day stretched to cover the candidate, widened by the gap."""

        day_start, day_end = day_window(start, self.tz)
        return min(day_start, start) - self.gap, max(day_end, end) + self.gap

    def _load_profile(self, owner_id: int) -> Profile:
        profile = self.db.get(Profile, owner_id)
        if profile is None:
            raise ProfileNotFound()
        return profile

    def _check_quota(self, profile: Profile, start: datetime, end: datetime, now: datetime) -> None:
        window = month_window(now, self.tz)
        used = total_duration(monthly_bookings(self.db, profile.id, window))
        requested = end - start
        quota = timedelta(hours=quota_for(profile, self.settings))
        if used + requested > quota:
            remaining = (quota - used).total_seconds() / 3600
            logger.info(
                "quota exceeded | user=%s used=%.2fh requested=%.2fh quota=%.2fh",
                profile.id,
                used.total_seconds() / 3600,
                requested.total_seconds() / 3600,
                quota.total_seconds() / 3600,
            )
            raise QuotaExceeded(remaining_hours=remaining)

    def neighbours(self, room_id: str, start: datetime, end: datetime) -> List[Booking]:
        lower, upper = self.search_window(start, end)
        return (
            self.db.query(Booking)
            .filter(Booking.room_id == room_id, Booking.start_time < upper, Booking.end_time > lower)
            .order_by(Booking.start_time)
            .all()
        )

    def _find_conflict(self, room_id: str, start: datetime, end: datetime) -> Optional[Booking]:
        for existing in self.neighbours(room_id, start, end):
            if violates_gap(start, end, existing.start_time, existing.end_time, self.gap):
                return existing
        return None

    def check_availability(self, room_id: str, start: datetime, end: datetime) -> bool:
        """Dry-run of the gap rule for ``room_id``; nothing is locked or written."""

        start, end = self._normalize(start, end)
        try:
            return self._find_conflict(room_id, start, end) is None
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailable() from exc

    def admit(self, request: BookingRequest) -> Booking:
        start, end = self._normalize(request.start_time, request.end_time)
        now = self.clock()
        keys = (f"room:{request.room_id}", f"quota:{request.owner_id}:{month_key(now, self.tz)}")

        with self.locks.hold(*keys):
            try:
                acquire_advisory_locks(self.db, *keys)
                profile = self._load_profile(request.owner_id)
                self._check_quota(profile, start, end, now)
                conflict = self._find_conflict(request.room_id, start, end)
                if conflict is not None:
                    logger.info(
                        "room conflict | room=%s candidate=%s..%s existing=%s",
                        request.room_id,
                        start.isoformat(),
                        end.isoformat(),
                        conflict.id,
                    )
                    raise RoomConflict()

                booking = Booking(
                    user_id=profile.id,
                    room_id=request.room_id,
                    start_time=start,
                    end_time=end,
                    title=request.title,
                    requirements=request.requirements or None,
                    user_unit=request.user_unit,
                    user_company_name=request.user_company_name,
                )
                self.db.add(booking)
                self.db.commit()
            except (OperationalError, InterfaceError) as exc:
                self.db.rollback()
                raise StorageUnavailable() from exc
            except CoworkingError:
                self.db.rollback()
                raise

        self.db.refresh(booking)
        logger.info(
            "booking admitted | id=%s user=%s room=%s %s..%s",
            booking.id,
            booking.user_id,
            booking.room_id,
            booking.start_time.isoformat(),
            booking.end_time.isoformat(),
        )
        if self.feed is not None:
            self.feed.publish(
                BOOKING_CREATED,
                booking.id,
                {
                    "room_id": booking.room_id,
                    "start_time": booking.start_time.isoformat(),
                    "end_time": booking.end_time.isoformat(),
                },
                user_id=booking.user_id,
            )
        return booking
