"""Booking cancellation. Cancelling deletes the row; there is no undo."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .errors import BookingNotFound, CancellationWindowClosed, NotBookingOwner, StorageUnavailable
from .events import BOOKING_DELETED, ChangeFeed, change_feed
from .models import Booking
from .timeutils import utcnow

logger = logging.getLogger("coworking.admission")


@dataclass(frozen=True)
class Caller:
    """Identity and role of whoever issues a request."""

    user_id: int
    is_admin: bool = False


def can_cancel(booking: Booking, caller: Caller, now: datetime, lead_time: timedelta) -> bool:
    if caller.is_admin:
        return True
    return booking.user_id == caller.user_id and now + lead_time <= booking.start_time


def cancel_booking(
    db: Session,
    booking_id: int,
    caller: Caller,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
    feed: Optional[ChangeFeed] = change_feed,
) -> None:
    settings = settings or get_settings()
    lead_time = timedelta(hours=settings.cancellation_lead_hours)
    try:
        booking = db.get(Booking, booking_id)
        if booking is None:
            raise BookingNotFound()
        if not caller.is_admin and booking.user_id != caller.user_id:
            raise NotBookingOwner()
        if not can_cancel(booking, caller, clock(), lead_time):
            raise CancellationWindowClosed(
                f"Bookings can only be cancelled more than {settings.cancellation_lead_hours} hours in advance; "
                "contact the administration"
            )
        owner_id, room_id = booking.user_id, booking.room_id
        db.delete(booking)
        db.commit()
    except (OperationalError, InterfaceError) as exc:
        db.rollback()
        raise StorageUnavailable() from exc

    logger.info("booking cancelled | id=%s by=%s admin=%s", booking_id, caller.user_id, caller.is_admin)
    if feed is not None:
        feed.publish(BOOKING_DELETED, booking_id, {"room_id": room_id}, user_id=owner_id)
