"""Unit tests for booking cancellation."""
from datetime import datetime, timedelta

import pytest

from common.cancellation import Caller, can_cancel, cancel_booking
from common.config import Settings
from common.errors import BookingNotFound, CancellationWindowClosed, NotBookingOwner
from common.events import BOOKING_DELETED, ChangeFeed
from common.models import Booking

NOW = datetime(2024, 3, 4, 12, 0)
LEAD = timedelta(hours=24)


def booking_starting_in(hours: float, user_id: int = 1) -> Booking:
    start = NOW + timedelta(hours=hours)
    return Booking(user_id=user_id, room_id="Auditório", title="Talk", start_time=start, end_time=start + timedelta(hours=1))


class TestCanCancel:
    def test_owner_with_enough_notice(self):
        assert can_cancel(booking_starting_in(25), Caller(1), NOW, LEAD)

    def test_owner_exactly_at_the_lead_time(self):
        assert can_cancel(booking_starting_in(24), Caller(1), NOW, LEAD)

    def test_owner_too_late(self):
        assert not can_cancel(booking_starting_in(23), Caller(1), NOW, LEAD)

    def test_other_member(self):
        assert not can_cancel(booking_starting_in(48), Caller(2), NOW, LEAD)

    def test_admin_any_time(self):
        assert can_cancel(booking_starting_in(1), Caller(2, is_admin=True), NOW, LEAD)
        assert can_cancel(booking_starting_in(-5), Caller(2, is_admin=True), NOW, LEAD)


@pytest.fixture()
def stored_booking(db_session, make_profile):
    def factory(hours: float) -> Booking:
        owner = make_profile()
        booking = booking_starting_in(hours, user_id=owner.id)
        db_session.add(booking)
        db_session.commit()
        return booking

    return factory


def test_cancel_deletes_and_publishes(db_session, stored_booking):
    booking = stored_booking(48)
    booking_id, owner_id = booking.id, booking.user_id
    feed = ChangeFeed()

    with feed.subscribe([BOOKING_DELETED]) as subscription:
        cancel_booking(db_session, booking_id, Caller(owner_id), Settings(), clock=lambda: NOW, feed=feed)
        event = subscription.get(timeout=1)

    assert db_session.get(Booking, booking_id) is None
    assert (event.entity_id, event.user_id) == (booking_id, owner_id)


def test_cancel_inside_window(db_session, stored_booking):
    booking = stored_booking(10)
    with pytest.raises(CancellationWindowClosed):
        cancel_booking(db_session, booking.id, Caller(booking.user_id), Settings(), clock=lambda: NOW, feed=None)
    assert db_session.get(Booking, booking.id) is not None


def test_cancel_someone_elses_booking(db_session, stored_booking):
    booking = stored_booking(48)
    with pytest.raises(NotBookingOwner):
        cancel_booking(db_session, booking.id, Caller(booking.user_id + 100), Settings(), clock=lambda: NOW, feed=None)


def test_cancel_missing_booking(db_session):
    with pytest.raises(BookingNotFound):
        cancel_booking(db_session, 12345, Caller(1, is_admin=True), Settings(), clock=lambda: NOW, feed=None)
