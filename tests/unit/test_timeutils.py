"""Unit tests for calendar helpers."""
from datetime import datetime, timezone

from common.timeutils import day_window, local_zone, month_key, month_window, to_local, to_storage

SAO_PAULO = local_zone("America/Sao_Paulo")


def test_naive_input_is_read_as_local_time():
    assert to_storage(datetime(2024, 3, 4, 9, 0), SAO_PAULO) == datetime(2024, 3, 4, 12, 0)


def test_aware_input_is_converted_to_naive_utc():
    value = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)
    assert to_storage(value, SAO_PAULO) == datetime(2024, 3, 4, 12, 0)


def test_to_local_round_trips_storage():
    local = to_local(datetime(2024, 3, 4, 12, 0), SAO_PAULO)
    assert (local.hour, local.utcoffset().total_seconds()) == (9, -3 * 3600)


def test_month_window_uses_local_calendar():
    # 01:00 UTC on April 1st is still March 31st in São Paulo.
    start, end = month_window(datetime(2024, 4, 1, 1, 0), SAO_PAULO)
    assert start == datetime(2024, 3, 1, 3, 0)
    assert end == datetime(2024, 4, 1, 3, 0)


def test_month_window_rolls_over_the_year():
    start, end = month_window(datetime(2024, 12, 20, 15, 0), SAO_PAULO)
    assert start == datetime(2024, 12, 1, 3, 0)
    assert end == datetime(2025, 1, 1, 3, 0)


def test_day_window():
    start, end = day_window(datetime(2024, 3, 5, 2, 0), SAO_PAULO)
    assert start == datetime(2024, 3, 4, 3, 0)
    assert end == datetime(2024, 3, 5, 3, 0)


def test_month_key_follows_local_month():
    assert month_key(datetime(2024, 4, 1, 1, 0), SAO_PAULO) == "2024-03"
    assert month_key(datetime(2024, 4, 1, 4, 0), SAO_PAULO) == "2024-04"
