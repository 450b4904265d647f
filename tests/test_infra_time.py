"""Tests for the server reference clock helpers."""

from datetime import date, datetime, timedelta, timezone

import pytest

from hotelbook.infra.time import local_today, require_aware, start_of_day, utc_now


def test_utc_now_is_aware():
    now = utc_now()
    assert now.tzinfo is not None
    assert now.utcoffset() == timedelta(0)


def test_require_aware_rejects_naive():
    with pytest.raises(ValueError, match="checked_at"):
        require_aware(datetime(2026, 1, 1), name="checked_at")


def test_require_aware_converts_to_utc():
    value = datetime(2026, 1, 1, 9, 0, tzinfo=timezone(timedelta(hours=-3)))
    assert require_aware(value) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_start_of_day_utc():
    assert start_of_day(date(2026, 4, 2)) == datetime(2026, 4, 2, tzinfo=timezone.utc)


def test_start_of_day_in_timezone():
    result = start_of_day(date(2026, 4, 2), "America/Sao_Paulo")
    assert result == datetime(2026, 4, 2, 3, 0, tzinfo=timezone.utc)


def test_local_today_crosses_midnight():
    now = datetime(2026, 4, 2, 1, 30, tzinfo=timezone.utc)
    assert local_today(now) == date(2026, 4, 2)
    assert local_today(now, "America/Sao_Paulo") == date(2026, 4, 1)
