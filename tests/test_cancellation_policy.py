"""Tests for refund eligibility (72-hour window before check-in)."""

from datetime import date, datetime, timedelta, timezone

import pytest

from hotelbook.domain.cancellation import CancellationPolicy, is_refund_eligible

CHECK_IN = date(2026, 6, 10)
MIDNIGHT_UTC = datetime(2026, 6, 10, 0, 0, tzinfo=timezone.utc)


class TestRefundWindow:
    def test_exactly_72_hours_is_eligible(self):
        assert is_refund_eligible(CHECK_IN, MIDNIGHT_UTC - timedelta(hours=72))

    def test_one_second_inside_window_is_not_eligible(self):
        now = MIDNIGHT_UTC - timedelta(hours=72) + timedelta(seconds=1)
        assert not is_refund_eligible(CHECK_IN, now)

    def test_well_before_is_eligible(self):
        assert is_refund_eligible(CHECK_IN, MIDNIGHT_UTC - timedelta(days=30))

    def test_after_check_in_is_not_eligible(self):
        assert not is_refund_eligible(CHECK_IN, MIDNIGHT_UTC + timedelta(hours=1))

    def test_naive_now_rejected(self):
        with pytest.raises(ValueError):
            is_refund_eligible(CHECK_IN, datetime(2026, 6, 1, 0, 0))


class TestPolicyConfiguration:
    def test_custom_window(self):
        policy = CancellationPolicy(refund_window_hours=24)
        assert policy.is_refund_eligible(CHECK_IN, MIDNIGHT_UTC - timedelta(hours=24))
        assert not policy.is_refund_eligible(CHECK_IN, MIDNIGHT_UTC - timedelta(hours=23))

    def test_reference_timezone_shifts_check_in_instant(self):
        # Midnight in Sao Paulo (UTC-3) is 03:00 UTC.
        policy = CancellationPolicy(timezone="America/Sao_Paulo")
        boundary = MIDNIGHT_UTC + timedelta(hours=3) - timedelta(hours=72)
        assert policy.is_refund_eligible(CHECK_IN, boundary)
        assert not policy.is_refund_eligible(CHECK_IN, boundary + timedelta(minutes=1))

    def test_hours_until_check_in(self):
        policy = CancellationPolicy()
        assert policy.hours_until_check_in(CHECK_IN, MIDNIGHT_UTC - timedelta(hours=10)) == 10

    def test_non_utc_now_is_normalized(self):
        tz = timezone(timedelta(hours=2))
        now = datetime(2026, 6, 7, 2, 0, tzinfo=tz)  # 2026-06-07 00:00 UTC
        assert is_refund_eligible(CHECK_IN, now)
