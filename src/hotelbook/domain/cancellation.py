"""Cancellation refund eligibility.

A cancellation is refundable when check-in is at least the refund window
(72 hours by default) away. Check-in is taken as midnight of the check-in
date in the hotel's reference timezone, and "now" always comes from the
server clock, never from the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from hotelbook.infra.time import require_aware, start_of_day

DEFAULT_REFUND_WINDOW_HOURS = 72


@dataclass(frozen=True)
class CancellationPolicy:
    refund_window_hours: int = DEFAULT_REFUND_WINDOW_HOURS
    timezone: str = "UTC"

    def hours_until_check_in(self, check_in: date, now: datetime) -> float:
        delta = start_of_day(check_in, self.timezone) - require_aware(now)
        return delta.total_seconds() / 3600

    def is_refund_eligible(self, check_in: date, now: datetime) -> bool:
        """True iff ``start_of(check_in) - now >= refund window``."""
        lead_time = start_of_day(check_in, self.timezone) - require_aware(now)
        return lead_time >= timedelta(hours=self.refund_window_hours)


def is_refund_eligible(check_in: date, now: datetime) -> bool:
    """Module-level shortcut using the default 72-hour UTC policy."""
    return CancellationPolicy().is_refund_eligible(check_in, now)
