"""Stay pricing.

Pure functions: identical inputs always give identical totals, so a stored
total can be recomputed during an audit or a modification diff.
The rate is per room per night; guest_count is accepted so an extra-guest
fee can be added later without changing call sites.
"""

from datetime import date

from hotelbook.domain.errors import InvalidStayError
from hotelbook.domain.models import RoomType, StayRange


def nights_between(check_in: date, check_out: date) -> int:
    """Number of billable nights; a same-day range still bills one night."""
    return max(1, (check_out - check_in).days)


def price(rate_cents: int, nights: int, guest_count: int) -> int:
    """Total in minor units for a stay.

    Raises:
        ValueError: negative rate or non-positive nights.
        InvalidStayError: guest_count below 1.
    """
    if rate_cents < 0:
        raise ValueError("rate_cents must not be negative")
    if nights < 1:
        raise ValueError("nights must be at least 1")
    if guest_count < 1:
        raise InvalidStayError("guest_count must be at least 1")
    return rate_cents * nights


def price_stay(room_type: RoomType, stay: StayRange, guest_count: int) -> int:
    return price(
        room_type.nightly_rate_cents,
        nights_between(stay.check_in, stay.check_out),
        guest_count,
    )
