"""Reservation lifecycle records.

Plain dataclasses; the ledger is the only component that persists them and
the lifecycle is the only component that produces new versions of them.
Amounts are integer minor units (cents).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any

from hotelbook.domain.errors import InvalidStayError


class ReservationStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED, ReservationStatus.REFUNDED}
)


class AuthorizationStatus(str, Enum):
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


# Provider callbacks may arrive out of order; a status never moves backwards.
AUTHORIZATION_STATUS_RANK = {
    AuthorizationStatus.FAILED: 0,
    AuthorizationStatus.AUTHORIZED: 1,
    AuthorizationStatus.CAPTURED: 2,
    AuthorizationStatus.REFUNDED: 3,
}


class SettlementStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    NEEDS_MANUAL = "needs_manual"


@dataclass(frozen=True)
class StayRange:
    """Half-open calendar range ``[check_in, check_out)``."""

    check_in: date
    check_out: date

    def __post_init__(self) -> None:
        if self.check_out <= self.check_in:
            raise InvalidStayError(
                f"check_out ({self.check_out}) must be after check_in ({self.check_in})"
            )

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    def overlaps(self, other: "StayRange") -> bool:
        # Touching ranges (checkout == checkin) are not an overlap.
        return self.check_in < other.check_out and other.check_in < self.check_out

    def to_dict(self) -> dict[str, str]:
        return {"check_in": self.check_in.isoformat(), "check_out": self.check_out.isoformat()}


@dataclass(frozen=True)
class RoomType:
    id: str
    nightly_rate_cents: int
    capacity: int


@dataclass(frozen=True)
class Room:
    id: str
    room_type_id: str
    accessible: bool = False
    pet_friendly: bool = False
    non_smoking: bool = True


@dataclass(frozen=True)
class Reservation:
    """A guest's committed claim on a room for a stay."""

    id: str
    guest_id: str
    room_id: str
    stay: StayRange
    guest_count: int
    status: ReservationStatus
    total_cents: int
    currency: str
    payment_ref: str | None
    checked_in_at: datetime | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    refund_pending: bool = False

    @property
    def check_in(self) -> date:
        return self.stay.check_in

    @property
    def check_out(self) -> date:
        return self.stay.check_out

    def evolve(self, **changes: Any) -> "Reservation":
        """Copy with changes; the ledger bumps ``version`` on commit."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "guest_id": self.guest_id,
            "room_id": self.room_id,
            "check_in": self.check_in.isoformat(),
            "check_out": self.check_out.isoformat(),
            "nights": self.stay.nights,
            "guest_count": self.guest_count,
            "status": self.status.value,
            "total_cents": self.total_cents,
            "currency": self.currency,
            "payment_ref": self.payment_ref,
            "checked_in_at": self.checked_in_at.isoformat() if self.checked_in_at else None,
            "version": self.version,
            "refund_pending": self.refund_pending,
        }


@dataclass(frozen=True)
class PaymentAuthorization:
    """A provider-side hold on funds, linked to one reservation."""

    external_id: str
    reservation_id: str
    amount_cents: int
    currency: str
    status: AuthorizationStatus
    idempotency_key: str
    captured_cents: int = 0
    refunded_cents: int = 0

    @property
    def net_captured_cents(self) -> int:
        return self.captured_cents - self.refunded_cents


@dataclass(frozen=True)
class PendingModification:
    """An upgrade quote waiting for its follow-up payment.

    The claim on ``room_id``/``stay`` is already held in the availability
    index; nothing on the reservation itself has changed.
    """

    id: str
    reservation_id: str
    base_version: int
    room_id: str
    stay: StayRange
    guest_count: int
    new_total_cents: int
    delta_cents: int
    expires_at: datetime


@dataclass(frozen=True)
class Settlement:
    """A refund owed by an already-committed change."""

    id: str
    reservation_id: str
    authorization_id: str
    amount_cents: int
    status: SettlementStatus = SettlementStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None


@dataclass(frozen=True)
class LedgerEvent:
    """Change notification emitted by every ledger commit."""

    event_type: str
    reservation_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None
    occurred_at: datetime | None = None
