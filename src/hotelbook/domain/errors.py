"""Reservation lifecycle exceptions.

Conflict, PaymentDeclined and IllegalTransition are returned to callers;
PaymentRefundError is raised by the payment layer and turned into a pending
settlement by the lifecycle rather than surfaced.
"""

from __future__ import annotations

from datetime import date


class ReservationError(Exception):
    """Base class for lifecycle errors."""


class InvalidStayError(ReservationError, ValueError):
    """Dates, guest count or capacity are not acceptable."""


class ReservationNotFoundError(ReservationError):
    pass


class RoomNotFoundError(ReservationError):
    pass


class ModificationNotFoundError(ReservationError):
    """The upgrade quote does not exist, expired, or belongs elsewhere."""


class IllegalTransitionError(ReservationError):
    """Transition not allowed from the reservation's current status."""

    def __init__(self, reservation_id: str, status: str, action: str) -> None:
        self.reservation_id = reservation_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} reservation {reservation_id} in status {status}"
        )


class StaleReservationError(ReservationError):
    """A concurrent transition committed first."""

    def __init__(self, reservation_id: str, expected_version: int) -> None:
        self.reservation_id = reservation_id
        self.expected_version = expected_version
        super().__init__(
            f"Reservation {reservation_id} changed since version {expected_version}"
        )


class RoomConflictError(ReservationError):
    """The room already has an overlapping claim."""

    def __init__(
        self,
        room_id: str,
        check_in: date,
        check_out: date,
        conflicting_reservation_id: str | None = None,
    ) -> None:
        self.room_id = room_id
        self.check_in = check_in
        self.check_out = check_out
        self.conflicting_reservation_id = conflicting_reservation_id
        super().__init__(
            f"Room {room_id} is not available from {check_in} to {check_out}"
        )


class PaymentDeclinedError(ReservationError):
    """Authorization or capture failed; nothing was committed."""

    def __init__(self, message: str, *, reason_code: str = "declined") -> None:
        self.reason_code = reason_code
        super().__init__(message)


class PaymentRefundError(ReservationError):
    """The provider did not accept a refund."""

    def __init__(self, message: str, *, reason_code: str = "refund_failed") -> None:
        self.reason_code = reason_code
        super().__init__(message)
