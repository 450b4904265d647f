"""Ledger contract and the in-process change feed.

The ledger is the only writer of reservation and payment records. Each
lifecycle transition reaches it as one ``commit`` call that writes the
reservation row, authorization links, owed settlements and the change event
together, guarded by the reservation's version.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Protocol

from hotelbook.domain.models import (
    LedgerEvent,
    PaymentAuthorization,
    PendingModification,
    Reservation,
    ReservationStatus,
    Settlement,
)
from hotelbook.observability.redaction import safe_log_context

logger = logging.getLogger(__name__)

Subscriber = Callable[[LedgerEvent], None]


class ReservationLedger(Protocol):
    def insert_reservation(
        self,
        reservation: Reservation,
        *,
        authorization: PaymentAuthorization | None,
        event: LedgerEvent,
    ) -> Reservation: ...

    def commit(
        self,
        reservation: Reservation,
        *,
        expected_version: int,
        event: LedgerEvent,
        authorizations: Iterable[PaymentAuthorization] = (),
        settlements: Iterable[Settlement] = (),
        drop_modification_id: str | None = None,
    ) -> Reservation:
        """Atomically write a new version of *reservation*.

        Raises:
            ReservationNotFoundError: unknown id.
            StaleReservationError: stored version != expected_version.
        """
        ...

    def get(self, reservation_id: str) -> Reservation: ...

    def search(
        self,
        *,
        guest_id: str | None = None,
        room_id: str | None = None,
        status: ReservationStatus | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Reservation]: ...

    def save_authorization(self, authorization: PaymentAuthorization) -> PaymentAuthorization: ...

    def get_authorization(self, external_id: str) -> PaymentAuthorization | None: ...

    def find_authorization_by_key(self, idempotency_key: str) -> PaymentAuthorization | None: ...

    def count_failed_authorizations(self, idempotency_key: str) -> int:
        """Failed or voided authorizations recorded under *idempotency_key*."""
        ...

    def refund_recorded(self, idempotency_key: str) -> bool: ...

    def record_refund(
        self, external_id: str, amount_cents: int, *, idempotency_key: str
    ) -> PaymentAuthorization:
        """Add a provider-confirmed refund to the authorization's refunded total.

        The increment is atomic and happens at most once per
        *idempotency_key*; a replayed key returns the stored authorization
        unchanged. The status becomes REFUNDED once everything captured has
        been returned.

        Raises:
            KeyError: unknown authorization.
        """
        ...

    def apply_provider_status(
        self, external_id: str, status: str, *, event_id: str | None = None
    ) -> bool: ...

    def save_pending_modification(self, modification: PendingModification) -> None: ...

    def get_pending_modification(self, modification_id: str) -> PendingModification | None: ...

    def pending_modifications_for(self, reservation_id: str) -> list[PendingModification]: ...

    def delete_pending_modification(self, modification_id: str) -> bool: ...

    def expired_pending_modifications(self, now: datetime) -> list[PendingModification]: ...

    def get_settlement(self, settlement_id: str) -> Settlement | None: ...

    def due_settlements(self, now: datetime, limit: int = 50) -> list[Settlement]: ...

    def claim_due_settlements(
        self, now: datetime, *, lease: timedelta, limit: int = 50
    ) -> list[Settlement]:
        """Take due pending settlements for one worker pass.

        Claimed rows have ``next_attempt_at`` pushed to ``now + lease``, so an
        overlapping pass does not pick them up again; the attempt outcome
        then resolves or reschedules them.
        """
        ...

    def resolve_settlement(self, settlement_id: str) -> None: ...

    def reschedule_settlement(
        self,
        settlement_id: str,
        *,
        error: str,
        next_attempt_at: datetime | None,
        give_up: bool,
    ) -> Settlement: ...

    def subscribe(self, callback: Subscriber) -> None: ...


class ChangeFeed:
    """Fan-out of committed ledger events to in-process read models.

    Listeners run after the commit is durable. A failing listener is logged
    and does not affect the transition or the other listeners.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: LedgerEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "ledger subscriber failed",
                    extra={
                        "extra_fields": safe_log_context(
                            event_type=event.event_type,
                            reservation_id=event.reservation_id,
                        )
                    },
                )


def matches_search(
    reservation: Reservation,
    *,
    guest_id: str | None,
    room_id: str | None,
    status: ReservationStatus | None,
    date_from: date | None,
    date_to: date | None,
) -> bool:
    """Search filter; the date window selects stays overlapping [date_from, date_to)."""
    if guest_id is not None and reservation.guest_id != guest_id:
        return False
    if room_id is not None and reservation.room_id != room_id:
        return False
    if status is not None and reservation.status != status:
        return False
    if date_from is not None and reservation.check_out <= date_from:
        return False
    if date_to is not None and reservation.check_in >= date_to:
        return False
    return True
