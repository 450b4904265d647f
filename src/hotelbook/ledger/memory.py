"""In-process ledger.

One lock guards every table, which makes each ``commit`` atomic with
respect to readers and to other commits. Used by the tests and by
single-process deployments without PostgreSQL.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Iterable

from hotelbook.domain.errors import ReservationNotFoundError, StaleReservationError
from hotelbook.domain.models import (
    AUTHORIZATION_STATUS_RANK,
    AuthorizationStatus,
    LedgerEvent,
    PaymentAuthorization,
    PendingModification,
    Reservation,
    ReservationStatus,
    Settlement,
    SettlementStatus,
)
from hotelbook.infra.time import utc_now
from hotelbook.ledger.base import ChangeFeed, Subscriber, matches_search


class InMemoryLedger:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._reservations: dict[str, Reservation] = {}
        self._authorizations: dict[str, PaymentAuthorization] = {}
        self._modifications: dict[str, PendingModification] = {}
        self._settlements: dict[str, Settlement] = {}
        self._provider_events: set[str] = set()
        self._refund_keys: set[str] = set()
        self._events: list[LedgerEvent] = []
        self._feed = ChangeFeed()

    # -- reservations ---------------------------------------------------

    def _with_flags(self, reservation: Reservation) -> Reservation:
        pending = any(
            s.reservation_id == reservation.id and s.status != SettlementStatus.SETTLED
            for s in self._settlements.values()
        )
        return replace(reservation, refund_pending=pending)

    def _record_event(self, event: LedgerEvent) -> LedgerEvent:
        stamped = replace(event, occurred_at=event.occurred_at or utc_now())
        self._events.append(stamped)
        return stamped

    def insert_reservation(
        self,
        reservation: Reservation,
        *,
        authorization: PaymentAuthorization | None,
        event: LedgerEvent,
    ) -> Reservation:
        with self._lock:
            if reservation.id in self._reservations:
                raise StaleReservationError(reservation.id, 0)
            now = utc_now()
            stored = replace(reservation, version=1, created_at=now, updated_at=now)
            self._reservations[stored.id] = stored
            if authorization is not None:
                self._authorizations[authorization.external_id] = authorization
            stamped = self._record_event(event)
            result = self._with_flags(stored)
        self._feed.publish(stamped)
        return result

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
        with self._lock:
            current = self._reservations.get(reservation.id)
            if current is None:
                raise ReservationNotFoundError(f"Reservation not found: {reservation.id}")
            if current.version != expected_version:
                raise StaleReservationError(reservation.id, expected_version)

            stored = replace(
                reservation,
                version=expected_version + 1,
                created_at=current.created_at,
                updated_at=utc_now(),
                refund_pending=False,
            )
            self._reservations[stored.id] = stored
            for auth in authorizations:
                self._store_authorization(auth)
            for settlement in settlements:
                self._settlements[settlement.id] = settlement
            if drop_modification_id is not None:
                self._modifications.pop(drop_modification_id, None)
            stamped = self._record_event(event)
            result = self._with_flags(stored)
        self._feed.publish(stamped)
        return result

    def get(self, reservation_id: str) -> Reservation:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                raise ReservationNotFoundError(f"Reservation not found: {reservation_id}")
            return self._with_flags(reservation)

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
    ) -> list[Reservation]:
        with self._lock:
            found = [
                self._with_flags(r)
                for r in self._reservations.values()
                if matches_search(
                    r,
                    guest_id=guest_id,
                    room_id=room_id,
                    status=status,
                    date_from=date_from,
                    date_to=date_to,
                )
            ]
        found.sort(key=lambda r: (r.check_in, r.id))
        return found[offset : offset + limit]

    def events(self, reservation_id: str | None = None) -> list[LedgerEvent]:
        with self._lock:
            return [
                e for e in self._events
                if reservation_id is None or e.reservation_id == reservation_id
            ]

    # -- authorizations -------------------------------------------------

    def _store_authorization(self, authorization: PaymentAuthorization) -> None:
        # A stale copy never lowers a refunded total recorded meanwhile.
        current = self._authorizations.get(authorization.external_id)
        if current is not None and current.refunded_cents > authorization.refunded_cents:
            authorization = replace(authorization, refunded_cents=current.refunded_cents)
        self._authorizations[authorization.external_id] = authorization

    def save_authorization(self, authorization: PaymentAuthorization) -> PaymentAuthorization:
        with self._lock:
            self._store_authorization(authorization)
            return self._authorizations[authorization.external_id]

    def get_authorization(self, external_id: str) -> PaymentAuthorization | None:
        with self._lock:
            return self._authorizations.get(external_id)

    def find_authorization_by_key(self, idempotency_key: str) -> PaymentAuthorization | None:
        """Latest non-failed authorization recorded under *idempotency_key*."""
        with self._lock:
            for auth in reversed(list(self._authorizations.values())):
                if auth.idempotency_key == idempotency_key and auth.status != AuthorizationStatus.FAILED:
                    return auth
            return None

    def count_failed_authorizations(self, idempotency_key: str) -> int:
        with self._lock:
            return sum(
                1 for auth in self._authorizations.values()
                if auth.idempotency_key == idempotency_key
                and auth.status == AuthorizationStatus.FAILED
            )

    def refund_recorded(self, idempotency_key: str) -> bool:
        with self._lock:
            return idempotency_key in self._refund_keys

    def record_refund(
        self, external_id: str, amount_cents: int, *, idempotency_key: str
    ) -> PaymentAuthorization:
        with self._lock:
            auth = self._authorizations.get(external_id)
            if auth is None:
                raise KeyError(f"Unknown payment authorization: {external_id}")
            if idempotency_key in self._refund_keys:
                return auth
            self._refund_keys.add(idempotency_key)
            refunded = auth.refunded_cents + amount_cents
            updated = replace(
                auth,
                refunded_cents=refunded,
                status=(
                    AuthorizationStatus.REFUNDED
                    if refunded >= auth.captured_cents
                    else auth.status
                ),
            )
            self._authorizations[external_id] = updated
            return updated

    def apply_provider_status(
        self, external_id: str, status: str, *, event_id: str | None = None
    ) -> bool:
        new_status = AuthorizationStatus(status)
        with self._lock:
            if event_id is not None:
                if event_id in self._provider_events:
                    return False
                self._provider_events.add(event_id)
            auth = self._authorizations.get(external_id)
            if auth is None:
                return False
            if AUTHORIZATION_STATUS_RANK[new_status] <= AUTHORIZATION_STATUS_RANK[auth.status]:
                return False
            self._authorizations[external_id] = replace(auth, status=new_status)
            return True

    # -- pending modifications -----------------------------------------

    def save_pending_modification(self, modification: PendingModification) -> None:
        with self._lock:
            self._modifications[modification.id] = modification

    def get_pending_modification(self, modification_id: str) -> PendingModification | None:
        with self._lock:
            return self._modifications.get(modification_id)

    def pending_modifications_for(self, reservation_id: str) -> list[PendingModification]:
        with self._lock:
            return [m for m in self._modifications.values() if m.reservation_id == reservation_id]

    def delete_pending_modification(self, modification_id: str) -> bool:
        with self._lock:
            return self._modifications.pop(modification_id, None) is not None

    def expired_pending_modifications(self, now: datetime) -> list[PendingModification]:
        with self._lock:
            return [m for m in self._modifications.values() if m.expires_at <= now]

    # -- settlements ----------------------------------------------------

    def get_settlement(self, settlement_id: str) -> Settlement | None:
        with self._lock:
            return self._settlements.get(settlement_id)

    def due_settlements(self, now: datetime, limit: int = 50) -> list[Settlement]:
        with self._lock:
            due = [
                s for s in self._settlements.values()
                if s.status == SettlementStatus.PENDING
                and (s.next_attempt_at is None or s.next_attempt_at <= now)
            ]
        due.sort(key=lambda s: (s.next_attempt_at or now, s.id))
        return due[:limit]

    def claim_due_settlements(
        self, now: datetime, *, lease: timedelta, limit: int = 50
    ) -> list[Settlement]:
        with self._lock:
            due = self.due_settlements(now, limit=limit)
            for settlement in due:
                self._settlements[settlement.id] = replace(
                    settlement, next_attempt_at=now + lease
                )
        return due

    def resolve_settlement(self, settlement_id: str) -> None:
        with self._lock:
            settlement = self._settlements.get(settlement_id)
            if settlement is not None:
                self._settlements[settlement_id] = replace(
                    settlement, status=SettlementStatus.SETTLED, next_attempt_at=None
                )

    def reschedule_settlement(
        self,
        settlement_id: str,
        *,
        error: str,
        next_attempt_at: datetime | None,
        give_up: bool,
    ) -> Settlement:
        with self._lock:
            settlement = self._settlements[settlement_id]
            updated = replace(
                settlement,
                attempts=settlement.attempts + 1,
                last_error=error,
                next_attempt_at=None if give_up else next_attempt_at,
                status=SettlementStatus.NEEDS_MANUAL if give_up else SettlementStatus.PENDING,
            )
            self._settlements[settlement_id] = updated
            return updated

    def subscribe(self, callback: Subscriber) -> None:
        self._feed.subscribe(callback)
