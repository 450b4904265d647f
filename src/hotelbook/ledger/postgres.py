"""PostgreSQL ledger - raw SQL with psycopg2 (no ORM).

Every commit runs in one transaction: reservation row (version-guarded),
authorization upserts, owed settlements, pending-modification cleanup and
the ``outbox_events`` row. In-process subscribers are notified after the
transaction commits; out-of-process consumers read ``outbox_events``.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from psycopg2.extensions import cursor as PgCursor

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
    StayRange,
)
from hotelbook.infra.db import ConnectionFactory, fetchall, fetchone, txn
from hotelbook.ledger.base import ChangeFeed, Subscriber

_RESERVATION_COLUMNS = """
    r.id, r.guest_id, r.room_id, r.check_in, r.check_out, r.guest_count,
    r.status, r.total_cents, r.currency, r.payment_ref, r.checked_in_at,
    r.version, r.created_at, r.updated_at,
    EXISTS (
        SELECT 1 FROM settlements s
        WHERE s.reservation_id = r.id AND s.status <> 'settled'
    ) AS refund_pending
"""

_AUTHORIZATION_COLUMNS = """
    external_id, reservation_id, amount_cents, currency, status,
    idempotency_key, captured_cents, refunded_cents
"""

_MODIFICATION_COLUMNS = """
    id, reservation_id, base_version, room_id, check_in, check_out,
    guest_count, new_total_cents, delta_cents, expires_at
"""

_SETTLEMENT_COLUMNS = """
    id, reservation_id, authorization_id, amount_cents, status,
    attempts, last_error, next_attempt_at
"""


def _row_to_reservation(row: tuple[Any, ...]) -> Reservation:
    return Reservation(
        id=str(row[0]),
        guest_id=row[1],
        room_id=row[2],
        stay=StayRange(row[3], row[4]),
        guest_count=row[5],
        status=ReservationStatus(row[6]),
        total_cents=row[7],
        currency=row[8],
        payment_ref=row[9],
        checked_in_at=row[10],
        version=row[11],
        created_at=row[12],
        updated_at=row[13],
        refund_pending=bool(row[14]),
    )


def _row_to_authorization(row: tuple[Any, ...]) -> PaymentAuthorization:
    return PaymentAuthorization(
        external_id=row[0],
        reservation_id=str(row[1]),
        amount_cents=row[2],
        currency=row[3],
        status=AuthorizationStatus(row[4]),
        idempotency_key=row[5],
        captured_cents=row[6],
        refunded_cents=row[7],
    )


def _row_to_modification(row: tuple[Any, ...]) -> PendingModification:
    return PendingModification(
        id=str(row[0]),
        reservation_id=str(row[1]),
        base_version=row[2],
        room_id=row[3],
        stay=StayRange(row[4], row[5]),
        guest_count=row[6],
        new_total_cents=row[7],
        delta_cents=row[8],
        expires_at=row[9],
    )


def _row_to_settlement(row: tuple[Any, ...]) -> Settlement:
    return Settlement(
        id=str(row[0]),
        reservation_id=str(row[1]),
        authorization_id=row[2],
        amount_cents=row[3],
        status=SettlementStatus(row[4]),
        attempts=row[5],
        last_error=row[6],
        next_attempt_at=row[7],
    )


def upsert_authorization(cur: PgCursor, auth: PaymentAuthorization) -> None:
    """Insert or overwrite an authorization row (keyed by external_id)."""
    cur.execute(
        """
        INSERT INTO payment_authorizations (
            external_id, reservation_id, amount_cents, currency, status,
            idempotency_key, captured_cents, refunded_cents
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (external_id) DO UPDATE
        SET status = EXCLUDED.status,
            captured_cents = EXCLUDED.captured_cents,
            refunded_cents = GREATEST(payment_authorizations.refunded_cents, EXCLUDED.refunded_cents),
            updated_at = now()
        """,
        (
            auth.external_id,
            auth.reservation_id,
            auth.amount_cents,
            auth.currency,
            auth.status.value,
            auth.idempotency_key,
            auth.captured_cents,
            auth.refunded_cents,
        ),
    )


def insert_settlement(cur: PgCursor, settlement: Settlement) -> None:
    cur.execute(
        """
        INSERT INTO settlements (
            id, reservation_id, authorization_id, amount_cents, status,
            attempts, last_error, next_attempt_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            settlement.id,
            settlement.reservation_id,
            settlement.authorization_id,
            settlement.amount_cents,
            settlement.status.value,
            settlement.attempts,
            settlement.last_error,
            settlement.next_attempt_at,
        ),
    )


def emit_event(cur: PgCursor, event: LedgerEvent) -> int:
    """Append a change event to the outbox (payload carries no PII)."""
    cur.execute(
        """
        INSERT INTO outbox_events (
            event_type, aggregate_type, aggregate_id, payload, correlation_id
        )
        VALUES (%s, 'reservation', %s, %s::jsonb, %s)
        RETURNING id
        """,
        (
            event.event_type,
            event.reservation_id,
            json.dumps(event.payload, default=str),
            event.correlation_id,
        ),
    )
    return cur.fetchone()[0]


class PostgresLedger:
    def __init__(self, conn_factory: ConnectionFactory | None = None) -> None:
        self._conn_factory = conn_factory
        self._feed = ChangeFeed()

    def _load(self, cur: PgCursor, reservation_id: str) -> Reservation:
        row = fetchone(
            cur,
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations r WHERE r.id = %s",
            (reservation_id,),
        )
        if row is None:
            raise ReservationNotFoundError(f"Reservation not found: {reservation_id}")
        return _row_to_reservation(row)

    def insert_reservation(
        self,
        reservation: Reservation,
        *,
        authorization: PaymentAuthorization | None,
        event: LedgerEvent,
    ) -> Reservation:
        with txn(self._conn_factory) as cur:
            cur.execute(
                """
                INSERT INTO reservations (
                    id, guest_id, room_id, check_in, check_out, guest_count,
                    status, total_cents, currency, payment_ref, version
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
                ON CONFLICT (id) DO NOTHING
                RETURNING id
                """,
                (
                    reservation.id,
                    reservation.guest_id,
                    reservation.room_id,
                    reservation.check_in,
                    reservation.check_out,
                    reservation.guest_count,
                    reservation.status.value,
                    reservation.total_cents,
                    reservation.currency,
                    reservation.payment_ref,
                ),
            )
            if cur.fetchone() is None:
                raise StaleReservationError(reservation.id, 0)
            if authorization is not None:
                upsert_authorization(cur, authorization)
            emit_event(cur, event)
            stored = self._load(cur, reservation.id)
        self._feed.publish(event)
        return stored

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
        with txn(self._conn_factory) as cur:
            cur.execute(
                """
                UPDATE reservations
                SET room_id = %s,
                    check_in = %s,
                    check_out = %s,
                    guest_count = %s,
                    status = %s,
                    total_cents = %s,
                    payment_ref = %s,
                    checked_in_at = %s,
                    version = version + 1,
                    updated_at = now()
                WHERE id = %s AND version = %s
                RETURNING id
                """,
                (
                    reservation.room_id,
                    reservation.check_in,
                    reservation.check_out,
                    reservation.guest_count,
                    reservation.status.value,
                    reservation.total_cents,
                    reservation.payment_ref,
                    reservation.checked_in_at,
                    reservation.id,
                    expected_version,
                ),
            )
            if cur.fetchone() is None:
                # Distinguish a missing row from a lost race.
                self._load(cur, reservation.id)
                raise StaleReservationError(reservation.id, expected_version)

            for auth in authorizations:
                upsert_authorization(cur, auth)
            for settlement in settlements:
                insert_settlement(cur, settlement)
            if drop_modification_id is not None:
                cur.execute(
                    "DELETE FROM pending_modifications WHERE id = %s",
                    (drop_modification_id,),
                )
            emit_event(cur, event)
            stored = self._load(cur, reservation.id)
        self._feed.publish(event)
        return stored

    def get(self, reservation_id: str) -> Reservation:
        with txn(self._conn_factory) as cur:
            return self._load(cur, reservation_id)

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
        conditions: list[str] = []
        params: list[Any] = []
        if guest_id is not None:
            conditions.append("r.guest_id = %s")
            params.append(guest_id)
        if room_id is not None:
            conditions.append("r.room_id = %s")
            params.append(room_id)
        if status is not None:
            conditions.append("r.status = %s")
            params.append(status.value)
        if date_from is not None:
            conditions.append("r.check_out > %s")
            params.append(date_from)
        if date_to is not None:
            conditions.append("r.check_in < %s")
            params.append(date_to)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                f"""
                SELECT {_RESERVATION_COLUMNS}
                FROM reservations r
                {where}
                ORDER BY r.check_in, r.id
                LIMIT %s OFFSET %s
                """,
                params,
            )
        return [_row_to_reservation(row) for row in rows]

    # -- authorizations -------------------------------------------------

    def save_authorization(self, authorization: PaymentAuthorization) -> PaymentAuthorization:
        with txn(self._conn_factory) as cur:
            upsert_authorization(cur, authorization)
        return authorization

    def get_authorization(self, external_id: str) -> PaymentAuthorization | None:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                f"SELECT {_AUTHORIZATION_COLUMNS} FROM payment_authorizations WHERE external_id = %s",
                (external_id,),
            )
        return _row_to_authorization(row) if row else None

    def find_authorization_by_key(self, idempotency_key: str) -> PaymentAuthorization | None:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                f"""
                SELECT {_AUTHORIZATION_COLUMNS} FROM payment_authorizations
                WHERE idempotency_key = %s AND status <> 'FAILED'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (idempotency_key,),
            )
        return _row_to_authorization(row) if row else None

    def count_failed_authorizations(self, idempotency_key: str) -> int:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                """
                SELECT count(*) FROM payment_authorizations
                WHERE idempotency_key = %s AND status = 'FAILED'
                """,
                (idempotency_key,),
            )
        return int(row[0]) if row else 0

    def refund_recorded(self, idempotency_key: str) -> bool:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                "SELECT 1 FROM payment_refunds WHERE idempotency_key = %s",
                (idempotency_key,),
            )
        return row is not None

    def record_refund(
        self, external_id: str, amount_cents: int, *, idempotency_key: str
    ) -> PaymentAuthorization:
        """Lock the authorization row, then add the refund once per key."""
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                f"""
                SELECT {_AUTHORIZATION_COLUMNS} FROM payment_authorizations
                WHERE external_id = %s
                FOR UPDATE
                """,
                (external_id,),
            )
            if row is None:
                raise KeyError(f"Unknown payment authorization: {external_id}")

            cur.execute(
                """
                INSERT INTO payment_refunds (idempotency_key, external_id, amount_cents)
                VALUES (%s, %s, %s)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING idempotency_key
                """,
                (idempotency_key, external_id, amount_cents),
            )
            if cur.fetchone() is None:
                return _row_to_authorization(row)

            row = fetchone(
                cur,
                f"""
                UPDATE payment_authorizations
                SET refunded_cents = refunded_cents + %s,
                    status = CASE
                        WHEN refunded_cents + %s >= captured_cents THEN 'REFUNDED'
                        ELSE status
                    END,
                    updated_at = now()
                WHERE external_id = %s
                RETURNING {_AUTHORIZATION_COLUMNS}
                """,
                (amount_cents, amount_cents, external_id),
            )
        return _row_to_authorization(row)

    def apply_provider_status(
        self, external_id: str, status: str, *, event_id: str | None = None
    ) -> bool:
        """Apply a webhook status; replays and backwards moves are no-ops."""
        new_status = AuthorizationStatus(status)
        with txn(self._conn_factory) as cur:
            if event_id is not None:
                cur.execute(
                    """
                    INSERT INTO provider_events (event_id)
                    VALUES (%s)
                    ON CONFLICT (event_id) DO NOTHING
                    RETURNING event_id
                    """,
                    (event_id,),
                )
                if cur.fetchone() is None:
                    return False

            row = fetchone(
                cur,
                """
                SELECT status FROM payment_authorizations
                WHERE external_id = %s
                FOR UPDATE
                """,
                (external_id,),
            )
            if row is None:
                return False
            current = AuthorizationStatus(row[0])
            if AUTHORIZATION_STATUS_RANK[new_status] <= AUTHORIZATION_STATUS_RANK[current]:
                return False
            cur.execute(
                """
                UPDATE payment_authorizations
                SET status = %s, updated_at = now()
                WHERE external_id = %s
                """,
                (new_status.value, external_id),
            )
        return True

    # -- pending modifications -----------------------------------------

    def save_pending_modification(self, modification: PendingModification) -> None:
        with txn(self._conn_factory) as cur:
            cur.execute(
                """
                INSERT INTO pending_modifications (
                    id, reservation_id, base_version, room_id, check_in,
                    check_out, guest_count, new_total_cents, delta_cents, expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    modification.id,
                    modification.reservation_id,
                    modification.base_version,
                    modification.room_id,
                    modification.stay.check_in,
                    modification.stay.check_out,
                    modification.guest_count,
                    modification.new_total_cents,
                    modification.delta_cents,
                    modification.expires_at,
                ),
            )

    def get_pending_modification(self, modification_id: str) -> PendingModification | None:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                f"SELECT {_MODIFICATION_COLUMNS} FROM pending_modifications WHERE id = %s",
                (modification_id,),
            )
        return _row_to_modification(row) if row else None

    def pending_modifications_for(self, reservation_id: str) -> list[PendingModification]:
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                f"""
                SELECT {_MODIFICATION_COLUMNS} FROM pending_modifications
                WHERE reservation_id = %s
                ORDER BY expires_at
                """,
                (reservation_id,),
            )
        return [_row_to_modification(row) for row in rows]

    def delete_pending_modification(self, modification_id: str) -> bool:
        with txn(self._conn_factory) as cur:
            cur.execute(
                "DELETE FROM pending_modifications WHERE id = %s RETURNING id",
                (modification_id,),
            )
            return cur.fetchone() is not None

    def expired_pending_modifications(self, now: datetime) -> list[PendingModification]:
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                f"""
                SELECT {_MODIFICATION_COLUMNS} FROM pending_modifications
                WHERE expires_at <= %s
                ORDER BY expires_at
                """,
                (now,),
            )
        return [_row_to_modification(row) for row in rows]

    # -- settlements ----------------------------------------------------

    def get_settlement(self, settlement_id: str) -> Settlement | None:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                f"SELECT {_SETTLEMENT_COLUMNS} FROM settlements WHERE id = %s",
                (settlement_id,),
            )
        return _row_to_settlement(row) if row else None

    def due_settlements(self, now: datetime, limit: int = 50) -> list[Settlement]:
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                f"""
                SELECT {_SETTLEMENT_COLUMNS} FROM settlements
                WHERE status = 'pending'
                  AND (next_attempt_at IS NULL OR next_attempt_at <= %s)
                ORDER BY next_attempt_at NULLS FIRST, id
                LIMIT %s
                """,
                (now, limit),
            )
        return [_row_to_settlement(row) for row in rows]

    def claim_due_settlements(
        self, now: datetime, *, lease: timedelta, limit: int = 50
    ) -> list[Settlement]:
        """Lease due rows; SKIP LOCKED keeps overlapping passes apart."""
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                f"""
                UPDATE settlements
                SET next_attempt_at = %s, updated_at = now()
                WHERE id IN (
                    SELECT id FROM settlements
                    WHERE status = 'pending'
                      AND (next_attempt_at IS NULL OR next_attempt_at <= %s)
                    ORDER BY next_attempt_at NULLS FIRST, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_SETTLEMENT_COLUMNS}
                """,
                (now + lease, now, limit),
            )
        return sorted((_row_to_settlement(row) for row in rows), key=lambda s: s.id)

    def resolve_settlement(self, settlement_id: str) -> None:
        with txn(self._conn_factory) as cur:
            cur.execute(
                """
                UPDATE settlements
                SET status = 'settled', next_attempt_at = NULL, updated_at = now()
                WHERE id = %s
                """,
                (settlement_id,),
            )

    def reschedule_settlement(
        self,
        settlement_id: str,
        *,
        error: str,
        next_attempt_at: datetime | None,
        give_up: bool,
    ) -> Settlement:
        status = SettlementStatus.NEEDS_MANUAL if give_up else SettlementStatus.PENDING
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                f"""
                UPDATE settlements
                SET attempts = attempts + 1,
                    last_error = %s,
                    next_attempt_at = %s,
                    status = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_SETTLEMENT_COLUMNS}
                """,
                (error, None if give_up else next_attempt_at, status.value, settlement_id),
            )
        if row is None:
            raise KeyError(settlement_id)
        return _row_to_settlement(row)

    def subscribe(self, callback: Subscriber) -> None:
        self._feed.subscribe(callback)
