"""Room availability claims.

A reservation materializes as an exclusive claim on its room for its
half-open date range. Overlap formula:

    (new_check_in < existing_check_out) AND (new_check_out > existing_check_in)

so same-day turnover (checkout == next check-in) is not a conflict. Claims
owned by the same reservation never conflict with each other; that lets a
modification reserve its new range before releasing the old one even when
the two overlap.

Two implementations share one contract:
- InMemoryAvailabilityIndex: per-room ``threading.Lock`` around check-and-claim.
- PostgresAvailabilityIndex: ``room_claims`` table with an EXCLUDE USING gist
  constraint; the database linearizes concurrent inserts.

Neither holds its lock beyond the claim itself. Payment calls happen after
``reserve`` returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from psycopg2 import errors as pg_errors

from hotelbook.domain.errors import RoomConflictError
from hotelbook.domain.models import StayRange
from hotelbook.infra.db import ConnectionFactory, fetchall, fetchone, txn
from hotelbook.infra.locks import KeyedLocks
from hotelbook.observability.redaction import safe_log_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claim:
    room_id: str
    reservation_id: str
    stay: StayRange


class AvailabilityIndex(Protocol):
    def reserve(self, room_id: str, stay: StayRange, reservation_id: str) -> None:
        """Claim *stay* on *room_id* or raise RoomConflictError (no state change)."""
        ...

    def release(self, room_id: str, stay: StayRange, reservation_id: str) -> None:
        """Drop exactly this claim; no-op if it is not held."""
        ...

    def claims(self, room_id: str) -> list[Claim]:
        ...

    def is_available(
        self, room_id: str, stay: StayRange, *, ignore_reservation_id: str | None = None
    ) -> bool:
        """True when no claim of another reservation overlaps *stay*.

        A point-in-time answer; only ``reserve`` guarantees the room.
        """
        ...

    def occupied_rooms(self, stay: StayRange) -> set[str]:
        """Rooms with at least one claim overlapping *stay*."""
        ...


def _log_conflict(room_id: str, stay: StayRange, reservation_id: str, conflicting: str | None) -> None:
    logger.warning(
        "room claim conflict",
        extra={
            "extra_fields": safe_log_context(
                room_id=room_id,
                reservation_id=reservation_id,
                requested_check_in=stay.check_in,
                requested_check_out=stay.check_out,
                conflicting_reservation_id=conflicting,
            )
        },
    )


class InMemoryAvailabilityIndex:
    """Process-local index; the per-room lock makes check-and-claim atomic."""

    def __init__(self) -> None:
        self._locks = KeyedLocks()
        self._claims: dict[str, list[Claim]] = {}

    def reserve(self, room_id: str, stay: StayRange, reservation_id: str) -> None:
        with self._locks.hold(room_id):
            held = self._claims.setdefault(room_id, [])
            for claim in held:
                if claim.reservation_id == reservation_id:
                    continue
                if claim.stay.overlaps(stay):
                    _log_conflict(room_id, stay, reservation_id, claim.reservation_id)
                    raise RoomConflictError(
                        room_id,
                        stay.check_in,
                        stay.check_out,
                        conflicting_reservation_id=claim.reservation_id,
                    )
            new_claim = Claim(room_id, reservation_id, stay)
            if new_claim not in held:
                held.append(new_claim)

    def release(self, room_id: str, stay: StayRange, reservation_id: str) -> None:
        with self._locks.hold(room_id):
            held = self._claims.get(room_id, [])
            target = Claim(room_id, reservation_id, stay)
            if target in held:
                held.remove(target)

    def claims(self, room_id: str) -> list[Claim]:
        with self._locks.hold(room_id):
            return sorted(self._claims.get(room_id, []), key=lambda c: c.stay.check_in)

    def is_available(
        self, room_id: str, stay: StayRange, *, ignore_reservation_id: str | None = None
    ) -> bool:
        with self._locks.hold(room_id):
            return not any(
                claim.stay.overlaps(stay)
                for claim in self._claims.get(room_id, [])
                if claim.reservation_id != ignore_reservation_id
            )

    def occupied_rooms(self, stay: StayRange) -> set[str]:
        return {
            room_id for room_id in list(self._claims)
            if not self.is_available(room_id, stay)
        }


class PostgresAvailabilityIndex:
    """Claims stored in ``room_claims``; see migration 001 for the constraint.

    The exclusion constraint
    ``EXCLUDE USING gist (room_id WITH =, daterange(check_in, check_out, '[)') WITH &&,
    reservation_id WITH <>)`` rejects the losing insert of two concurrent
    overlapping claims, so no explicit row lock is needed.
    """

    def __init__(self, conn_factory: ConnectionFactory | None = None) -> None:
        self._conn_factory = conn_factory

    def reserve(self, room_id: str, stay: StayRange, reservation_id: str) -> None:
        try:
            with txn(self._conn_factory) as cur:
                cur.execute(
                    """
                    INSERT INTO room_claims (room_id, reservation_id, check_in, check_out)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (room_id, reservation_id, check_in, check_out) DO NOTHING
                    """,
                    (room_id, reservation_id, stay.check_in, stay.check_out),
                )
        except pg_errors.ExclusionViolation as exc:
            conflicting = self._find_conflicting(room_id, stay, reservation_id)
            _log_conflict(room_id, stay, reservation_id, conflicting)
            raise RoomConflictError(
                room_id,
                stay.check_in,
                stay.check_out,
                conflicting_reservation_id=conflicting,
            ) from exc

    def _find_conflicting(self, room_id: str, stay: StayRange, reservation_id: str) -> str | None:
        # Best effort, only for the error payload; the winner may already be gone.
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                """
                SELECT reservation_id FROM room_claims
                WHERE room_id = %s AND reservation_id <> %s
                  AND check_in < %s AND check_out > %s
                ORDER BY check_in
                LIMIT 1
                """,
                (room_id, reservation_id, stay.check_out, stay.check_in),
            )
        return str(row[0]) if row else None

    def release(self, room_id: str, stay: StayRange, reservation_id: str) -> None:
        with txn(self._conn_factory) as cur:
            cur.execute(
                """
                DELETE FROM room_claims
                WHERE room_id = %s AND reservation_id = %s
                  AND check_in = %s AND check_out = %s
                """,
                (room_id, reservation_id, stay.check_in, stay.check_out),
            )

    def claims(self, room_id: str) -> list[Claim]:
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                """
                SELECT room_id, reservation_id, check_in, check_out
                FROM room_claims
                WHERE room_id = %s
                ORDER BY check_in
                """,
                (room_id,),
            )
        return [Claim(r[0], str(r[1]), StayRange(r[2], r[3])) for r in rows]

    def is_available(
        self, room_id: str, stay: StayRange, *, ignore_reservation_id: str | None = None
    ) -> bool:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                """
                SELECT EXISTS (
                    SELECT 1 FROM room_claims
                    WHERE room_id = %s
                      AND reservation_id IS DISTINCT FROM %s
                      AND check_in < %s AND check_out > %s
                )
                """,
                (room_id, ignore_reservation_id, stay.check_out, stay.check_in),
            )
        return not row[0]

    def occupied_rooms(self, stay: StayRange) -> set[str]:
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                """
                SELECT DISTINCT room_id FROM room_claims
                WHERE check_in < %s AND check_out > %s
                """,
                (stay.check_out, stay.check_in),
            )
        return {r[0] for r in rows}
