"""Read-only room and room-type lookup.

The catalog is owned by another service; this module only reads it.
"""

from __future__ import annotations

from typing import Iterable, Protocol

from hotelbook.domain.errors import RoomNotFoundError
from hotelbook.domain.models import Room, RoomType
from hotelbook.infra.db import ConnectionFactory, fetchall, fetchone, txn


class Catalog(Protocol):
    def get_room(self, room_id: str) -> Room:
        """Raises RoomNotFoundError."""
        ...

    def get_room_type(self, room_type_id: str) -> RoomType:
        """Raises RoomNotFoundError."""
        ...

    def list_rooms(self) -> list[Room]: ...

    def list_room_types(self) -> list[RoomType]: ...


class InMemoryCatalog:
    def __init__(
        self,
        room_types: Iterable[RoomType] = (),
        rooms: Iterable[Room] = (),
    ) -> None:
        self._room_types = {rt.id: rt for rt in room_types}
        self._rooms = {r.id: r for r in rooms}

    def add_room_type(self, room_type: RoomType) -> None:
        self._room_types[room_type.id] = room_type

    def add_room(self, room: Room) -> None:
        self._rooms[room.id] = room

    def get_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(f"Room not found: {room_id}")
        return room

    def get_room_type(self, room_type_id: str) -> RoomType:
        room_type = self._room_types.get(room_type_id)
        if room_type is None:
            raise RoomNotFoundError(f"Room type not found: {room_type_id}")
        return room_type

    def list_rooms(self) -> list[Room]:
        return sorted(self._rooms.values(), key=lambda r: r.id)

    def list_room_types(self) -> list[RoomType]:
        return sorted(self._room_types.values(), key=lambda rt: rt.id)


class PostgresCatalog:
    def __init__(self, conn_factory: ConnectionFactory | None = None) -> None:
        self._conn_factory = conn_factory

    def get_room(self, room_id: str) -> Room:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                """
                SELECT id, room_type_id, accessible, pet_friendly, non_smoking
                FROM rooms
                WHERE id = %s
                """,
                (room_id,),
            )
        if row is None:
            raise RoomNotFoundError(f"Room not found: {room_id}")
        return Room(
            id=row[0],
            room_type_id=row[1],
            accessible=row[2],
            pet_friendly=row[3],
            non_smoking=row[4],
        )

    def get_room_type(self, room_type_id: str) -> RoomType:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                "SELECT id, nightly_rate_cents, capacity FROM room_types WHERE id = %s",
                (room_type_id,),
            )
        if row is None:
            raise RoomNotFoundError(f"Room type not found: {room_type_id}")
        return RoomType(id=row[0], nightly_rate_cents=row[1], capacity=row[2])

    def list_rooms(self) -> list[Room]:
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur,
                """
                SELECT id, room_type_id, accessible, pet_friendly, non_smoking
                FROM rooms
                ORDER BY id
                """,
            )
        return [Room(*row) for row in rows]

    def list_room_types(self) -> list[RoomType]:
        with txn(self._conn_factory) as cur:
            rows = fetchall(
                cur, "SELECT id, nightly_rate_cents, capacity FROM room_types ORDER BY id"
            )
        return [RoomType(*row) for row in rows]
