"""Room search for the booking flow.

Finds the rooms that are free for a stay, filters them by room attributes
(accessible, pet friendly, non smoking) and by room-type attributes (rate
bounds, capacity), and groups the survivors by room type with the price of
the stay. The result is advisory: the room is only held once ``create``
claims it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from hotelbook.catalog import Catalog
from hotelbook.domain.availability import AvailabilityIndex
from hotelbook.domain.errors import InvalidStayError
from hotelbook.domain.models import Room, RoomType, StayRange
from hotelbook.domain.pricing import price_stay


@dataclass(frozen=True)
class RoomSearch:
    stay: StayRange
    guest_count: int = 1
    accessible: bool | None = None
    pet_friendly: bool | None = None
    non_smoking: bool | None = None
    min_rate_cents: int | None = None
    max_rate_cents: int | None = None

    def __post_init__(self) -> None:
        if self.guest_count < 1:
            raise InvalidStayError("guest_count must be at least 1")

    def room_matches(self, room: Room) -> bool:
        return (
            (self.accessible is None or room.accessible == self.accessible)
            and (self.pet_friendly is None or room.pet_friendly == self.pet_friendly)
            and (self.non_smoking is None or room.non_smoking == self.non_smoking)
        )

    def room_type_matches(self, room_type: RoomType) -> bool:
        rate = room_type.nightly_rate_cents
        return (
            room_type.capacity >= self.guest_count
            and (self.min_rate_cents is None or rate >= self.min_rate_cents)
            and (self.max_rate_cents is None or rate <= self.max_rate_cents)
        )


@dataclass(frozen=True)
class RoomTypeOffer:
    room_type: RoomType
    rooms: tuple[Room, ...]
    total_cents: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_type_id": self.room_type.id,
            "nightly_rate_cents": self.room_type.nightly_rate_cents,
            "capacity": self.room_type.capacity,
            "total_cents": self.total_cents,
            "room_ids": [room.id for room in self.rooms],
        }


def search_room_types(
    catalog: Catalog, availability: AvailabilityIndex, criteria: RoomSearch
) -> list[RoomTypeOffer]:
    """Room types with at least one free matching room, cheapest first."""
    occupied = availability.occupied_rooms(criteria.stay)
    free_by_type: dict[str, list[Room]] = {}
    for room in catalog.list_rooms():
        if room.id in occupied or not criteria.room_matches(room):
            continue
        free_by_type.setdefault(room.room_type_id, []).append(room)

    offers = [
        RoomTypeOffer(
            room_type=room_type,
            rooms=tuple(free_by_type[room_type.id]),
            total_cents=price_stay(room_type, criteria.stay, criteria.guest_count),
        )
        for room_type in catalog.list_room_types()
        if room_type.id in free_by_type and criteria.room_type_matches(room_type)
    ]
    offers.sort(key=lambda o: (o.total_cents, o.room_type.id))
    return offers
