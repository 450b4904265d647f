"""Room availability endpoints for the booking flow.

- GET /rooms/available: room types with free rooms for a stay, priced.
- GET /rooms/{room_id}/availability: whether one room is free for a stay.

Both answer at the moment of the call; only creating a reservation holds a
room. No actor is required, matching the public room search.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from hotelbook.api.dependencies import Services, get_services
from hotelbook.domain.errors import InvalidStayError, RoomNotFoundError
from hotelbook.domain.models import StayRange
from hotelbook.domain.search import RoomSearch, search_room_types

router = APIRouter(prefix="/rooms", tags=["rooms"])


def _stay(check_in: date, check_out: date) -> StayRange:
    try:
        return StayRange(check_in, check_out)
    except InvalidStayError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/available")
def available_room_types(
    check_in: date = Query(...),
    check_out: date = Query(...),
    guest_count: int = Query(default=1, ge=1),
    accessible: bool | None = Query(default=None),
    pet_friendly: bool | None = Query(default=None),
    non_smoking: bool | None = Query(default=None),
    min_rate_cents: int | None = Query(default=None, ge=0),
    max_rate_cents: int | None = Query(default=None, ge=0),
    services: Services = Depends(get_services),
) -> dict:
    criteria = RoomSearch(
        stay=_stay(check_in, check_out),
        guest_count=guest_count,
        accessible=accessible,
        pet_friendly=pet_friendly,
        non_smoking=non_smoking,
        min_rate_cents=min_rate_cents,
        max_rate_cents=max_rate_cents,
    )
    offers = search_room_types(services.catalog, services.availability, criteria)
    return {"room_types": [offer.to_dict() for offer in offers]}


@router.get("/{room_id}/availability")
def room_availability(
    room_id: str = Path(...),
    check_in: date = Query(...),
    check_out: date = Query(...),
    services: Services = Depends(get_services),
) -> dict:
    stay = _stay(check_in, check_out)
    try:
        services.catalog.get_room(room_id)
    except RoomNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "room_id": room_id,
        **stay.to_dict(),
        "available": services.availability.is_available(room_id, stay),
    }
