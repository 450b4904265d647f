"""Reservation endpoints for guests and front-desk employees.

Access rules:
- guests only see and act on their own reservations (404 otherwise);
- check-in and check-out are employee actions (403 for guests);
- check-in is only accepted on a day inside the stay, in the hotel's
  reference timezone.

All state changes go through ReservationLifecycle; this module only maps
requests to lifecycle calls and domain errors to HTTP status codes.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field

from hotelbook.api.actor import Actor, get_actor, require_employee
from hotelbook.api.dependencies import Services, get_services
from hotelbook.domain.errors import (
    IllegalTransitionError,
    InvalidStayError,
    ModificationNotFoundError,
    PaymentDeclinedError,
    ReservationNotFoundError,
    RoomConflictError,
    RoomNotFoundError,
    StaleReservationError,
)
from hotelbook.domain.models import Reservation, ReservationStatus, StayRange
from hotelbook.infra.time import local_today
from hotelbook.observability.correlation import get_correlation_id
from hotelbook.observability.logging import get_logger
from hotelbook.observability.redaction import safe_log_context


class CreateReservationRequest(BaseModel):
    room_id: str
    check_in: date
    check_out: date
    guest_count: int = Field(ge=1)
    payment_method: str | None = None
    reservation_id: str | None = None
    # Employees book on behalf of a guest; ignored for guest callers.
    guest_id: str | None = None


class ModifyReservationRequest(BaseModel):
    room_id: str | None = None
    check_in: date | None = None
    check_out: date | None = None
    guest_count: int | None = Field(default=None, ge=1)


class ConfirmModificationRequest(BaseModel):
    modification_id: str
    payment_method: str | None = None


class AbandonModificationRequest(BaseModel):
    modification_id: str


router = APIRouter(prefix="/reservations", tags=["reservations"])

logger = get_logger(__name__)


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Translate lifecycle exceptions into HTTP responses."""
    try:
        yield
    except (ReservationNotFoundError, ModificationNotFoundError, RoomNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidStayError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RoomConflictError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "room_conflict", "message": str(exc)},
        ) from exc
    except IllegalTransitionError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "illegal_transition", "message": str(exc), "status": exc.status},
        ) from exc
    except StaleReservationError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "stale_reservation", "message": str(exc)},
        ) from exc
    except PaymentDeclinedError as exc:
        raise HTTPException(
            status_code=402,
            detail={"code": "payment_declined", "reason": exc.reason_code},
        ) from exc


def _load_for(services: Services, actor: Actor, reservation_id: str) -> Reservation:
    """Reservation visible to *actor*; 404 for other guests' bookings."""
    try:
        reservation = services.lifecycle.get(reservation_id)
    except ReservationNotFoundError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    if not actor.is_employee and reservation.guest_id != actor.id:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return reservation


def _log_action(action: str, actor: Actor, reservation: Reservation) -> None:
    logger.info(
        "reservation action",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                action=action,
                actor_role=actor.role,
                reservation_id=reservation.id,
                status=reservation.status.value,
            )
        },
    )


@router.post("", status_code=201)
def create_reservation(
    req: CreateReservationRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    if actor.is_employee:
        if not req.guest_id:
            raise HTTPException(status_code=400, detail="guest_id is required")
        guest_id = req.guest_id
    else:
        guest_id = actor.id

    with _domain_errors():
        stay = StayRange(req.check_in, req.check_out)
        reservation = services.lifecycle.create(
            guest_id,
            req.room_id,
            stay,
            req.guest_count,
            payment_method=req.payment_method,
            reservation_id=req.reservation_id,
        )
    # A replayed reservation_id must not leak another guest's booking.
    if not actor.is_employee and reservation.guest_id != actor.id:
        raise HTTPException(status_code=409, detail="reservation_id already used")
    _log_action("create", actor, reservation)
    return reservation.to_dict()


@router.get("")
def list_reservations(
    guest_id: str | None = Query(None),
    room_id: str | None = Query(None),
    status: ReservationStatus | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    if not actor.is_employee:
        guest_id = actor.id
    found = services.lifecycle.search(
        guest_id=guest_id,
        room_id=room_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return {"reservations": [r.to_dict() for r in found], "limit": limit, "offset": offset}


@router.get("/{reservation_id}")
def get_reservation(
    reservation_id: str = Path(..., description="Reservation ID"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    return _load_for(services, actor, reservation_id).to_dict()


@router.post("/{reservation_id}/actions/modify")
def modify_reservation(
    req: ModifyReservationRequest,
    reservation_id: str = Path(..., description="Reservation ID"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    current = _load_for(services, actor, reservation_id)
    with _domain_errors():
        stay = None
        if req.check_in is not None or req.check_out is not None:
            stay = StayRange(req.check_in or current.check_in, req.check_out or current.check_out)
        result = services.lifecycle.modify(
            reservation_id,
            room_id=req.room_id,
            stay=stay,
            guest_count=req.guest_count,
            actor=actor.id,
        )
    _log_action("modify", actor, result.reservation)
    return result.to_dict()


@router.post("/{reservation_id}/actions/confirm-modification")
def confirm_modification(
    req: ConfirmModificationRequest,
    reservation_id: str = Path(..., description="Reservation ID"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    _load_for(services, actor, reservation_id)
    with _domain_errors():
        result = services.lifecycle.confirm_modification(
            reservation_id, req.modification_id, payment_method=req.payment_method
        )
    _log_action("confirm_modification", actor, result.reservation)
    return result.to_dict()


@router.post("/{reservation_id}/actions/abandon-modification")
def abandon_modification(
    req: AbandonModificationRequest,
    reservation_id: str = Path(..., description="Reservation ID"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    _load_for(services, actor, reservation_id)
    with _domain_errors():
        reservation = services.lifecycle.abandon_modification(reservation_id, req.modification_id)
    return reservation.to_dict()


@router.post("/{reservation_id}/actions/cancel")
def cancel_reservation(
    reservation_id: str = Path(..., description="Reservation ID"),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> dict:
    _load_for(services, actor, reservation_id)
    with _domain_errors():
        reservation = services.lifecycle.cancel(reservation_id)
    _log_action("cancel", actor, reservation)
    return reservation.to_dict()


@router.post("/{reservation_id}/actions/check-in")
def check_in_reservation(
    reservation_id: str = Path(..., description="Reservation ID"),
    actor: Actor = Depends(require_employee),
    services: Services = Depends(get_services),
) -> dict:
    current = _load_for(services, actor, reservation_id)
    now = services.lifecycle.now()
    today = local_today(now, services.settings.timezone)
    if current.status == ReservationStatus.CONFIRMED and not (
        current.check_in <= today < current.check_out
    ):
        raise HTTPException(
            status_code=409,
            detail={"code": "outside_stay_dates", "today": today.isoformat()},
        )
    with _domain_errors():
        reservation = services.lifecycle.check_in(reservation_id, now=now)
    _log_action("check_in", actor, reservation)
    return reservation.to_dict()


@router.post("/{reservation_id}/actions/check-out")
def check_out_reservation(
    reservation_id: str = Path(..., description="Reservation ID"),
    actor: Actor = Depends(require_employee),
    services: Services = Depends(get_services),
) -> dict:
    _load_for(services, actor, reservation_id)
    with _domain_errors():
        reservation = services.lifecycle.check_out(reservation_id)
    _log_action("check_out", actor, reservation)
    return reservation.to_dict()
