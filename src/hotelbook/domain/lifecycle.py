"""Reservation state machine.

    CONFIRMED ──check_in──▶ CHECKED_IN ──check_out──▶ COMPLETED
        │  ▲
        │  └─ modify (new terms, same status)
        ├──cancel (outside refund window)──▶ CANCELLED
        └──cancel (inside refund window)───▶ REFUNDED

Ordering rules every transition follows:
- availability is claimed before any money moves;
- a transition that is not allowed raises before any side effect;
- every state change reaches the ledger as one ``commit`` guarded by the
  reservation version, together with the authorizations and settlements it
  implies;
- refunds owed by a committed change are recorded as settlements first and
  attempted afterwards, so a provider failure never rolls back the change.

Transitions of one reservation are serialized in-process by a keyed lock;
across processes the ledger's version check rejects the loser, and the
lifecycle undoes any claim or payment it made before re-raising.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Literal

from hotelbook.catalog import Catalog
from hotelbook.domain.availability import AvailabilityIndex
from hotelbook.domain.cancellation import CancellationPolicy
from hotelbook.domain.errors import (
    IllegalTransitionError,
    InvalidStayError,
    ModificationNotFoundError,
    PaymentDeclinedError,
    PaymentRefundError,
    ReservationNotFoundError,
    StaleReservationError,
)
from hotelbook.domain.models import (
    AuthorizationStatus,
    LedgerEvent,
    PaymentAuthorization,
    PendingModification,
    Reservation,
    ReservationStatus,
    RoomType,
    Settlement,
    StayRange,
)
from hotelbook.domain.pricing import price_stay
from hotelbook.domain.settlement import SettlementWorker
from hotelbook.infra.locks import KeyedLocks
from hotelbook.infra.settings import Settings
from hotelbook.infra.time import require_aware, utc_now
from hotelbook.ledger.base import ReservationLedger
from hotelbook.observability.correlation import get_correlation_id
from hotelbook.observability.redaction import safe_log_context
from hotelbook.payments.coordinator import PaymentCoordinator

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.CONFIRMED: frozenset(
        {
            ReservationStatus.CONFIRMED,
            ReservationStatus.CHECKED_IN,
            ReservationStatus.CANCELLED,
            ReservationStatus.REFUNDED,
        }
    ),
    ReservationStatus.CHECKED_IN: frozenset({ReservationStatus.COMPLETED}),
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class ModificationResult:
    """Outcome of ``modify`` or ``confirm_modification``.

    ``payment_required`` means nothing was committed: the new claim is held
    under ``modification_id`` until the follow-up payment is confirmed,
    abandoned, or the quote expires.
    """

    outcome: Literal["committed", "payment_required", "unchanged"]
    reservation: Reservation
    delta_cents: int
    new_total_cents: int
    modification_id: str | None = None
    expires_at: datetime | None = None

    @property
    def refund_pending(self) -> bool:
        return self.reservation.refund_pending

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "reservation": self.reservation.to_dict(),
            "delta_cents": self.delta_cents,
            "new_total_cents": self.new_total_cents,
            "modification_id": self.modification_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "refund_pending": self.refund_pending,
        }


def _new_id() -> str:
    return str(uuid.uuid4())


class ReservationLifecycle:
    def __init__(
        self,
        *,
        catalog: Catalog,
        availability: AvailabilityIndex,
        payments: PaymentCoordinator,
        ledger: ReservationLedger,
        settings: Settings | None = None,
        policy: CancellationPolicy | None = None,
        settlements: SettlementWorker | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._catalog = catalog
        self._availability = availability
        self._payments = payments
        self._ledger = ledger
        self._settings = settings or Settings()
        self._policy = policy or CancellationPolicy(
            refund_window_hours=self._settings.refund_window_hours,
            timezone=self._settings.timezone,
        )
        self._settlements = settlements or SettlementWorker(
            ledger, payments, self._settings, clock=clock
        )
        self._clock = clock
        self._new_id = id_factory
        self._locks = KeyedLocks()

    @property
    def policy(self) -> CancellationPolicy:
        return self._policy

    def now(self) -> datetime:
        """Server reference time used for every time-dependent rule."""
        return self._clock()

    # -- helpers --------------------------------------------------------

    def _now(self, now: datetime | None = None) -> datetime:
        return require_aware(now) if now is not None else self._clock()

    def _guard(self, reservation: Reservation, target: ReservationStatus, action: str) -> None:
        if not can_transition(reservation.status, target):
            raise IllegalTransitionError(reservation.id, reservation.status.value, action)

    def _event(self, event_type: str, reservation_id: str, **payload: Any) -> LedgerEvent:
        return LedgerEvent(
            event_type=event_type,
            reservation_id=reservation_id,
            payload=payload,
            correlation_id=get_correlation_id() or None,
        )

    def _priced(self, room_id: str, stay: StayRange, guest_count: int) -> tuple[RoomType, int]:
        room = self._catalog.get_room(room_id)
        room_type = self._catalog.get_room_type(room.room_type_id)
        if guest_count < 1:
            raise InvalidStayError("guest_count must be at least 1")
        if guest_count > room_type.capacity:
            raise InvalidStayError(
                f"guest_count {guest_count} exceeds capacity {room_type.capacity} of room {room_id}"
            )
        return room_type, price_stay(room_type, stay, guest_count)

    def _settlement(self, reservation_id: str, authorization_id: str, amount_cents: int, now: datetime) -> Settlement:
        return Settlement(
            id=self._new_id(),
            reservation_id=reservation_id,
            authorization_id=authorization_id,
            amount_cents=amount_cents,
            next_attempt_at=self._settlements.first_attempt_at(now),
        )

    def _undo_payment(self, auth: PaymentAuthorization) -> None:
        """Give back money taken for a transition that did not commit."""
        current = self._ledger.get_authorization(auth.external_id) or auth
        if current.status == AuthorizationStatus.AUTHORIZED:
            self._payments.void(current.external_id)
            return
        if current.net_captured_cents <= 0:
            return
        try:
            self._payments.refund(current.external_id, current.net_captured_cents)
        except PaymentRefundError:
            logger.error(
                "compensating refund failed",
                extra={
                    "extra_fields": safe_log_context(
                        reservation_id=current.reservation_id,
                        payment_ref=current.external_id,
                        amount_cents=current.net_captured_cents,
                    )
                },
            )

    def _release_quote_claim(self, modification: PendingModification, reservation: Reservation | None) -> None:
        # A quote may sit on the reservation's own claim (same room and range).
        if reservation is not None and (
            modification.room_id == reservation.room_id and modification.stay == reservation.stay
        ):
            return
        self._availability.release(modification.room_id, modification.stay, modification.reservation_id)

    def _discard_modification(self, modification: PendingModification, reservation: Reservation | None) -> None:
        self._release_quote_claim(modification, reservation)
        self._ledger.delete_pending_modification(modification.id)

    def _discard_all_modifications(self, reservation: Reservation) -> None:
        for modification in self._ledger.pending_modifications_for(reservation.id):
            self._discard_modification(modification, reservation)

    def _settle(self, settlement: Settlement | None, now: datetime) -> None:
        if settlement is not None:
            self._settlements.attempt(settlement, now=now)

    # -- reads ------------------------------------------------------------

    def get(self, reservation_id: str) -> Reservation:
        return self._ledger.get(reservation_id)

    def search(self, **filters: Any) -> list[Reservation]:
        return self._ledger.search(**filters)

    # -- transitions ------------------------------------------------------

    def create(
        self,
        guest_id: str,
        room_id: str,
        stay: StayRange,
        guest_count: int,
        *,
        payment_method: str | None = None,
        currency: str | None = None,
        reservation_id: str | None = None,
    ) -> Reservation:
        """Book *room_id* for *stay*; the stay is paid (captured) at booking.

        Passing the same ``reservation_id`` again returns the stored
        reservation instead of booking twice.

        Raises:
            InvalidStayError, RoomNotFoundError, RoomConflictError,
            PaymentDeclinedError.
        """
        room_type, total = self._priced(room_id, stay, guest_count)
        currency = (currency or self._settings.currency).lower()
        reservation_id = reservation_id or self._new_id()

        with self._locks.hold(reservation_id):
            try:
                return self._ledger.get(reservation_id)
            except ReservationNotFoundError:
                pass

            self._availability.reserve(room_id, stay, reservation_id)
            auth: PaymentAuthorization | None = None
            try:
                auth = self._payments.authorize(
                    reservation_id, total, currency, payment_method=payment_method
                )
                auth = self._payments.capture(auth.external_id)
                reservation = Reservation(
                    id=reservation_id,
                    guest_id=guest_id,
                    room_id=room_id,
                    stay=stay,
                    guest_count=guest_count,
                    status=ReservationStatus.CONFIRMED,
                    total_cents=total,
                    currency=currency,
                    payment_ref=auth.external_id,
                )
                stored = self._ledger.insert_reservation(
                    reservation,
                    authorization=auth,
                    event=self._event(
                        "reservation.created",
                        reservation_id,
                        room_id=room_id,
                        room_type_id=room_type.id,
                        check_in=stay.check_in,
                        check_out=stay.check_out,
                        total_cents=total,
                    ),
                )
            except Exception:
                self._availability.release(room_id, stay, reservation_id)
                if auth is not None:
                    self._undo_payment(auth)
                raise

        logger.info(
            "reservation created",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    room_id=room_id,
                    nights=stay.nights,
                    total_cents=total,
                )
            },
        )
        return stored

    def modify(
        self,
        reservation_id: str,
        *,
        room_id: str | None = None,
        stay: StayRange | None = None,
        guest_count: int | None = None,
        actor: str | None = None,
    ) -> ModificationResult:
        """Change room, dates or guest count of a CONFIRMED reservation.

        A price increase is not committed here: the new claim is held as a
        pending modification and the caller must ``confirm_modification``
        with the follow-up payment. A decrease commits immediately and owes
        the difference back to the guest.
        """
        with self._locks.hold(reservation_id):
            current = self._ledger.get(reservation_id)
            self._guard(current, ReservationStatus.CONFIRMED, "modify")

            new_room_id = room_id or current.room_id
            new_stay = stay or current.stay
            new_guests = guest_count if guest_count is not None else current.guest_count
            _, new_total = self._priced(new_room_id, new_stay, new_guests)
            delta = new_total - current.total_cents
            moved = new_room_id != current.room_id or new_stay != current.stay

            if not moved and new_guests == current.guest_count and delta == 0:
                return ModificationResult("unchanged", current, 0, new_total)

            # A new request supersedes any earlier upgrade quote.
            self._discard_all_modifications(current)

            if moved:
                self._availability.reserve(new_room_id, new_stay, reservation_id)

            now = self._now()
            settlement: Settlement | None = None
            try:
                if delta > 0:
                    modification = PendingModification(
                        id=self._new_id(),
                        reservation_id=reservation_id,
                        base_version=current.version,
                        room_id=new_room_id,
                        stay=new_stay,
                        guest_count=new_guests,
                        new_total_cents=new_total,
                        delta_cents=delta,
                        expires_at=now + timedelta(minutes=self._settings.modification_ttl_minutes),
                    )
                    self._ledger.save_pending_modification(modification)
                    logger.info(
                        "modification awaiting payment",
                        extra={
                            "extra_fields": safe_log_context(
                                reservation_id=reservation_id,
                                modification_id=modification.id,
                                delta_cents=delta,
                            )
                        },
                    )
                    return ModificationResult(
                        "payment_required",
                        current,
                        delta,
                        new_total,
                        modification_id=modification.id,
                        expires_at=modification.expires_at,
                    )

                if delta < 0 and current.payment_ref:
                    settlement = self._settlement(reservation_id, current.payment_ref, -delta, now)
                stored = self._ledger.commit(
                    current.evolve(
                        room_id=new_room_id,
                        stay=new_stay,
                        guest_count=new_guests,
                        total_cents=new_total,
                    ),
                    expected_version=current.version,
                    settlements=[settlement] if settlement else [],
                    event=self._event(
                        "reservation.modified",
                        reservation_id,
                        actor=actor,
                        room_id=new_room_id,
                        check_in=new_stay.check_in,
                        check_out=new_stay.check_out,
                        guest_count=new_guests,
                        total_cents=new_total,
                        delta_cents=delta,
                    ),
                )
            except Exception:
                if moved:
                    self._availability.release(new_room_id, new_stay, reservation_id)
                raise

            if moved:
                self._availability.release(current.room_id, current.stay, reservation_id)
            if settlement is not None:
                self._settle(settlement, now)
                stored = self._ledger.get(reservation_id)

        logger.info(
            "reservation modified",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    delta_cents=delta,
                    refund_pending=stored.refund_pending,
                )
            },
        )
        return ModificationResult("committed", stored, delta, new_total)

    def confirm_modification(
        self,
        reservation_id: str,
        modification_id: str,
        *,
        payment_method: str | None = None,
    ) -> ModificationResult:
        """Pay for an upgrade quote and commit it.

        A replacement authorization for the full new total is captured; the
        old authorization's captured funds are refunded through a settlement.
        On decline the quote and its claim are dropped and the reservation is
        left as it was.
        """
        with self._locks.hold(reservation_id):
            modification = self._ledger.get_pending_modification(modification_id)
            if modification is None or modification.reservation_id != reservation_id:
                raise ModificationNotFoundError(f"Modification not found: {modification_id}")

            current = self._ledger.get(reservation_id)
            now = self._now()
            if not can_transition(current.status, ReservationStatus.CONFIRMED):
                self._discard_modification(modification, current)
                raise IllegalTransitionError(reservation_id, current.status.value, "modify")
            if modification.expires_at <= now:
                self._discard_modification(modification, current)
                raise ModificationNotFoundError(f"Modification expired: {modification_id}")
            if current.version != modification.base_version:
                self._discard_modification(modification, current)
                raise StaleReservationError(reservation_id, modification.base_version)

            auth: PaymentAuthorization | None = None
            try:
                auth = self._payments.authorize(
                    reservation_id,
                    modification.new_total_cents,
                    current.currency,
                    payment_method=payment_method,
                    purpose=f"modification-{modification.id}",
                )
                auth = self._payments.capture(auth.external_id)
            except PaymentDeclinedError:
                if auth is not None:
                    self._payments.void(auth.external_id)
                self._discard_modification(modification, current)
                raise

            old_auth = (
                self._ledger.get_authorization(current.payment_ref) if current.payment_ref else None
            )
            settlement: Settlement | None = None
            if old_auth is not None and old_auth.net_captured_cents > 0:
                settlement = self._settlement(
                    reservation_id, old_auth.external_id, old_auth.net_captured_cents, now
                )

            moved = modification.room_id != current.room_id or modification.stay != current.stay
            try:
                stored = self._ledger.commit(
                    current.evolve(
                        room_id=modification.room_id,
                        stay=modification.stay,
                        guest_count=modification.guest_count,
                        total_cents=modification.new_total_cents,
                        payment_ref=auth.external_id,
                    ),
                    expected_version=current.version,
                    authorizations=[auth],
                    settlements=[settlement] if settlement else [],
                    drop_modification_id=modification.id,
                    event=self._event(
                        "reservation.modified",
                        reservation_id,
                        modification_id=modification.id,
                        room_id=modification.room_id,
                        check_in=modification.stay.check_in,
                        check_out=modification.stay.check_out,
                        guest_count=modification.guest_count,
                        total_cents=modification.new_total_cents,
                        delta_cents=modification.delta_cents,
                        payment_ref=auth.external_id,
                    ),
                )
            except Exception:
                self._undo_payment(auth)
                self._discard_modification(modification, current)
                raise

            if moved:
                self._availability.release(current.room_id, current.stay, reservation_id)
            if settlement is not None:
                self._settle(settlement, now)
                stored = self._ledger.get(reservation_id)

        logger.info(
            "modification confirmed",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    modification_id=modification_id,
                    delta_cents=modification.delta_cents,
                    refund_pending=stored.refund_pending,
                )
            },
        )
        return ModificationResult(
            "committed", stored, modification.delta_cents, modification.new_total_cents
        )

    def abandon_modification(self, reservation_id: str, modification_id: str) -> Reservation:
        with self._locks.hold(reservation_id):
            modification = self._ledger.get_pending_modification(modification_id)
            if modification is None or modification.reservation_id != reservation_id:
                raise ModificationNotFoundError(f"Modification not found: {modification_id}")
            current = self._ledger.get(reservation_id)
            self._discard_modification(modification, current)
            return current

    def expire_modifications(self, now: datetime | None = None) -> int:
        """Drop upgrade quotes past their TTL and release their claims."""
        now = self._now(now)
        expired = 0
        for modification in self._ledger.expired_pending_modifications(now):
            with self._locks.hold(modification.reservation_id):
                # Re-read under the lock; a confirm may have consumed it.
                if self._ledger.get_pending_modification(modification.id) is None:
                    continue
                try:
                    reservation: Reservation | None = self._ledger.get(modification.reservation_id)
                except ReservationNotFoundError:
                    reservation = None
                self._discard_modification(modification, reservation)
                expired += 1
        if expired:
            logger.info(
                "pending modifications expired",
                extra={"extra_fields": {"expired": expired}},
            )
        return expired

    def cancel(self, reservation_id: str, *, now: datetime | None = None) -> Reservation:
        """Cancel a CONFIRMED reservation.

        Inside the refund window the captured amount is refunded and the
        reservation ends REFUNDED, even if the provider call fails (the
        refund then stays pending for the worker). Otherwise it ends
        CANCELLED with no refund.
        """
        with self._locks.hold(reservation_id):
            current = self._ledger.get(reservation_id)
            now = self._now(now)
            eligible = self._policy.is_refund_eligible(current.check_in, now)
            target = ReservationStatus.REFUNDED if eligible else ReservationStatus.CANCELLED
            self._guard(current, target, "cancel")

            settlement: Settlement | None = None
            if eligible and current.payment_ref:
                auth = self._ledger.get_authorization(current.payment_ref)
                # Capped at the total; an unsettled downgrade refund covers the rest.
                amount = min(current.total_cents, auth.net_captured_cents) if auth else 0
                if amount > 0:
                    settlement = self._settlement(reservation_id, current.payment_ref, amount, now)

            stored = self._ledger.commit(
                current.evolve(status=target),
                expected_version=current.version,
                settlements=[settlement] if settlement else [],
                event=self._event(
                    "reservation.refunded" if eligible else "reservation.cancelled",
                    reservation_id,
                    refund_cents=settlement.amount_cents if settlement else 0,
                ),
            )
            self._discard_all_modifications(current)
            self._availability.release(current.room_id, current.stay, reservation_id)
            if settlement is not None:
                self._settle(settlement, now)
                stored = self._ledger.get(reservation_id)

        logger.info(
            "reservation cancelled",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    status=target.value,
                    refund_cents=settlement.amount_cents if settlement else 0,
                    refund_pending=stored.refund_pending,
                )
            },
        )
        return stored

    def check_in(self, reservation_id: str, *, now: datetime | None = None) -> Reservation:
        with self._locks.hold(reservation_id):
            current = self._ledger.get(reservation_id)
            self._guard(current, ReservationStatus.CHECKED_IN, "check in")
            now = self._now(now)
            stored = self._ledger.commit(
                current.evolve(status=ReservationStatus.CHECKED_IN, checked_in_at=now),
                expected_version=current.version,
                event=self._event("reservation.checked_in", reservation_id, checked_in_at=now),
            )
            self._discard_all_modifications(current)
        return stored

    def check_out(self, reservation_id: str) -> Reservation:
        with self._locks.hold(reservation_id):
            current = self._ledger.get(reservation_id)
            self._guard(current, ReservationStatus.COMPLETED, "check out")
            return self._ledger.commit(
                current.evolve(status=ReservationStatus.COMPLETED),
                expected_version=current.version,
                event=self._event("reservation.checked_out", reservation_id),
            )
