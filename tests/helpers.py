"""Shared test helpers for hotelbook tests.

This module contains helper classes and functions that can be imported by
both conftest.py and individual test files. These are NOT fixtures.
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

from hotelbook.api.dependencies import Services, build_services
from hotelbook.catalog import InMemoryCatalog
from hotelbook.domain.availability import InMemoryAvailabilityIndex
from hotelbook.domain.models import Room, RoomType, StayRange
from hotelbook.infra.settings import Settings
from hotelbook.ledger.memory import InMemoryLedger
from hotelbook.payments.provider import (
    ProviderDeclinedError,
    ProviderError,
    ProviderIntent,
)

DECLINED_CARD = "pm_card_declined"


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProvider:
    """In-memory payment provider with provider-side idempotency.

    Knobs:
        declined_methods: payment methods that raise ProviderDeclinedError.
        fail_refunds: number of upcoming refund calls that fail.
        fail_captures: number of upcoming capture calls that fail.
        refund_delay: seconds each refund call takes, outside the lock.
        timeout_after_create: record the intent, then raise as if the
            response was lost (next create call only).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self.intents: dict[str, ProviderIntent] = {}
        self.keys: dict[str, str] = {}
        self.refunds: list[tuple[str, int, str]] = []
        self.refund_keys: set[str] = set()
        self.voided: list[str] = []
        self.create_calls = 0
        self.declined_methods: set[str] = {DECLINED_CARD}
        self.fail_refunds = 0
        self.fail_captures = 0
        self.refund_delay = 0.0
        self.timeout_after_create = False

    def create_authorization(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProviderIntent:
        with self._lock:
            self.create_calls += 1
            if idempotency_key in self.keys:
                return self.intents[self.keys[idempotency_key]]
            if payment_method in self.declined_methods:
                raise ProviderDeclinedError("card_declined", "card declined")
            self._seq += 1
            intent = ProviderIntent(
                external_id=f"pi_test_{self._seq}",
                status="requires_capture",
                amount_cents=amount_cents,
            )
            self.intents[intent.external_id] = intent
            self.keys[idempotency_key] = intent.external_id
            if self.timeout_after_create:
                self.timeout_after_create = False
                raise ProviderError("provider_unavailable", "read timeout")
            return intent

    def capture(self, external_id: str, *, idempotency_key: str) -> ProviderIntent:
        with self._lock:
            if external_id in self.voided:
                raise ProviderError(
                    "payment_intent_unexpected_state", "intent was canceled"
                )
            if self.fail_captures > 0:
                self.fail_captures -= 1
                raise ProviderError("provider_unavailable", "capture timeout")
            intent = replace(
                self.intents[external_id],
                status="succeeded",
                amount_received_cents=self.intents[external_id].amount_cents,
            )
            self.intents[external_id] = intent
            return intent

    def refund(self, external_id: str, amount_cents: int, *, idempotency_key: str) -> str:
        if self.refund_delay:
            time.sleep(self.refund_delay)
        with self._lock:
            if idempotency_key in self.refund_keys:
                return f"re_{idempotency_key}"
            if self.fail_refunds > 0:
                self.fail_refunds -= 1
                raise ProviderError("provider_unavailable", "refund timeout")
            self.refund_keys.add(idempotency_key)
            self.refunds.append((external_id, amount_cents, idempotency_key))
            return f"re_{idempotency_key}"

    def void(self, external_id: str, *, idempotency_key: str) -> None:
        with self._lock:
            self.voided.append(external_id)

    def refunded_total(self, external_id: str | None = None) -> int:
        return sum(
            amount for ext, amount, _ in self.refunds
            if external_id is None or ext == external_id
        )


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def stay(check_in: str, check_out: str) -> StayRange:
    return StayRange(date.fromisoformat(check_in), date.fromisoformat(check_out))


def make_catalog() -> InMemoryCatalog:
    """Two room types: standard (10000/night, 2 guests) and suite (25000/night, 4 guests)."""
    return InMemoryCatalog(
        room_types=[
            RoomType(id="standard", nightly_rate_cents=10000, capacity=2),
            RoomType(id="suite", nightly_rate_cents=25000, capacity=4),
        ],
        rooms=[
            Room(id="101", room_type_id="standard"),
            Room(id="102", room_type_id="standard"),
            Room(id="201", room_type_id="suite", accessible=True),
        ],
    )


def make_services(
    clock: FixedClock | None = None,
    provider: FakeProvider | None = None,
    settings: Settings | None = None,
) -> Services:
    return build_services(
        settings or Settings(),
        catalog=make_catalog(),
        availability=InMemoryAvailabilityIndex(),
        ledger=InMemoryLedger(),
        provider=provider or FakeProvider(),
        clock=clock or FixedClock(NOW),
    )
