"""Tests for the refund settlement worker (backoff, give-up, retry pass)."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from hotelbook.domain.models import (
    AuthorizationStatus,
    LedgerEvent,
    PaymentAuthorization,
    Reservation,
    ReservationStatus,
    Settlement,
    SettlementStatus,
)
from hotelbook.domain.settlement import SettlementWorker, settlement_key
from hotelbook.infra.settings import Settings
from hotelbook.ledger.memory import InMemoryLedger
from hotelbook.payments.coordinator import PaymentCoordinator
from tests.helpers import NOW, stay


@pytest.fixture
def ledger():
    ledger = InMemoryLedger()
    ledger.insert_reservation(
        Reservation(
            id="res-1",
            guest_id="guest-1",
            room_id="101",
            stay=stay("2026-05-01", "2026-05-03"),
            guest_count=2,
            status=ReservationStatus.CONFIRMED,
            total_cents=20000,
            currency="usd",
            payment_ref="pi_test_1",
        ),
        authorization=PaymentAuthorization(
            external_id="pi_test_1",
            reservation_id="res-1",
            amount_cents=20000,
            currency="usd",
            status=AuthorizationStatus.CAPTURED,
            idempotency_key="reservation:res-1:booking:20000",
            captured_cents=20000,
        ),
        event=LedgerEvent("reservation.created", "res-1"),
    )
    return ledger


@pytest.fixture
def worker(ledger, provider, clock):
    settings = Settings(settlement_base_seconds=60, settlement_max_seconds=600, settlement_max_attempts=3)
    return SettlementWorker(ledger, PaymentCoordinator(provider, ledger), settings, clock=clock)


def _owe(ledger, amount=5000, sid="s1"):
    reservation = ledger.get("res-1")
    settlement = Settlement(
        id=sid, reservation_id="res-1", authorization_id="pi_test_1", amount_cents=amount,
        next_attempt_at=NOW,
    )
    ledger.commit(
        reservation.evolve(total_cents=reservation.total_cents - amount),
        expected_version=reservation.version,
        event=LedgerEvent("reservation.modified", "res-1"),
        settlements=[settlement],
    )
    return settlement


class TestBackoff:
    def test_doubles_then_caps(self, worker):
        assert [worker.backoff(n).total_seconds() for n in range(6)] == [60, 120, 240, 480, 600, 600]

    def test_first_attempt_after_base_delay(self, worker):
        assert worker.first_attempt_at(NOW) == NOW + timedelta(seconds=60)


class TestAttempt:
    def test_success_settles(self, worker, ledger, provider):
        settlement = _owe(ledger)

        assert worker.attempt(settlement)

        assert provider.refunds == [("pi_test_1", 5000, settlement_key("s1"))]
        assert ledger.get_settlement("s1").status == SettlementStatus.SETTLED
        assert not ledger.get("res-1").refund_pending

    def test_failure_schedules_retry(self, worker, ledger, provider):
        settlement = _owe(ledger)
        provider.fail_refunds = 1

        assert not worker.attempt(settlement)

        stored = ledger.get_settlement("s1")
        assert stored.status == SettlementStatus.PENDING
        assert stored.attempts == 1
        assert stored.next_attempt_at == NOW + timedelta(seconds=60)
        assert "provider_unavailable" in stored.last_error

    def test_gives_up_after_max_attempts(self, worker, ledger, provider):
        _owe(ledger)
        provider.fail_refunds = 10

        for _ in range(3):
            worker.attempt(ledger.get_settlement("s1"))

        stored = ledger.get_settlement("s1")
        assert stored.status == SettlementStatus.NEEDS_MANUAL
        assert stored.attempts == 3
        assert ledger.get("res-1").refund_pending

    def test_balance_mismatch_needs_manual_immediately(self, worker, ledger):
        settlement = _owe(ledger, amount=50000)

        assert not worker.attempt(settlement)

        assert ledger.get_settlement("s1").status == SettlementStatus.NEEDS_MANUAL


class TestRetryPass:
    def test_retries_only_due_settlements(self, worker, ledger, provider, clock):
        settlement = _owe(ledger)
        provider.fail_refunds = 1
        worker.attempt(settlement)

        assert worker.retry_pending_refunds() == {"due": 0, "settled": 0, "failed": 0}

        clock.advance(seconds=60)
        assert worker.retry_pending_refunds() == {"due": 1, "settled": 1, "failed": 0}
        assert provider.refunded_total("pi_test_1") == 5000


    def test_overlapping_passes_refund_once(self, worker, ledger, provider):
        _owe(ledger)
        provider.refund_delay = 0.05
        results: list[dict[str, int]] = []

        threads = [
            threading.Thread(target=lambda: results.append(worker.retry_pending_refunds()))
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r["due"] for r in results) == [0, 1]
        assert provider.refunded_total("pi_test_1") == 5000
        assert ledger.get_authorization("pi_test_1").refunded_cents == 5000
