"""Tests for the PostgreSQL ledger SQL paths (mocked cursor, no DB needed)."""

from __future__ import annotations

import json
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from hotelbook.domain.errors import ReservationNotFoundError, StaleReservationError
from hotelbook.domain.models import (
    AuthorizationStatus,
    LedgerEvent,
    ReservationStatus,
    Settlement,
    SettlementStatus,
)
from hotelbook.ledger.postgres import (
    PostgresLedger,
    _row_to_authorization,
    _row_to_reservation,
    emit_event,
)
from tests.helpers import NOW, stay


def _factory(cur):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    return lambda: conn


def _reservation_row(rid="res-1", version=1, pending=False):
    s = stay("2026-05-01", "2026-05-03")
    return (
        rid, "guest-1", "101", s.check_in, s.check_out, 2,
        "CONFIRMED", 20000, "usd", "pi_1", None,
        version, NOW, NOW, pending,
    )


def _reservation(ledger_row=None):
    return _row_to_reservation(ledger_row or _reservation_row())


class TestEmitEvent:
    def test_payload_is_json(self):
        cur = MagicMock()
        cur.fetchone.return_value = (42,)
        event = LedgerEvent(
            event_type="reservation.modified",
            reservation_id="res-1",
            payload={"check_in": date(2026, 5, 1), "delta_cents": -500},
            correlation_id="cid-1",
        )

        assert emit_event(cur, event) == 42

        sql, params = cur.execute.call_args[0]
        assert "INSERT INTO outbox_events" in sql
        assert params[0] == "reservation.modified"
        assert json.loads(params[2]) == {"check_in": "2026-05-01", "delta_cents": -500}
        assert params[3] == "cid-1"


class TestCommit:
    def test_success_writes_settlement_and_event(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [("res-1",), (7,), _reservation_row(version=2, pending=True)]
        ledger = PostgresLedger(_factory(cur))
        settlement = Settlement(
            id="s1", reservation_id="res-1", authorization_id="pi_1", amount_cents=500
        )

        stored = ledger.commit(
            _reservation(),
            expected_version=1,
            event=LedgerEvent("reservation.modified", "res-1"),
            settlements=[settlement],
        )

        assert stored.version == 2
        assert stored.refund_pending
        statements = [c[0][0] for c in cur.execute.call_args_list]
        assert "WHERE id = %s AND version = %s" in statements[0]
        assert any("INSERT INTO settlements" in s for s in statements)
        assert any("INSERT INTO outbox_events" in s for s in statements)

    def test_version_mismatch_is_stale(self):
        cur = MagicMock()
        # UPDATE matched nothing; the row exists.
        cur.fetchone.side_effect = [None, _reservation_row(version=3)]
        ledger = PostgresLedger(_factory(cur))

        with pytest.raises(StaleReservationError):
            ledger.commit(
                _reservation(),
                expected_version=1,
                event=LedgerEvent("reservation.cancelled", "res-1"),
            )

    def test_missing_row_is_not_found(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [None, None]
        ledger = PostgresLedger(_factory(cur))

        with pytest.raises(ReservationNotFoundError):
            ledger.commit(
                _reservation(),
                expected_version=1,
                event=LedgerEvent("reservation.cancelled", "res-1"),
            )

    def test_subscribers_notified_after_commit(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [("res-1",), (1,), _reservation_row(version=2)]
        ledger = PostgresLedger(_factory(cur))
        seen = []
        ledger.subscribe(seen.append)

        ledger.commit(
            _reservation(), expected_version=1, event=LedgerEvent("reservation.checked_in", "res-1")
        )

        assert [e.event_type for e in seen] == ["reservation.checked_in"]


class TestReads:
    def test_get_maps_row(self):
        cur = MagicMock()
        cur.fetchone.return_value = _reservation_row()
        reservation = PostgresLedger(_factory(cur)).get("res-1")
        assert reservation.status == ReservationStatus.CONFIRMED
        assert reservation.stay.nights == 2

    def test_search_builds_filters(self):
        cur = MagicMock()
        cur.fetchall.return_value = []
        PostgresLedger(_factory(cur)).search(
            guest_id="guest-1",
            status=ReservationStatus.CONFIRMED,
            date_from=date(2026, 5, 1),
            limit=10,
            offset=20,
        )
        sql, params = cur.execute.call_args[0]
        assert "r.guest_id = %s" in sql
        assert "r.status = %s" in sql
        assert "r.check_out > %s" in sql
        assert params == ["guest-1", "CONFIRMED", date(2026, 5, 1), 10, 20]


class TestProviderStatus:
    def test_duplicate_event_is_noop(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        ledger = PostgresLedger(_factory(cur))

        assert not ledger.apply_provider_status("pi_1", "CAPTURED", event_id="evt_1")
        assert cur.execute.call_count == 1

    def test_forward_move_updates(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [("evt_1",), ("AUTHORIZED",)]
        ledger = PostgresLedger(_factory(cur))

        assert ledger.apply_provider_status("pi_1", "CAPTURED", event_id="evt_1")
        sql, params = cur.execute.call_args[0]
        assert sql.strip().startswith("UPDATE payment_authorizations")
        assert params == (AuthorizationStatus.CAPTURED.value, "pi_1")

    def test_backward_move_ignored(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [("evt_2",), ("REFUNDED",)]
        ledger = PostgresLedger(_factory(cur))
        assert not ledger.apply_provider_status("pi_1", "CAPTURED", event_id="evt_2")


class TestSettlements:
    def test_reschedule_give_up_clears_next_attempt(self):
        cur = MagicMock()
        cur.fetchone.return_value = ("s1", "res-1", "pi_1", 500, "needs_manual", 8, "timeout", None)
        ledger = PostgresLedger(_factory(cur))

        settlement = ledger.reschedule_settlement(
            "s1", error="timeout", next_attempt_at=NOW, give_up=True
        )

        assert settlement.status == SettlementStatus.NEEDS_MANUAL
        _, params = cur.execute.call_args[0]
        assert params == ("timeout", None, "needs_manual", "s1")

    def test_claim_leases_rows_with_skip_locked(self):
        cur = MagicMock()
        cur.fetchall.return_value = [("s1", "res-1", "pi_1", 500, "pending", 0, None, NOW)]
        ledger = PostgresLedger(_factory(cur))

        claimed = ledger.claim_due_settlements(NOW, lease=timedelta(minutes=5), limit=10)

        assert [s.id for s in claimed] == ["s1"]
        sql, params = cur.execute.call_args[0]
        assert sql.lstrip().startswith("UPDATE settlements")
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert params == (NOW + timedelta(minutes=5), NOW, 10)


def _auth_row(refunded=0, status="CAPTURED"):
    return ("pi_1", "res-1", 20000, "usd", status, "reservation:res-1:booking:20000", 20000, refunded)


class TestRecordRefund:
    def test_locks_row_and_increments_in_sql(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [_auth_row(), ("k1",), _auth_row(refunded=5000)]
        ledger = PostgresLedger(_factory(cur))

        updated = ledger.record_refund("pi_1", 5000, idempotency_key="k1")

        assert updated.refunded_cents == 5000
        statements = [c[0][0] for c in cur.execute.call_args_list]
        assert "FOR UPDATE" in statements[0]
        assert "INSERT INTO payment_refunds" in statements[1]
        assert "refunded_cents = refunded_cents + %s" in statements[2]
        assert cur.execute.call_args_list[2][0][1] == (5000, 5000, "pi_1")

    def test_replayed_key_skips_update(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [_auth_row(refunded=5000), None]
        ledger = PostgresLedger(_factory(cur))

        replay = ledger.record_refund("pi_1", 5000, idempotency_key="k1")

        assert replay.refunded_cents == 5000
        assert cur.execute.call_count == 2

    def test_unknown_authorization(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        ledger = PostgresLedger(_factory(cur))

        with pytest.raises(KeyError):
            ledger.record_refund("pi_missing", 5000, idempotency_key="k1")

    def test_upsert_never_lowers_refunded_total(self):
        cur = MagicMock()
        ledger = PostgresLedger(_factory(cur))
        ledger.save_authorization(_row_to_authorization(_auth_row()))

        sql = cur.execute.call_args_list[0][0][0]
        assert "GREATEST(payment_authorizations.refunded_cents" in sql
