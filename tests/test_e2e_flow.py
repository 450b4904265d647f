"""End-to-end booking flow through the HTTP API.

Book two nights, extend to three (upgrade quote plus follow-up payment),
then cancel more than 72 hours ahead and get the full new amount back.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from hotelbook.api.dependencies import build_services, get_services
from hotelbook.api.factory import create_app
from hotelbook.catalog import InMemoryCatalog
from hotelbook.domain.availability import InMemoryAvailabilityIndex
from hotelbook.domain.models import Room, RoomType
from hotelbook.infra.settings import Settings
from hotelbook.ledger.memory import InMemoryLedger
from tests.helpers import FakeProvider, FixedClock

GUEST = {"X-Actor-Id": "guest-1", "X-Actor-Role": "guest"}


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(clock, provider):
    catalog = InMemoryCatalog(
        room_types=[RoomType(id="double", nightly_rate_cents=100, capacity=2)],
        rooms=[Room(id="roomA", room_type_id="double")],
    )
    return build_services(
        Settings(),
        catalog=catalog,
        availability=InMemoryAvailabilityIndex(),
        ledger=InMemoryLedger(),
        provider=provider,
        clock=clock,
    )


@pytest.fixture
def client(services):
    app = create_app(role="public")
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


def test_book_extend_cancel(client, clock, provider):
    resp = client.post(
        "/reservations",
        json={
            "room_id": "roomA",
            "check_in": "2024-06-01",
            "check_out": "2024-06-03",
            "guest_count": 2,
        },
        headers=GUEST,
    )
    assert resp.status_code == 201
    booked = resp.json()
    assert booked["total_cents"] == 200
    assert booked["nights"] == 2
    rid = booked["id"]
    first_ref = booked["payment_ref"]

    resp = client.post(
        f"/reservations/{rid}/actions/modify",
        json={"check_out": "2024-06-04"},
        headers=GUEST,
    )
    assert resp.status_code == 200
    quote = resp.json()
    assert quote["outcome"] == "payment_required"
    assert quote["delta_cents"] == 100
    assert quote["new_total_cents"] == 300

    resp = client.post(
        f"/reservations/{rid}/actions/confirm-modification",
        json={"modification_id": quote["modification_id"]},
        headers=GUEST,
    )
    assert resp.status_code == 200
    confirmed = resp.json()["reservation"]
    assert confirmed["total_cents"] == 300
    assert confirmed["nights"] == 3
    assert provider.refunded_total(first_ref) == 200

    # 80 hours before check-in midnight.
    clock.now = datetime(2024, 5, 28, 16, 0, tzinfo=timezone.utc)
    resp = client.post(f"/reservations/{rid}/actions/cancel", headers=GUEST)
    assert resp.status_code == 200
    cancelled = resp.json()
    assert cancelled["status"] == "REFUNDED"
    assert provider.refunded_total(confirmed["payment_ref"]) == 300
    assert cancelled["refund_pending"] is False

    resp = client.get(f"/reservations/{rid}", headers=GUEST)
    assert resp.json()["status"] == "REFUNDED"

    # The room is free again for the same dates.
    resp = client.post(
        "/reservations",
        json={
            "room_id": "roomA",
            "check_in": "2024-06-01",
            "check_out": "2024-06-04",
            "guest_count": 1,
        },
        headers={"X-Actor-Id": "guest-2", "X-Actor-Role": "guest"},
    )
    assert resp.status_code == 201
