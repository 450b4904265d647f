"""Tests for /reservations routes: access rules and error mapping.

Actor identity comes from the X-Actor-Id / X-Actor-Role headers; the
services container is the in-memory one from conftest.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from hotelbook.api.actor import get_actor
from hotelbook.api.dependencies import get_services
from hotelbook.api.factory import create_app
from tests.helpers import DECLINED_CARD

GUEST = {"X-Actor-Id": "guest-1", "X-Actor-Role": "guest"}
OTHER_GUEST = {"X-Actor-Id": "guest-2", "X-Actor-Role": "guest"}
EMPLOYEE = {"X-Actor-Id": "emp-1", "X-Actor-Role": "employee"}


@pytest.fixture
def client(services):
    app = create_app(role="public")
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


def _create(client, headers=GUEST, **overrides):
    body = {
        "room_id": "101",
        "check_in": "2026-05-01",
        "check_out": "2026-05-03",
        "guest_count": 2,
    }
    body.update(overrides)
    return client.post("/reservations", json=body, headers=headers)


@pytest.fixture
def booked(client):
    resp = _create(client)
    assert resp.status_code == 201
    return resp.json()


class TestActor:
    def test_missing_actor_is_401(self, client):
        assert client.get("/reservations").status_code == 401

    def test_unknown_role_is_401(self, client):
        headers = {"X-Actor-Id": "x", "X-Actor-Role": "admin"}
        assert client.get("/reservations", headers=headers).status_code == 401

    def test_known_roles_map_to_actor(self):
        assert get_actor("emp-1", "employee").is_employee
        assert not get_actor("guest-1", "guest").is_employee

    def test_missing_role_is_401(self):
        with pytest.raises(HTTPException) as exc_info:
            get_actor("guest-1", None)
        assert exc_info.value.status_code == 401


class TestCreate:
    def test_guest_books_for_self(self, booked):
        assert booked["guest_id"] == "guest-1"
        assert booked["status"] == "CONFIRMED"
        assert booked["total_cents"] == 20000

    def test_employee_books_for_guest(self, client):
        resp = _create(client, headers=EMPLOYEE, guest_id="guest-9")
        assert resp.status_code == 201
        assert resp.json()["guest_id"] == "guest-9"

    def test_employee_must_name_guest(self, client):
        assert _create(client, headers=EMPLOYEE).status_code == 400

    def test_inverted_dates_are_400(self, client):
        assert _create(client, check_in="2026-05-03", check_out="2026-05-01").status_code == 400

    def test_zero_guests_is_422(self, client):
        assert _create(client, guest_count=0).status_code == 422

    def test_capacity_is_400(self, client):
        assert _create(client, guest_count=3).status_code == 400

    def test_unknown_room_is_404(self, client):
        assert _create(client, room_id="999").status_code == 404

    def test_overlap_is_409(self, client, booked):
        resp = _create(client, headers=OTHER_GUEST, check_in="2026-05-02", check_out="2026-05-04")
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "room_conflict"

    def test_decline_is_402(self, client):
        resp = _create(client, payment_method=DECLINED_CARD)
        assert resp.status_code == 402
        assert resp.json()["detail"] == {"code": "payment_declined", "reason": "card_declined"}

    def test_replayed_id_from_other_guest_is_409(self, client):
        _create(client, reservation_id="res-fixed")
        resp = _create(client, headers=OTHER_GUEST, reservation_id="res-fixed")
        assert resp.status_code == 409


class TestRead:
    def test_owner_can_read(self, client, booked):
        resp = client.get(f"/reservations/{booked['id']}", headers=GUEST)
        assert resp.status_code == 200
        assert resp.json()["id"] == booked["id"]

    def test_other_guest_gets_404(self, client, booked):
        assert client.get(f"/reservations/{booked['id']}", headers=OTHER_GUEST).status_code == 404

    def test_employee_can_read(self, client, booked):
        assert client.get(f"/reservations/{booked['id']}", headers=EMPLOYEE).status_code == 200

    def test_guest_list_is_scoped(self, client, booked):
        _create(client, headers=OTHER_GUEST, room_id="102")
        resp = client.get("/reservations", params={"guest_id": "guest-2"}, headers=GUEST)
        assert [r["id"] for r in resp.json()["reservations"]] == [booked["id"]]

    def test_employee_list_filters(self, client, booked):
        _create(client, headers=OTHER_GUEST, room_id="102")
        resp = client.get("/reservations", params={"room_id": "102"}, headers=EMPLOYEE)
        assert [r["guest_id"] for r in resp.json()["reservations"]] == ["guest-2"]


class TestModify:
    def test_upgrade_then_confirm(self, client, booked):
        rid = booked["id"]
        quote = client.post(
            f"/reservations/{rid}/actions/modify", json={"room_id": "201"}, headers=GUEST
        ).json()
        assert quote["outcome"] == "payment_required"
        assert quote["delta_cents"] == 30000

        resp = client.post(
            f"/reservations/{rid}/actions/confirm-modification",
            json={"modification_id": quote["modification_id"]},
            headers=GUEST,
        )
        assert resp.status_code == 200
        assert resp.json()["reservation"]["room_id"] == "201"

    def test_declined_follow_up_is_402(self, client, booked):
        rid = booked["id"]
        quote = client.post(
            f"/reservations/{rid}/actions/modify", json={"room_id": "201"}, headers=GUEST
        ).json()
        resp = client.post(
            f"/reservations/{rid}/actions/confirm-modification",
            json={"modification_id": quote["modification_id"], "payment_method": DECLINED_CARD},
            headers=GUEST,
        )
        assert resp.status_code == 402
        assert client.get(f"/reservations/{rid}", headers=GUEST).json()["room_id"] == "101"

    def test_abandon(self, client, booked):
        rid = booked["id"]
        quote = client.post(
            f"/reservations/{rid}/actions/modify", json={"room_id": "201"}, headers=GUEST
        ).json()
        resp = client.post(
            f"/reservations/{rid}/actions/abandon-modification",
            json={"modification_id": quote["modification_id"]},
            headers=GUEST,
        )
        assert resp.status_code == 200
        resp = client.post(
            f"/reservations/{rid}/actions/confirm-modification",
            json={"modification_id": quote["modification_id"]},
            headers=GUEST,
        )
        assert resp.status_code == 404

    def test_date_change_with_only_check_out(self, client, booked):
        resp = client.post(
            f"/reservations/{booked['id']}/actions/modify",
            json={"check_out": "2026-05-02"},
            headers=GUEST,
        )
        body = resp.json()
        assert body["outcome"] == "committed"
        assert body["delta_cents"] == -10000
        assert body["reservation"]["nights"] == 1

    def test_other_guest_cannot_modify(self, client, booked):
        resp = client.post(
            f"/reservations/{booked['id']}/actions/modify",
            json={"room_id": "102"},
            headers=OTHER_GUEST,
        )
        assert resp.status_code == 404


class TestCancel:
    def test_cancel_early_is_refunded(self, client, booked):
        resp = client.post(f"/reservations/{booked['id']}/actions/cancel", headers=GUEST)
        assert resp.status_code == 200
        assert resp.json()["status"] == "REFUNDED"

    def test_cancel_twice_is_409(self, client, booked):
        client.post(f"/reservations/{booked['id']}/actions/cancel", headers=GUEST)
        resp = client.post(f"/reservations/{booked['id']}/actions/cancel", headers=GUEST)
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "illegal_transition"


class TestCheckInOut:
    def test_guest_cannot_check_in(self, client, booked):
        resp = client.post(f"/reservations/{booked['id']}/actions/check-in", headers=GUEST)
        assert resp.status_code == 403

    def test_check_in_before_stay_is_409(self, client, booked):
        resp = client.post(f"/reservations/{booked['id']}/actions/check-in", headers=EMPLOYEE)
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "outside_stay_dates"

    def test_check_in_and_out_on_stay_dates(self, client, booked, clock):
        clock.now = datetime(2026, 5, 1, 15, 0, tzinfo=timezone.utc)
        rid = booked["id"]

        resp = client.post(f"/reservations/{rid}/actions/check-in", headers=EMPLOYEE)
        assert resp.status_code == 200
        assert resp.json()["status"] == "CHECKED_IN"

        resp = client.post(f"/reservations/{rid}/actions/check-out", headers=EMPLOYEE)
        assert resp.status_code == 200
        assert resp.json()["status"] == "COMPLETED"

    def test_check_out_before_check_in_is_409(self, client, booked):
        resp = client.post(f"/reservations/{booked['id']}/actions/check-out", headers=EMPLOYEE)
        assert resp.status_code == 409
