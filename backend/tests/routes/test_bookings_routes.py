import pytest

from bookingcore.repositories.notification_repository import NotificationRepository
from tests.factories.booking_builders import identity_headers

CLIENT = identity_headers("c1", "client", "Casey")
COACH = identity_headers("s1", "coach", "Sam")

BASE = "/api/v1/bookings"


def _create(client, **overrides):
    payload = {
        "client_ids": ["c1"],
        "coach_ids": ["s1"],
        "start_at": "2030-01-02T09:00:00Z",
        "end_at": "2030-01-02T09:30:00Z",
        "location": "Studio 3",
    }
    payload.update(overrides)
    return client.post(f"{BASE}/", json=payload, headers=CLIENT)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_full_negotiation_over_http(client, db):
    r = _create(client)
    assert r.status_code == 201
    booking = r.json()
    assert booking["kind"] == "simple"
    assert booking["status"] == "REQUESTED"
    assert booking["estimated_cost"] is None
    booking_id = booking["id"]

    r = client.post(f"{BASE}/{booking_id}/accept", json={"rate_usd": 45, "note": "See you"}, headers=COACH)
    assert r.status_code == 200
    assert r.json()["status"] == "PENDING_ACCEPTANCE"
    assert r.json()["rate_usd"] == 45.0

    r = client.get(f"{BASE}/{booking_id}/cost", headers=CLIENT)
    assert r.json() == {
        "booking_id": booking_id,
        "is_group": False,
        "duration_hours": 0.5,
        "total": 22.5,
        "is_known": True,
    }

    r = client.post(f"{BASE}/{booking_id}/confirm", headers=CLIENT)
    assert r.json()["status"] == "CONFIRMED"

    r = client.post(f"{BASE}/{booking_id}/payment", headers=COACH)
    assert r.json()["payment_status"] == "paid"

    r = client.post(f"{BASE}/{booking_id}/cancel", json={"reason": "ill"}, headers=CLIENT)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_TRANSITION"

    # Notifications are dispatched in the background after each response
    titles = [n.title for n in NotificationRepository(db).list_for_booking(booking_id)]
    assert titles == [
        "Booking Requested",
        "Action Required: Confirm Booking",
        "Booking Confirmed",
        "Payment Notification",
    ]


def test_missing_identity_is_unauthorized(client):
    r = client.post(f"{BASE}/", json={})
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "UNAUTHENTICATED"


def test_unknown_role_is_rejected(client):
    r = client.get(f"{BASE}/", headers={"X-User-Id": "c1", "X-User-Role": "admin"})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_ROLE"


def test_invalid_window_is_unprocessable(client):
    r = _create(client, end_at="2030-01-02T08:00:00Z")
    assert r.status_code == 422


def test_coach_cannot_request_booking(client):
    r = client.post(
        f"{BASE}/",
        json={
            "client_ids": ["c1"],
            "coach_ids": ["s1"],
            "start_at": "2030-01-02T09:00:00Z",
            "end_at": "2030-01-02T10:00:00Z",
        },
        headers=COACH,
    )
    assert r.status_code == 403


def test_overlapping_request_conflicts(client):
    assert _create(client).status_code == 201
    r = client.post(
        f"{BASE}/",
        json={
            "client_ids": ["c2"],
            "coach_ids": ["s1"],
            "start_at": "2030-01-02T09:15:00Z",
            "end_at": "2030-01-02T10:00:00Z",
        },
        headers=identity_headers("c2", "client"),
    )
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "BOOKING_CONFLICT"


def test_unknown_booking_is_not_found(client):
    r = client.get(f"{BASE}/01HZZZZZZZZZZZZZZZZZZZZZZZ", headers=CLIENT)
    assert r.status_code == 404


def test_malformed_booking_id_is_rejected(client):
    r = client.get(f"{BASE}/not-a-ulid", headers=CLIENT)
    assert r.status_code == 422


@pytest.mark.parametrize("rate", ["abc", "NaN", "Infinity", 1e30])
def test_accept_with_bad_rate_is_rejected_without_changing_booking(client, rate):
    booking_id = _create(client).json()["id"]

    r = client.post(f"{BASE}/{booking_id}/accept", json={"rate_usd": rate}, headers=COACH)
    assert r.status_code == 422

    r = client.get(f"{BASE}/{booking_id}", headers=CLIENT)
    assert r.json()["status"] == "REQUESTED"
    assert r.json()["rate_usd"] is None


def test_outsider_cannot_read_booking(client):
    booking_id = _create(client).json()["id"]
    r = client.get(f"{BASE}/{booking_id}", headers=identity_headers("c9", "client"))
    assert r.status_code == 403


def test_decline_requires_reason(client):
    booking_id = _create(client).json()["id"]
    client.post(f"{BASE}/{booking_id}/accept", headers=COACH)

    assert client.post(f"{BASE}/{booking_id}/decline", json={}, headers=CLIENT).status_code == 422
    r = client.post(f"{BASE}/{booking_id}/decline", json={"reason": "Too early"}, headers=CLIENT)
    assert r.json()["status"] == "DECLINED_BY_CLIENT"
    assert r.json()["client_decline_reason"] == "Too early"


def test_reject_withdraw_and_reschedule(client):
    first = _create(client).json()["id"]
    r = client.post(f"{BASE}/{first}/reject", json={"reason": "Busy"}, headers=COACH)
    assert r.json()["status"] == "REJECTED"

    second = _create(client).json()["id"]
    r = client.post(
        f"{BASE}/{second}/reschedule",
        json={"start_at": "2030-01-03T09:00:00Z", "end_at": "2030-01-03T10:00:00Z"},
        headers=CLIENT,
    )
    assert r.json()["start_at"].startswith("2030-01-03T09:00:00")
    assert r.json()["rescheduled_at"] is not None

    r = client.post(f"{BASE}/{second}/withdraw", headers=CLIENT)
    assert r.json()["status"] == "CANCELLED"
    assert r.json()["cancellation_reason"] == "withdrawn"


def test_group_booking_over_http(client):
    r = _create(client, client_ids=["c1", "c2"], coach_ids=["s1", "s2"])
    booking = r.json()
    assert booking["kind"] == "group"
    assert booking["coach_acceptances"] == {"s1": False, "s2": False}

    r = client.post(f"{BASE}/{booking['id']}/accept", json={"rate_usd": 30}, headers=COACH)
    assert r.json()["status"] == "PARTIALLY_ACCEPTED"
    assert r.json()["coach_rates"] == {"s1": 30.0}


def test_list_returns_callers_bookings(client):
    first = _create(client, start_at="2030-01-02T12:00:00Z", end_at="2030-01-02T13:00:00Z").json()["id"]
    second = _create(client).json()["id"]

    r = client.get(f"{BASE}/", headers=CLIENT)
    assert r.status_code == 200
    body = r.json()
    assert body["total"] == 2
    assert [item["id"] for item in body["items"]] == [second, first]

    r = client.get(f"{BASE}/", params={"role": "coach"}, headers=CLIENT)
    assert r.status_code == 403

    r = client.get(f"{BASE}/", headers=identity_headers("s2", "coach"))
    assert r.json() == {"items": [], "total": 0}
