# Import testing tools
import pytest
from fastapi.testclient import TestClient

from reservation_service import models
from reservation_service.config import settings as booking_settings

from conftest import (
    ADMIN_ID, GUEST_ID, HOST_ID, OTHER_GUEST_ID, PROPERTY_ID,
    add_booking, add_payment, count_bookings, create_test_token, days, load_booking, outbox_events,
)


def booking_request(key: str = "key-1", start: int = 10, end: int = 15, **overrides) -> dict:
    data = {
        "property_id": PROPERTY_ID,
        "start_date": str(days(start)),
        "end_date": str(days(end)),
        "guests": 2,
        "currency": "USD",
        "idempotency_key": key,
    }
    data.update(overrides)
    return data


# --- Create ---

def test_create_booking_success(client: TestClient, auth_headers, stripe_api):
    response = client.post("/bookings/", json=booking_request(), headers=auth_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending_payment"
    assert data["client_secret"] == "pi_1_secret"
    # 5 nights x 100.00 + 50.00 cleaning fee
    assert data["total_amount"] == "550.00"
    assert data["currency"] == "USD"

    booking = load_booking(data["booking_id"])
    assert booking.guest_id == GUEST_ID
    assert booking.host_id == HOST_ID
    assert booking.status == models.BookingStatus.PENDING_PAYMENT

    kwargs = stripe_api.create.call_args.kwargs
    assert kwargs["amount"] == 55000
    assert kwargs["currency"] == "usd"
    assert kwargs["metadata"] == {"booking_id": data["booking_id"]}
    assert kwargs["idempotency_key"] == f"booking-{data['booking_id']}"

    # The status change went out through the outbox, not a direct Kafka call
    events = outbox_events(topic=booking_settings.KAFKA_BOOKING_TOPIC)
    assert len(events) == 1
    assert events[0]["booking_id"] == data["booking_id"]
    assert events[0]["status"] == "pending_payment"


def test_create_booking_invalid_dates(client: TestClient, auth_headers):
    """end_date not after start_date is a validation failure."""
    response = client.post("/bookings/", json=booking_request(start=10, end=10), headers=auth_headers)

    assert response.status_code == 422
    assert response.json()["field"] == "end_date"
    assert "end date must be after start date" in response.json()["detail"]


@pytest.mark.parametrize("start, end", [(10, 41), (-3, 2)])
def test_create_booking_stay_length_and_past_dates(client: TestClient, auth_headers, start, end):
    response = client.post("/bookings/", json=booking_request(start=start, end=end), headers=auth_headers)
    assert response.status_code == 422


def test_create_booking_too_many_guests(client: TestClient, auth_headers, stripe_api):
    response = client.post("/bookings/", json=booking_request(guests=9), headers=auth_headers)

    assert response.status_code == 422
    assert response.json()["field"] == "guests"
    assert count_bookings() == 0
    stripe_api.create.assert_not_called()


def test_create_booking_currency_must_match_property(client: TestClient, auth_headers):
    response = client.post("/bookings/", json=booking_request(currency="EUR"), headers=auth_headers)
    assert response.status_code == 422
    assert response.json()["field"] == "currency"


def test_create_booking_unknown_or_inactive_property(client: TestClient, auth_headers, property_client):
    property_client.add(202, active=False)

    assert client.post("/bookings/", json=booking_request(property_id=404), headers=auth_headers).status_code == 404
    assert client.post(
        "/bookings/", json=booking_request(key="key-2", property_id=202), headers=auth_headers
    ).status_code == 404


def test_create_booking_conflict(client: TestClient, auth_headers):
    """Test creating a booking that conflicts with an existing one."""
    add_booking(start_date=days(12), end_date=days(17))

    response = client.post("/bookings/", json=booking_request(start=10, end=13), headers=auth_headers)

    assert response.status_code == 409
    assert response.json()["code"] == "dates_unavailable"
    assert "already booked for these dates" in response.json()["detail"]


def test_create_booking_back_to_back_is_allowed(client: TestClient, auth_headers):
    add_booking(start_date=days(5), end_date=days(10))

    response = client.post("/bookings/", json=booking_request(start=10, end=13), headers=auth_headers)
    assert response.status_code == 201


def test_create_booking_no_auth(client: TestClient):
    """Test creating a booking without providing an auth token."""
    response = client.post("/bookings/", json=booking_request())
    assert response.status_code in (401, 403)
    assert response.json() == {"detail": "Not authenticated"}


def test_create_booking_bad_token(client: TestClient):
    response = client.post("/bookings/", json=booking_request(), headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


# --- Idempotency over HTTP ---

def test_replay_returns_same_booking(client: TestClient, auth_headers, stripe_api):
    first = client.post("/bookings/", json=booking_request(), headers=auth_headers)
    second = client.post("/bookings/", json=booking_request(), headers=auth_headers)

    assert first.status_code == second.status_code == 201
    assert first.json() == second.json()
    assert second.headers["Idempotent-Replayed"] == "true"
    assert "Idempotent-Replayed" not in first.headers
    assert count_bookings() == 1
    assert stripe_api.create.call_count == 1


def test_reused_key_with_different_payload_is_rejected(client: TestClient, auth_headers):
    first = client.post("/bookings/", json=booking_request(), headers=auth_headers)
    second = client.post("/bookings/", json=booking_request(start=20, end=22), headers=auth_headers)

    assert second.status_code == 409
    assert second.json()["code"] == "idempotency_key_reused"
    original = load_booking(first.json()["booking_id"])
    assert original.status == models.BookingStatus.PENDING_PAYMENT
    assert original.start_date == days(10)
    assert count_bookings() == 1


def test_same_key_from_another_guest_is_a_new_request(client: TestClient, auth_headers):
    client.post("/bookings/", json=booking_request(start=10, end=12), headers=auth_headers)
    other = client.post(
        "/bookings/", json=booking_request(start=20, end=22),
        headers={"Authorization": create_test_token(OTHER_GUEST_ID)},
    )
    assert other.status_code == 201
    assert count_bookings() == 2


def test_gateway_failure_rolls_back_and_is_retryable(client: TestClient, auth_headers, stripe_api):
    import stripe

    stripe_api.create.side_effect = stripe.APIConnectionError("connection reset")
    failed = client.post("/bookings/", json=booking_request(), headers=auth_headers)

    assert failed.status_code == 503
    assert count_bookings() == 0
    assert outbox_events() == []

    stripe_api.create.side_effect = None
    stripe_api.create.return_value = type("Intent", (), {"id": "pi_retry", "client_secret": "pi_retry_secret"})()
    retried = client.post("/bookings/", json=booking_request(), headers=auth_headers)

    assert retried.status_code == 201
    assert retried.json()["client_secret"] == "pi_retry_secret"
    assert count_bookings() == 1


def test_gateway_rejection_is_bad_gateway(client: TestClient, auth_headers, stripe_api):
    import stripe

    stripe_api.create.side_effect = stripe.InvalidRequestError("bad currency", param="currency")
    response = client.post("/bookings/", json=booking_request(), headers=auth_headers)

    assert response.status_code == 502
    assert count_bookings() == 0


# --- Read ---

def test_read_user_bookings(client: TestClient, auth_headers):
    """Test retrieving bookings only for the authenticated user."""
    add_booking(guest_id=GUEST_ID, property_id=201, start_date=days(1), end_date=days(5))
    add_booking(guest_id=GUEST_ID, property_id=202, start_date=days(6), end_date=days(9))
    add_booking(guest_id=OTHER_GUEST_ID, property_id=203, start_date=days(1), end_date=days(5))

    response = client.get("/bookings/", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert isinstance(data, list)
    assert sorted(b["property_id"] for b in data) == [201, 202]


def test_read_booking_price_breakdown(client: TestClient, auth_headers):
    booking = add_booking(guest_id=GUEST_ID)

    response = client.get(f"/bookings/{booking.id}", headers=auth_headers)

    assert response.status_code == 200
    price = response.json()["price"]
    assert price == {
        "nightly_rate": "100.00", "nights": 5, "fees": "50.00",
        "discounts": "0.00", "total": "550.00", "currency": "USD",
    }


def test_read_booking_host_and_admin_can_see_it(client: TestClient):
    booking = add_booking(guest_id=GUEST_ID)

    as_host = client.get(f"/bookings/{booking.id}", headers={"Authorization": create_test_token(HOST_ID, "host")})
    as_admin = client.get(f"/bookings/{booking.id}", headers={"Authorization": create_test_token(ADMIN_ID, "admin")})

    assert as_host.status_code == 200
    assert as_admin.status_code == 200


def test_read_booking_forbidden_and_not_found(client: TestClient):
    booking = add_booking(guest_id=GUEST_ID)
    stranger = {"Authorization": create_test_token(OTHER_GUEST_ID)}

    assert client.get(f"/bookings/{booking.id}", headers=stranger).status_code == 403
    assert client.get("/bookings/does-not-exist", headers=stranger).status_code == 404


# --- Cancel ---

def test_guest_cancels_pending_booking(client: TestClient, auth_headers, stripe_api):
    created = client.post("/bookings/", json=booking_request(), headers=auth_headers).json()

    response = client.post(f"/bookings/{created['booking_id']}/cancel", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"booking_id": created["booking_id"], "status": "canceled"}
    booking = load_booking(created["booking_id"])
    assert booking.cancel_reason == models.CancelReason.GUEST_REQUEST
    stripe_api.cancel.assert_called_once()
    assert stripe_api.cancel.call_args.args[0] == "pi_1"

    # The hold is gone: the same dates can be booked again
    again = client.post("/bookings/", json=booking_request(key="key-2"),
                        headers={"Authorization": create_test_token(OTHER_GUEST_ID)})
    assert again.status_code == 201


def test_cancel_confirmed_booking_within_window_requests_refund(client: TestClient, auth_headers):
    booking = add_booking(guest_id=GUEST_ID, start_date=days(10), end_date=days(12))

    response = client.post(f"/bookings/{booking.id}/cancel", headers=auth_headers)

    assert response.status_code == 200
    refunds = outbox_events(topic=booking_settings.KAFKA_PAYOUT_TOPIC, event="refund.requested")
    assert len(refunds) == 1
    assert refunds[0]["booking_id"] == booking.id
    assert refunds[0]["amount"] == "550.00"
    notifications = outbox_events(topic=booking_settings.KAFKA_NOTIFICATION_TOPIC)
    assert [n["event"] for n in notifications] == ["booking.canceled"]


def test_cancel_outside_policy_window(client: TestClient, auth_headers):
    booking = add_booking(guest_id=GUEST_ID, start_date=days(1), end_date=days(3))

    response = client.post(f"/bookings/{booking.id}/cancel", headers=auth_headers)

    assert response.status_code == 403
    assert response.json()["code"] == "policy_violation"
    assert load_booking(booking.id).status == models.BookingStatus.CONFIRMED


def test_admin_cancels_outside_policy_window(client: TestClient):
    booking = add_booking(guest_id=GUEST_ID, start_date=days(1), end_date=days(3))

    response = client.post(f"/bookings/{booking.id}/cancel",
                           headers={"Authorization": create_test_token(ADMIN_ID, "admin")})

    assert response.status_code == 200
    assert load_booking(booking.id).cancel_reason == models.CancelReason.ADMIN_REQUEST


def test_host_cancels_booking(client: TestClient):
    booking = add_booking(guest_id=GUEST_ID, status=models.BookingStatus.PENDING_PAYMENT)
    add_payment(booking.id, "pi_host")

    response = client.post(f"/bookings/{booking.id}/cancel",
                           headers={"Authorization": create_test_token(HOST_ID, "host")})

    assert response.status_code == 200
    assert load_booking(booking.id).cancel_reason == models.CancelReason.HOST_REQUEST


@pytest.mark.parametrize("status", [models.BookingStatus.CANCELED, models.BookingStatus.COMPLETED])
def test_cancel_terminal_booking_conflicts(client: TestClient, auth_headers, status):
    booking = add_booking(guest_id=GUEST_ID, status=status)

    response = client.post(f"/bookings/{booking.id}/cancel", headers=auth_headers)

    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"


def test_cancel_by_stranger_is_forbidden(client: TestClient):
    booking = add_booking(guest_id=GUEST_ID)

    response = client.post(f"/bookings/{booking.id}/cancel",
                           headers={"Authorization": create_test_token(OTHER_GUEST_ID)})

    assert response.status_code == 403
    assert load_booking(booking.id).status == models.BookingStatus.CONFIRMED
