import hashlib
import hmac
import itertools
import json
import os
import time
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

# Settings are read at import time, so the environment goes first.
# Use a different filename to avoid conflicts if run locally
os.environ["DATABASE_URL"] = "sqlite:///./test_booking.db"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ALGORITHM"] = "HS256"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["STRIPE_API_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

import pytest
import stripe
from fastapi.testclient import TestClient
from jose import jwt

from reservation_service import models
from reservation_service.config import settings
from reservation_service.database import Base, SessionLocal, engine
from reservation_service.errors import NotFoundError
from reservation_service.main import app
from reservation_service.payment_gateway import StripeGateway, get_payment_gateway
from reservation_service.property_client import PropertyForBooking, get_property_client

WEBHOOK_SECRET = "whsec_test"
TODAY = models.utcnow().date()

GUEST_ID = 1
OTHER_GUEST_ID = 2
HOST_ID = 500
ADMIN_ID = 900
PROPERTY_ID = 101


def days(n: int):
    return TODAY + timedelta(days=n)


# --- Database Management Fixtures ---
@pytest.fixture(scope="function", autouse=True)
def setup_db():
    """Fresh tables for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """
    A session for direct service calls. Remember that on SQLite an open
    transaction holds the database lock: commit or rollback before handing
    control to the app.
    """
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# --- Helpers for arranging and inspecting state outside the app ---
def add_booking(**overrides) -> models.Booking:
    values = dict(
        id=models.new_id(),
        property_id=PROPERTY_ID,
        guest_id=99,
        host_id=HOST_ID,
        start_date=days(10),
        end_date=days(15),
        guests=2,
        status=models.BookingStatus.CONFIRMED,
        nightly_rate=Decimal("100.00"),
        nights=5,
        fees_amount=Decimal("50.00"),
        discount_amount=Decimal("0.00"),
        total_amount=Decimal("550.00"),
        currency="USD",
    )
    values.update(overrides)
    values["nights"] = (values["end_date"] - values["start_date"]).days
    with SessionLocal(expire_on_commit=False) as session:
        booking = models.Booking(**values)
        session.add(booking)
        session.commit()
    return booking


def add_payment(booking_id: str, intent_id: str, status=models.PaymentStatus.REQUIRES_PAYMENT,
                amount=Decimal("550.00")) -> None:
    with SessionLocal() as session:
        session.add(models.PaymentRecord(
            booking_id=booking_id, provider="stripe", intent_id=intent_id,
            status=status, amount=amount, currency="USD",
        ))
        session.commit()


def load_booking(booking_id: str):
    with SessionLocal(expire_on_commit=False) as session:
        return session.get(models.Booking, booking_id)


def load_payment(booking_id: str):
    with SessionLocal() as session:
        payment = session.query(models.PaymentRecord).filter_by(booking_id=booking_id).one_or_none()
        if payment is not None:
            session.expunge(payment)
        return payment


def count_bookings(**filters) -> int:
    with SessionLocal() as session:
        return session.query(models.Booking).filter_by(**filters).count()


def outbox_events(topic: str = None, event: str = None) -> list[dict]:
    with SessionLocal() as session:
        query = session.query(models.OutboxEvent).order_by(models.OutboxEvent.id)
        if topic:
            query = query.filter(models.OutboxEvent.topic == topic)
        payloads = [json.loads(e.payload) for e in query.all()]
    if event:
        payloads = [p for p in payloads if p["event"] == event]
    return payloads


# --- Auth ---
def create_test_token(user_id: int = GUEST_ID, role: str = "guest") -> str:
    """Creates a simple JWT for testing."""
    payload = {"sub": str(user_id), "role": role}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


@pytest.fixture
def auth_headers():
    """Provides authorization headers with a default test token (user_id=1)."""
    return {"Authorization": create_test_token()}


# --- Collaborators ---
class FakePropertyClient:
    """Stands in for the Property Management service."""

    def __init__(self):
        self.properties = {}
        self.calls = 0

    def add(self, property_id: int = PROPERTY_ID, **overrides) -> PropertyForBooking:
        data = dict(id=property_id, active=True, max_guests=4, price_per_night="100.00",
                    currency="USD", host_id=HOST_ID, cleaning_fee="50.00")
        data.update(overrides)
        prop = PropertyForBooking.model_validate(data)
        self.properties[property_id] = prop
        return prop

    def get_property_for_booking(self, property_id: int) -> PropertyForBooking:
        self.calls += 1
        prop = self.properties.get(property_id)
        if prop is None or not prop.active:
            raise NotFoundError("Property not found.")
        return prop


@pytest.fixture
def property_client():
    client = FakePropertyClient()
    client.add()
    return client


@pytest.fixture
def stripe_api(mocker):
    """Patches the Stripe PaymentIntent calls; every create returns a new intent."""
    counter = itertools.count(1)

    def _create(**kwargs):
        n = next(counter)
        return SimpleNamespace(id=f"pi_{n}", client_secret=f"pi_{n}_secret")

    return SimpleNamespace(
        create=mocker.patch("stripe.PaymentIntent.create", side_effect=_create),
        cancel=mocker.patch("stripe.PaymentIntent.cancel"),
        retrieve=mocker.patch("stripe.PaymentIntent.retrieve"),
    )


@pytest.fixture
def gateway(stripe_api):
    return StripeGateway(api_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Builds a Stripe-Signature header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    mac = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def stripe_event(event_type: str, booking_id: str = None, intent_id: str = "pi_1",
                 event_id: str = None) -> bytes:
    metadata = {"booking_id": booking_id} if booking_id else {}
    event = {
        "id": event_id or f"evt_{event_type}_{intent_id}",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": metadata}},
    }
    return json.dumps(event).encode("utf-8")


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks the background tasks (poller and scheduler) that run on app lifespan.
    """
    mocker.patch("reservation_service.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("reservation_service.main.run_booking_scheduler", new_callable=AsyncMock)


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(property_client, gateway):
    """Provides a TestClient for the reservation service."""
    app.dependency_overrides[get_property_client] = lambda: property_client
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    with TestClient(app) as c:
        yield c

    # Clean up overrides
    app.dependency_overrides.clear()
