"""
Outbox writers.

Every function here only adds an OutboxEvent to the session. None of them
commit: the event must land in the same transaction as the state change it
describes, and the outbox poller relays it to Kafka afterwards.
"""
import json
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from . import models
from .config import settings


def add_event(db: Session, topic: str, event: str, payload: dict) -> models.OutboxEvent:
    body = {"event": event, **payload}
    db_outbox_event = models.OutboxEvent(
        topic=topic,
        payload=json.dumps(body, default=str),
        status="PENDING"
    )
    db.add(db_outbox_event)
    return db_outbox_event


def booking_status_changed(
        db: Session,
        booking: models.Booking,
        previous_status: Optional[models.BookingStatus],
) -> None:
    """
    Status change for availability consumers, plus a guest/host notification
    for the transitions people care about.
    """
    payload = {
        "booking_id": booking.id,
        "property_id": booking.property_id,
        "guest_id": booking.guest_id,
        "host_id": booking.host_id,
        "start_date": booking.start_date.isoformat(),
        "end_date": booking.end_date.isoformat(),
        "status": booking.status.value,
        "previous_status": previous_status.value if previous_status else None,
        "reason": booking.cancel_reason.value if booking.cancel_reason else None,
    }
    add_event(db, settings.KAFKA_BOOKING_TOPIC, "booking.status_changed", payload)

    if booking.status in (models.BookingStatus.CONFIRMED, models.BookingStatus.CANCELED):
        add_event(db, settings.KAFKA_NOTIFICATION_TOPIC, f"booking.{booking.status.value}", payload)


def schedule_payout(db: Session, booking: models.Booking) -> None:
    add_event(db, settings.KAFKA_PAYOUT_TOPIC, "payout.scheduled", {
        "booking_id": booking.id,
        "host_id": booking.host_id,
        "amount": str(booking.total_amount),
        "currency": booking.currency,
        # Hosts are paid once the guest has checked in.
        "release_on": booking.start_date.isoformat(),
    })


def request_refund(db: Session, booking: models.Booking, amount: Decimal, reason: str) -> None:
    add_event(db, settings.KAFKA_PAYOUT_TOPIC, "refund.requested", {
        "booking_id": booking.id,
        "guest_id": booking.guest_id,
        "amount": str(amount),
        "currency": booking.currency,
        "reason": reason,
    })
