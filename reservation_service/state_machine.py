"""
Booking lifecycle.

    pending_payment -> confirmed | canceled
    confirmed       -> completed | canceled

canceled and completed are terminal. Every function here expects the
booking to be locked by the current transaction (see lock_booking) and
leaves the commit to the caller.
"""
import datetime
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import ledger, models, outbox
from .errors import InvalidTransition

logger = logging.getLogger("booking_service")

BookingStatus = models.BookingStatus

TRANSITIONS = {
    BookingStatus.PENDING_PAYMENT: {BookingStatus.CONFIRMED, BookingStatus.CANCELED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELED},
    BookingStatus.CANCELED: set(),
    BookingStatus.COMPLETED: set(),
}


def is_terminal(status: BookingStatus) -> bool:
    return not TRANSITIONS[status]


def assert_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"Booking cannot move from {current.value} to {target.value}.")


def lock_booking(db: Session, booking_id: str) -> Optional[models.Booking]:
    """
    Loads the booking row FOR UPDATE. Concurrent webhook deliveries, reaper
    runs and cancellations for one booking queue here.
    """
    stmt = (
        select(models.Booking)
        .where(models.Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def confirm(db: Session, booking: models.Booking) -> bool:
    """
    pending_payment -> confirmed. Returns True if the status changed.

    Already confirmed is a duplicate delivery and a no-op. A terminal booking
    is never re-activated; the attempt is logged and dropped.
    """
    if booking.status == BookingStatus.CONFIRMED:
        logger.info(f"Booking {booking.id} already confirmed; nothing to do.")
        return False
    if is_terminal(booking.status):
        logger.warning(f"Refusing to confirm booking {booking.id} in terminal status {booking.status.value}.")
        return False

    assert_transition(booking.status, BookingStatus.CONFIRMED)
    previous = booking.status
    booking.status = BookingStatus.CONFIRMED
    booking.confirmed_at = models.utcnow()
    outbox.booking_status_changed(db, booking, previous)
    logger.info(f"Booking {booking.id} confirmed.")
    return True


def cancel(db: Session, booking: models.Booking, reason: models.CancelReason) -> None:
    """
    pending_payment | confirmed -> canceled, releasing the hold in the same
    transaction. Raises InvalidTransition from a terminal status.
    """
    assert_transition(booking.status, BookingStatus.CANCELED)
    previous = booking.status
    ledger.release(db, booking, BookingStatus.CANCELED)
    booking.cancel_reason = reason
    booking.canceled_at = models.utcnow()
    outbox.booking_status_changed(db, booking, previous)
    logger.info(f"Booking {booking.id} canceled ({reason.value}), was {previous.value}.")


def complete(db: Session, booking: models.Booking, today: datetime.date) -> bool:
    """confirmed -> completed once the stay is over. Returns True if it changed."""
    if booking.status != BookingStatus.CONFIRMED or booking.end_date > today:
        return False
    previous = booking.status
    ledger.release(db, booking, BookingStatus.COMPLETED)
    booking.completed_at = models.utcnow()
    outbox.booking_status_changed(db, booking, previous)
    logger.info(f"Booking {booking.id} completed.")
    return True
