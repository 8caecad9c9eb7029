"""
Availability ledger.

The only code allowed to decide whether dates on a property are free. Holds
are not stored anywhere: a booking in pending_payment or confirmed *is* the
hold, so availability is always recomputed from the bookings table.

reserve() must run inside the caller's transaction. It takes the property's
lock row FOR UPDATE before scanning, so two reservations on the same property
are serialized; the second one blocks until the first commits or rolls back
and then sees its row.
"""
import datetime
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import DatesUnavailable, InvariantViolation

logger = logging.getLogger("booking_service")


def ranges_overlap(
        start_a: datetime.date, end_a: datetime.date,
        start_b: datetime.date, end_b: datetime.date,
) -> bool:
    """Half-open [start, end) intersection. Back-to-back stays do not overlap."""
    return start_a < end_b and start_b < end_a


def find_conflicts(
        db: Session,
        property_id: int,
        start_date: datetime.date,
        end_date: datetime.date,
        exclude_booking_id: Optional[str] = None,
) -> list[models.Booking]:
    """
    Returns the holding bookings on the property that overlap [start_date, end_date).
    """
    # (Existing Start Date < New End Date) AND (Existing End Date > New Start Date)
    stmt = select(models.Booking).where(
        models.Booking.property_id == property_id,
        models.Booking.status.in_(models.HOLDING_STATUSES),
        models.Booking.start_date < end_date,
        models.Booking.end_date > start_date,
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(models.Booking.id != exclude_booking_id)
    return list(db.execute(stmt).scalars().all())


def _ensure_lock_row(db: Session, property_id: int) -> None:
    """
    Creates the property's lock row on first use and commits it, so that the
    row exists before the reservation transaction locks it.
    """
    exists = db.execute(
        select(models.PropertyLock.property_id).where(models.PropertyLock.property_id == property_id)
    ).first()
    if exists:
        return
    db.add(models.PropertyLock(property_id=property_id, version=0))
    try:
        db.commit()
    except IntegrityError:
        # Another request created it first; that is all we needed.
        db.rollback()


def lock_property(db: Session, property_id: int) -> bool:
    """
    Acquires the per-property lock for the rest of the current transaction.
    Returns False if the property was never reserved (no lock row yet).
    """
    lock_row = db.execute(
        select(models.PropertyLock)
        .where(models.PropertyLock.property_id == property_id)
        .with_for_update()
    ).scalar_one_or_none()
    if lock_row is None:
        return False
    # Bumping the version turns the lock into a write, which also
    # serializes backends that ignore FOR UPDATE.
    db.execute(
        update(models.PropertyLock)
        .where(models.PropertyLock.property_id == property_id)
        .values(version=models.PropertyLock.version + 1)
    )
    return True


def reserve(db: Session, booking: models.Booking) -> models.Booking:
    """
    Adds the booking as a hold on its property, or raises DatesUnavailable.

    Must be the first write of the transaction: creating a property's lock
    row on first use commits. Does NOT commit the booking itself. The caller
    commits once the rest of the booking creation (payment intent) has
    succeeded, or rolls back to drop the hold.
    """
    _ensure_lock_row(db, booking.property_id)
    lock_property(db, booking.property_id)

    conflicts = find_conflicts(db, booking.property_id, booking.start_date, booking.end_date)
    if conflicts:
        logger.info(
            f"Dates {booking.start_date}..{booking.end_date} unavailable on property "
            f"{booking.property_id}: overlaps booking {conflicts[0].id}"
        )
        raise DatesUnavailable("The property is already booked for these dates.")

    db.add(booking)
    db.flush()

    # Nothing should ever get past the lock; if it does, stop before commit.
    slipped = find_conflicts(
        db, booking.property_id, booking.start_date, booking.end_date,
        exclude_booking_id=booking.id,
    )
    if slipped:
        logger.critical(
            f"Overlap detected after reserve on property {booking.property_id}: "
            f"{booking.id} vs {[b.id for b in slipped]}"
        )
        raise InvariantViolation("Overlapping holds detected on property.")

    logger.info(
        f"Reserved property {booking.property_id} {booking.start_date}..{booking.end_date} "
        f"for booking {booking.id}"
    )
    return booking


def release(db: Session, booking: Optional[models.Booking], new_status: models.BookingStatus) -> bool:
    """
    Drops the booking's hold by moving it to a non-holding status.

    Idempotent: a missing booking, or one that no longer holds dates, is a
    no-op and returns False. Does NOT commit.
    """
    if new_status in models.HOLDING_STATUSES:
        raise ValueError(f"{new_status.value} still holds dates; not a release")
    if booking is None or not booking.holds_dates:
        return False

    lock_property(db, booking.property_id)
    booking.status = new_status
    db.flush()
    logger.info(f"Released hold of booking {booking.id} on property {booking.property_id}")
    return True
