import asyncio
import datetime
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import idempotency, models, state_machine
from .config import settings
from .database import SessionLocal
from .errors import GatewayError
from .payment_gateway import StripeGateway, get_payment_gateway

logger = logging.getLogger("hold_reaper")


def find_expired_holds(db: Session, now: datetime.datetime) -> list[str]:
    """
    Ids of pending_payment bookings older than the hold duration with no
    recorded payment success.
    """
    cutoff = now - datetime.timedelta(minutes=settings.HOLD_DURATION_MINUTES)
    stmt = (
        select(models.Booking.id)
        .outerjoin(models.PaymentRecord, models.PaymentRecord.booking_id == models.Booking.id)
        .where(
            models.Booking.status == models.BookingStatus.PENDING_PAYMENT,
            models.Booking.created_at < cutoff,
            (models.PaymentRecord.id.is_(None))
            | (models.PaymentRecord.status != models.PaymentStatus.SUCCEEDED),
        )
        .order_by(models.Booking.created_at)
    )
    return list(db.execute(stmt).scalars().all())


def _paid_at_provider(db: Session, booking_id: str, gateway: Optional[StripeGateway]) -> bool:
    """
    Asks the provider whether the hold was paid after all, in case the success
    webhook was lost. Runs before the row lock is taken. An unreachable
    provider does not hold up expiry.
    """
    if gateway is None:
        return False
    intent_id = db.execute(
        select(models.PaymentRecord.intent_id).where(models.PaymentRecord.booking_id == booking_id)
    ).scalar_one_or_none()
    db.rollback()
    if not intent_id:
        return False
    try:
        intent = gateway.retrieve_intent(intent_id)
    except GatewayError as e:
        logger.warning(f"Could not check intent {intent_id} before expiring booking {booking_id}: {e}")
        return False
    return getattr(intent, "status", None) == "succeeded"


def expire_stale_holds(
        db: Session,
        now: Optional[datetime.datetime] = None,
        gateway: Optional[StripeGateway] = None,
) -> int:
    """
    Cancels abandoned provisional bookings, one transaction per booking.

    Each booking is re-checked under its row lock, so a booking confirmed or
    canceled in the meantime (or by another reaper) is skipped. A failure on
    one booking is logged and the sweep moves on. A hold the provider reports
    as paid is confirmed instead of expired.
    """
    now = now or models.utcnow()
    expired_ids = find_expired_holds(db, now)
    db.rollback()  # end the read transaction before taking row locks

    if not expired_ids:
        logger.info("No expired holds.")
        return 0

    logger.info(f"Found {len(expired_ids)} expired holds.")
    canceled = 0
    for booking_id in expired_ids:
        try:
            paid = _paid_at_provider(db, booking_id, gateway)
            booking = state_machine.lock_booking(db, booking_id)
            if booking is None or booking.status != models.BookingStatus.PENDING_PAYMENT:
                logger.info(f"Booking {booking_id} changed before expiry; skipping.")
                db.rollback()
                continue
            payment = db.execute(
                select(models.PaymentRecord).where(models.PaymentRecord.booking_id == booking_id)
            ).scalar_one_or_none()
            if payment is not None and payment.status == models.PaymentStatus.SUCCEEDED:
                logger.info(f"Booking {booking_id} has a recorded payment; skipping.")
                db.rollback()
                continue

            if paid:
                logger.warning(f"Booking {booking_id} was paid but its webhook never arrived; confirming.")
                gateway.apply_payment_succeeded(db, booking, payment)
                db.commit()
                continue

            state_machine.cancel(db, booking, models.CancelReason.EXPIRED)
            intent_id = payment.intent_id if payment is not None else None
            db.commit()
            canceled += 1
        except Exception as e:
            logger.error(f"Failed to expire booking {booking_id}: {e}")
            db.rollback()  # Rollback this booking only
            continue  # Go to the next booking

        if gateway is not None and intent_id:
            gateway.cancel_intent(intent_id)

    logger.info(f"Expired {canceled} holds.")
    return canceled


def complete_finished_stays(db: Session, today: Optional[datetime.date] = None) -> int:
    """confirmed -> completed for every stay whose checkout day has come."""
    today = today or models.utcnow().date()
    finished_ids = list(db.execute(
        select(models.Booking.id).where(
            models.Booking.status == models.BookingStatus.CONFIRMED,
            models.Booking.end_date <= today,
        )
    ).scalars().all())
    db.rollback()

    completed = 0
    for booking_id in finished_ids:
        try:
            booking = state_machine.lock_booking(db, booking_id)
            if booking is not None and state_machine.complete(db, booking, today):
                db.commit()
                completed += 1
            else:
                db.rollback()
        except Exception as e:
            logger.error(f"Failed to complete booking {booking_id}: {e}")
            db.rollback()

    if completed:
        logger.info(f"Completed {completed} finished stays.")
    return completed


def purge_idempotency_records(db: Session, now: Optional[datetime.datetime] = None) -> int:
    purged = idempotency.purge_expired(db, now)
    db.commit()
    if purged:
        logger.info(f"Purged {purged} expired idempotency records.")
    return purged


async def run_sweep(gateway: Optional[StripeGateway] = None):
    """
    One pass of every periodic job. Each job gets its own session and its
    own failure handling so one broken job does not starve the others.
    """
    for job in (
            lambda db: expire_stale_holds(db, gateway=gateway),
            complete_finished_stays,
            purge_idempotency_records,
    ):
        db: Session = SessionLocal()
        try:
            # The jobs block on the database; keep the event loop free.
            await asyncio.to_thread(job, db)
        except Exception as e:
            logger.error(f"Error in scheduled job: {e}")
            db.rollback()
        finally:
            db.close()


async def run_booking_scheduler():
    """
    Main background loop for the scheduler.
    """
    gateway = get_payment_gateway()
    while True:
        # Add a log to show the scheduler is waking up
        logger.info("Scheduler waking up to reap expired holds...")
        await run_sweep(gateway)

        # Wait for the next poll interval
        await asyncio.sleep(settings.REAPER_INTERVAL_SECONDS)
