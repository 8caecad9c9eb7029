"""
Booking creation, lookup and cancellation.

Creation runs: input validation -> idempotency -> property lookup ->
ledger reserve + payment intent in ONE transaction -> commit -> store the
response under the idempotency key. If anything after the idempotency step
fails, the transaction is rolled back (no booking row, no hold) and the key
is marked failed so the client can retry with it.
"""
import datetime
import logging
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from . import idempotency, ledger, models, outbox, schemas, state_machine
from .auth import Principal
from .config import settings
from .errors import Forbidden, InvalidTransition, NotFoundError, PolicyViolation, ValidationError
from .payment_gateway import PaymentIntent, StripeGateway, record_intent
from .policy import CancellationPolicy, window_policy
from .property_client import PropertyClient, PropertyForBooking

logger = logging.getLogger("booking_service")

CENTS = Decimal("0.01")


def validate_stay(start_date: datetime.date, end_date: datetime.date, guests: int) -> int:
    """
    Returns the number of nights, or raises ValidationError naming the field.
    Only checks what does not depend on the current date.
    """
    if start_date >= end_date:
        raise ValidationError("Booking end date must be after start date.", field="end_date")
    nights = (end_date - start_date).days
    if not settings.MIN_NIGHTS <= nights <= settings.MAX_NIGHTS:
        raise ValidationError(
            f"Stay must be between {settings.MIN_NIGHTS} and {settings.MAX_NIGHTS} nights.",
            field="end_date",
        )
    if guests < 1:
        raise ValidationError("At least one guest is required.", field="guests")
    return nights


def validate_not_in_past(start_date: datetime.date, today: datetime.date) -> None:
    if start_date < today:
        raise ValidationError("Booking cannot start in the past.", field="start_date")


def price_stay(prop: PropertyForBooking, nights: int) -> dict:
    """Flat nightly rate plus fixed fees. No discount rules are applied."""
    nightly_rate = prop.price_per_night.quantize(CENTS)
    fees = (prop.cleaning_fee + settings.SERVICE_FEE).quantize(CENTS)
    discount = Decimal("0.00")
    total = (nightly_rate * nights + fees - discount).quantize(CENTS)
    return {
        "nightly_rate": nightly_rate,
        "nights": nights,
        "fees_amount": fees,
        "discount_amount": discount,
        "total_amount": total,
    }


class BookingService:

    def __init__(
            self,
            db: Session,
            property_client: PropertyClient,
            gateway: StripeGateway,
            policy: Optional[CancellationPolicy] = None,
            clock: Callable[[], datetime.datetime] = models.utcnow,
    ):
        self.db = db
        self.property_client = property_client
        self.gateway = gateway
        self.policy = policy or window_policy(settings.CANCELLATION_CUTOFF_HOURS)
        self.clock = clock

    # ---------- create ----------

    def create_booking(self, principal: Principal, request: schemas.BookingCreate) -> tuple[dict, bool]:
        """
        Returns (response body, replayed). A replay is the stored response of
        an earlier identical request with the same idempotency key.
        """
        now = self.clock()
        nights = validate_stay(request.start_date, request.end_date, request.guests)
        currency = request.currency.upper()

        key = request.idempotency_key
        fingerprint = idempotency.fingerprint_request(request.model_dump(mode="json"))
        outcome = idempotency.begin_or_replay(self.db, key, principal.user_id, fingerprint, now=now)
        if isinstance(outcome, idempotency.Replay):
            return outcome.response, True

        try:
            # Checked after the replay lookup: a retry may arrive once the start date has passed.
            validate_not_in_past(request.start_date, now.date())
            response = self._create_fresh(principal, request, nights, currency)
        except Exception:
            self.db.rollback()
            idempotency.fail(self.db, key, principal.user_id)
            raise

        idempotency.complete(self.db, key, principal.user_id, response["booking_id"], response)
        return response, False

    def _create_fresh(self, principal: Principal, request: schemas.BookingCreate,
                      nights: int, currency: str) -> dict:
        prop = self.property_client.get_property_for_booking(request.property_id)
        if request.guests > prop.max_guests:
            raise ValidationError(f"This property allows at most {prop.max_guests} guests.", field="guests")
        if currency != prop.currency.upper():
            raise ValidationError(f"This property is priced in {prop.currency.upper()}.", field="currency")

        booking = models.Booking(
            id=models.new_id(),
            property_id=request.property_id,
            guest_id=principal.user_id,
            host_id=prop.host_id,
            start_date=request.start_date,
            end_date=request.end_date,
            guests=request.guests,
            status=models.BookingStatus.PENDING_PAYMENT,
            currency=currency,
            idempotency_key=request.idempotency_key,
            **price_stay(prop, nights),
        )

        intent: Optional[PaymentIntent] = None
        try:
            ledger.reserve(self.db, booking)
            intent = self.gateway.create_intent(booking.id, booking.total_amount, currency)
            record_intent(self.db, booking, intent, provider=self.gateway.provider)
            outbox.booking_status_changed(self.db, booking, None)
            self.db.commit()
        except Exception:
            self.db.rollback()
            if intent is not None:
                # The intent exists at the provider but the booking does not.
                self.gateway.cancel_intent(intent.intent_id)
            raise

        logger.info(
            f"Booking {booking.id} created for guest {principal.user_id} on property "
            f"{booking.property_id} ({booking.start_date}..{booking.end_date}), awaiting payment."
        )
        return schemas.BookingCreated(
            booking_id=booking.id,
            status=booking.status,
            client_secret=intent.client_secret,
            total_amount=booking.total_amount,
            currency=booking.currency,
        ).model_dump(mode="json")

    # ---------- read ----------

    def _authorize(self, principal: Principal, booking: models.Booking) -> None:
        if principal.is_admin:
            return
        if principal.user_id not in (booking.guest_id, booking.host_id):
            raise Forbidden("You are not allowed to access this booking.")

    def get_booking(self, principal: Principal, booking_id: str) -> models.Booking:
        booking = self.db.get(models.Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found.")
        self._authorize(principal, booking)
        return booking

    def list_bookings(self, principal: Principal, skip: int = 0, limit: int = 100) -> list[models.Booking]:
        stmt = (
            select(models.Booking)
            .where(or_(models.Booking.guest_id == principal.user_id,
                       models.Booking.host_id == principal.user_id))
            .order_by(models.Booking.created_at, models.Booking.id)
            .offset(skip)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    # ---------- cancel ----------

    def cancel_booking(self, principal: Principal, booking_id: str) -> models.Booking:
        booking = self.get_booking(principal, booking_id)

        booking = state_machine.lock_booking(self.db, booking.id)
        if booking is None:
            raise NotFoundError("Booking not found.")
        try:
            if state_machine.is_terminal(booking.status):
                raise InvalidTransition(f"Booking is already {booking.status.value}.")
            if not principal.is_admin and not self.policy(self.clock(), booking.start_date, booking.status):
                raise PolicyViolation("Cancellation is no longer allowed for this booking.")

            was_confirmed = booking.status == models.BookingStatus.CONFIRMED
            state_machine.cancel(self.db, booking, self._reason_for(principal, booking))
            if was_confirmed:
                outbox.request_refund(self.db, booking, booking.total_amount, "canceled_within_policy")
            payment = self._payment_for(booking.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not was_confirmed and payment is not None and payment.intent_id:
            # Stop a late payment for a hold that no longer exists.
            self.gateway.cancel_intent(payment.intent_id)
        return booking

    def _payment_for(self, booking_id: str) -> Optional[models.PaymentRecord]:
        return self.db.execute(
            select(models.PaymentRecord).where(models.PaymentRecord.booking_id == booking_id)
        ).scalar_one_or_none()

    @staticmethod
    def _reason_for(principal: Principal, booking: models.Booking) -> models.CancelReason:
        if principal.user_id == booking.guest_id:
            return models.CancelReason.GUEST_REQUEST
        if principal.user_id == booking.host_id:
            return models.CancelReason.HOST_REQUEST
        return models.CancelReason.ADMIN_REQUEST
