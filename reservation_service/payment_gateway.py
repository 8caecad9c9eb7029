"""
Stripe adapter.

Turns booking totals into Payment Intents and turns signed Stripe webhook
deliveries into booking transitions. Provider failures never leave local
state half-written: intent creation raises GatewayError and the caller rolls
back, and a webhook is applied in a single transaction together with the
record of its event id.
"""
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, outbox, state_machine
from .config import settings
from .errors import GatewayError, GatewayUnavailable, InvalidSignature, ValidationError

logger = logging.getLogger("payment_gateway")

PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
PAYMENT_CANCELED = "payment_canceled"

# Stripe event type -> the event kinds the booking lifecycle understands
EVENT_KINDS = {
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "payment_intent.canceled": PAYMENT_CANCELED,
}

# Stripe takes these in whole units rather than cents
ZERO_DECIMAL_CURRENCIES = {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
                           "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}

# Bounded network calls; retries are decided per call below, never by the SDK.
stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)
stripe.max_network_retries = 0


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    booking_id: Optional[str]
    outcome: str
    duplicate: bool = False


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    provider = "stripe"

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None,
                 tolerance: Optional[int] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_API_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

    # ---------- outbound calls ----------

    def create_intent(self, booking_id: str, amount: Decimal, currency: str) -> PaymentIntent:
        """
        Creates the charge-bearing intent. Called once per booking and never
        retried here; the provider idempotency key makes a client retry of
        the whole booking request safe.
        """
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_minor_units(amount, currency),
                currency=currency.lower(),
                metadata={"booking_id": booking_id},
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"booking-{booking_id}",
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe unreachable creating intent for booking {booking_id}: {e}")
            raise GatewayUnavailable("Payment provider is unreachable. Retry with the same idempotency key.") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected intent for booking {booking_id}: {e}")
            raise GatewayError("Payment provider rejected the payment setup.") from e

        logger.info(f"Created payment intent {intent.id} for booking {booking_id}")
        return PaymentIntent(intent_id=intent.id, client_secret=intent.client_secret)

    def retrieve_intent(self, intent_id: str):
        """Read-only, so one retry on a connection failure."""
        last_error = None
        for attempt in (1, 2):
            try:
                return stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
            except stripe.APIConnectionError as e:
                last_error = e
                logger.warning(f"Retrieving intent {intent_id} failed (attempt {attempt}/2): {e}")
            except stripe.StripeError as e:
                raise GatewayError(f"Payment provider error retrieving {intent_id}.") from e
        raise GatewayUnavailable("Payment provider is unreachable.") from last_error

    def cancel_intent(self, intent_id: str) -> bool:
        """Best-effort; used after a hold expires so the guest can no longer pay."""
        try:
            stripe.PaymentIntent.cancel(intent_id, api_key=self.api_key)
            logger.info(f"Canceled payment intent {intent_id}")
            return True
        except stripe.StripeError as e:
            logger.warning(f"Could not cancel payment intent {intent_id}: {e}")
            return False

    # ---------- webhooks ----------

    def verify_event(self, raw_payload: bytes, signature: Optional[str]) -> dict:
        """Checks the Stripe-Signature header before anything in the payload is trusted."""
        if not signature or not self.webhook_secret:
            raise InvalidSignature("Missing webhook signature.")
        try:
            payload = raw_payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning(f"Rejected webhook with invalid signature: {e}")
            raise InvalidSignature("Invalid webhook signature.") from e

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError("Webhook payload is not valid JSON.") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Webhook payload is missing the event id or type.")
        return event

    def handle_webhook(self, db: Session, raw_payload: bytes, signature: Optional[str]) -> WebhookResult:
        event = self.verify_event(raw_payload, signature)
        event_id = event["id"]
        event_type = event["type"]
        intent = (event.get("data") or {}).get("object") or {}
        booking_id = (intent.get("metadata") or {}).get("booking_id")

        if db.get(models.WebhookEvent, event_id) is not None:
            logger.info(f"Duplicate webhook delivery {event_id} ({event_type}); ignoring.")
            return WebhookResult(event_id, event_type, booking_id, "duplicate", duplicate=True)

        # Claim the event id first; a concurrent delivery of the same
        # event fails here instead of applying the transition twice.
        ledger_row = models.WebhookEvent(
            event_id=event_id,
            provider=self.provider,
            event_type=event_type,
            booking_id=booking_id,
            outcome="received",
        )
        db.add(ledger_row)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(f"Webhook {event_id} was processed concurrently; treating as duplicate.")
            return WebhookResult(event_id, event_type, booking_id, "duplicate", duplicate=True)

        try:
            booking_id, outcome = self._apply(db, EVENT_KINDS.get(event_type), booking_id, intent.get("id"))
            ledger_row.booking_id = booking_id
            ledger_row.outcome = outcome
            db.commit()
        except Exception:
            db.rollback()
            raise

        return WebhookResult(event_id, event_type, booking_id, outcome)

    def _apply(self, db: Session, kind: Optional[str], booking_id: Optional[str],
               intent_id: Optional[str]) -> tuple[Optional[str], str]:
        if kind is None:
            return booking_id, "ignored"

        payment = None
        if booking_id is None and intent_id:
            payment = db.execute(
                select(models.PaymentRecord).where(models.PaymentRecord.intent_id == intent_id)
            ).scalar_one_or_none()
            booking_id = payment.booking_id if payment else None
        if booking_id is None:
            logger.warning(f"{kind} for intent {intent_id} matches no booking; ignoring.")
            return None, "ignored"

        booking = state_machine.lock_booking(db, booking_id)
        if booking is None:
            logger.warning(f"{kind} for unknown booking {booking_id}; ignoring.")
            return booking_id, "ignored"
        if payment is None:
            payment = db.execute(
                select(models.PaymentRecord).where(models.PaymentRecord.booking_id == booking_id)
            ).scalar_one_or_none()

        if kind == PAYMENT_SUCCEEDED:
            return booking_id, self.apply_payment_succeeded(db, booking, payment)
        return booking_id, self._on_failed(db, booking, payment, kind)

    def apply_payment_succeeded(self, db: Session, booking: models.Booking,
                                payment: Optional[models.PaymentRecord]) -> str:
        """
        Settles a successful payment against a locked booking and returns the
        outcome. Shared by webhooks and by the reaper when it finds a success
        whose webhook never arrived. Does NOT commit.
        """
        already_paid = payment is not None and payment.status == models.PaymentStatus.SUCCEEDED
        if payment is not None:
            payment.status = models.PaymentStatus.SUCCEEDED

        if booking.status == models.BookingStatus.PENDING_PAYMENT:
            state_machine.confirm(db, booking)
            outbox.schedule_payout(db, booking)
            return "applied"
        if (booking.status != models.BookingStatus.CANCELED
                or already_paid or booking.confirmed_at is not None):
            # Already paid for; its payout or refund has been requested.
            logger.info(f"Payment success for {booking.status.value} booking {booking.id} already settled.")
            return "ignored"

        # Paid after the hold was canceled (expired or failed earlier). The
        # dates may already belong to someone else, so the money goes back.
        logger.warning(
            f"Anomaly: payment succeeded for booking {booking.id} in status "
            f"{booking.status.value}; requesting refund instead of re-activating."
        )
        outbox.request_refund(db, booking, booking.total_amount, "payment_after_cancellation")
        return "anomaly"

    def _on_failed(self, db: Session, booking: models.Booking,
                   payment: Optional[models.PaymentRecord], kind: str) -> str:
        if booking.status in (models.BookingStatus.CONFIRMED, models.BookingStatus.COMPLETED):
            # Arrived after the success; a paid booking is never re-canceled.
            logger.warning(f"Anomaly: {kind} arrived for {booking.status.value} booking {booking.id}; ignoring.")
            return "anomaly"

        if payment is not None and payment.status != models.PaymentStatus.SUCCEEDED:
            payment.status = (
                models.PaymentStatus.FAILED if kind == PAYMENT_FAILED else models.PaymentStatus.CANCELED
            )
        if booking.status == models.BookingStatus.CANCELED:
            return "ignored"

        reason = models.CancelReason.PAYMENT_FAILED if kind == PAYMENT_FAILED else models.CancelReason.PAYMENT_CANCELED
        state_machine.cancel(db, booking, reason)
        return "applied"


def record_intent(db: Session, booking: models.Booking, intent: PaymentIntent, provider: str = "stripe") -> models.PaymentRecord:
    """Adds the booking's payment record. Does NOT commit."""
    payment = models.PaymentRecord(
        booking_id=booking.id,
        provider=provider,
        intent_id=intent.intent_id,
        status=models.PaymentStatus.REQUIRES_PAYMENT,
        amount=booking.total_amount,
        currency=booking.currency,
    )
    db.add(payment)
    return payment


_gateway: Optional[StripeGateway] = None


def get_payment_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
