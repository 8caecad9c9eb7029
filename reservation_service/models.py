import datetime
import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, Date, TIMESTAMP, String, Text, Index, Numeric, PrimaryKeyConstraint,
)
from sqlalchemy import Enum as SQLEnum
from .database import Base


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form every TIMESTAMP column stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls, name: str):
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# --- ENUMS ---
class BookingStatus(str, PyEnum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"
    COMPLETED = "completed"


# Statuses that hold dates on the property calendar.
HOLDING_STATUSES = (BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED)


class CancelReason(str, PyEnum):
    GUEST_REQUEST = "guest_request"
    HOST_REQUEST = "host_request"
    ADMIN_REQUEST = "admin_request"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    EXPIRED = "expired"


class IdempotencyState(str, PyEnum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentStatus(str, PyEnum):
    REQUIRES_PAYMENT = "requires_payment"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)

    # These are just IDs from other services.
    # No direct DB relationship is enforced.
    property_id = Column(Integer, index=True, nullable=False)
    guest_id = Column(Integer, index=True, nullable=False)
    host_id = Column(Integer, index=True, nullable=False)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    guests = Column(Integer, nullable=False, default=1)

    status = Column(
        _enum_column(BookingStatus, "bookingstatus"),
        default=BookingStatus.PENDING_PAYMENT,
        nullable=False,
    )
    cancel_reason = Column(_enum_column(CancelReason, "cancelreason"), nullable=True)

    # Price breakdown: nightly_rate * nights + fees_amount - discount_amount = total_amount
    nightly_rate = Column(Numeric(12, 2), nullable=False)
    nights = Column(Integer, nullable=False)
    fees_amount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    idempotency_key = Column(String(255), nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)
    confirmed_at = Column(TIMESTAMP, nullable=True)
    canceled_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    # The ledger's overlap scan and the reaper both filter on these
    __table_args__ = (
        Index("ix_bookings_property_status_dates", "property_id", "status", "start_date", "end_date"),
        Index("ix_bookings_status_created_at", "status", "created_at"),
    )

    @property
    def holds_dates(self) -> bool:
        return self.status in HOLDING_STATUSES


class PropertyLock(Base):
    """
    One row per property. Every reservation locks it FOR UPDATE, so the
    overlap scan and the insert that follows it are serialized per property.
    """
    __tablename__ = "property_locks"

    property_id = Column(Integer, primary_key=True, autoincrement=False)
    version = Column(Integer, nullable=False, default=0)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    idempotency_key = Column(String(255), nullable=False)
    guest_id = Column(Integer, nullable=False)

    fingerprint = Column(String(64), nullable=False)
    state = Column(
        _enum_column(IdempotencyState, "idempotencystate"),
        default=IdempotencyState.IN_FLIGHT,
        nullable=False,
    )
    booking_id = Column(String(36), nullable=True)
    # JSON snapshot of the response returned to the first caller
    response = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    expires_at = Column(TIMESTAMP, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("idempotency_key", "guest_id", name="pk_idempotency_records"),
        Index("ix_idempotency_records_expires_at", "expires_at"),
    )


class PaymentRecord(Base):
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), unique=True, nullable=False)

    provider = Column(String(32), nullable=False, default="stripe")
    intent_id = Column(String(255), unique=True, nullable=True)
    status = Column(
        _enum_column(PaymentStatus, "paymentstatus"),
        default=PaymentStatus.REQUIRES_PAYMENT,
        nullable=False,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)


class WebhookEvent(Base):
    """Every provider event id ever processed. The primary key is the dedup."""
    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    provider = Column(String(32), nullable=False, default="stripe")
    event_type = Column(String(64), nullable=False)
    booking_id = Column(String(36), nullable=True, index=True)
    outcome = Column(String(20), nullable=False)
    received_at = Column(TIMESTAMP, default=utcnow, nullable=False)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    # The Kafka topic to send the message to
    topic = Column(String(255), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)

    # An index on 'status' will make the poller's query much faster
    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
