from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field
import datetime

from .models import BookingStatus, CancelReason


class BookingBase(BaseModel):
    property_id: int
    start_date: datetime.date
    end_date: datetime.date


class BookingCreate(BookingBase):
    # guest id comes from the JWT token
    guests: int = 1
    currency: str = Field(min_length=3, max_length=3)
    idempotency_key: str = Field(min_length=1, max_length=255)


class BookingCreated(BaseModel):
    booking_id: str
    status: BookingStatus
    client_secret: str
    total_amount: Decimal
    currency: str


class PriceBreakdown(BaseModel):
    nightly_rate: Decimal
    nights: int
    fees: Decimal
    discounts: Decimal
    total: Decimal
    currency: str


class BookingRead(BookingBase):
    id: str
    guest_id: int
    host_id: int
    guests: int
    status: BookingStatus
    cancel_reason: Optional[CancelReason] = None
    price: PriceBreakdown
    created_at: datetime.datetime
    updated_at: datetime.datetime

    @classmethod
    def from_booking(cls, booking) -> "BookingRead":
        return cls(
            id=booking.id,
            property_id=booking.property_id,
            start_date=booking.start_date,
            end_date=booking.end_date,
            guest_id=booking.guest_id,
            host_id=booking.host_id,
            guests=booking.guests,
            status=booking.status,
            cancel_reason=booking.cancel_reason,
            price=PriceBreakdown(
                nightly_rate=booking.nightly_rate,
                nights=booking.nights,
                fees=booking.fees_amount,
                discounts=booking.discount_amount,
                total=booking.total_amount,
                currency=booking.currency,
            ),
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class BookingCanceled(BaseModel):
    booking_id: str
    status: BookingStatus


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
