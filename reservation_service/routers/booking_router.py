from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session
from typing import List, Annotated

from fastapi_limiter.depends import RateLimiter

from .. import schemas
from ..auth import Principal, get_current_principal, get_key_by_user_id_or_ip
from ..booking_service import BookingService
from ..config import settings
from ..database import get_db
from ..payment_gateway import StripeGateway, get_payment_gateway
from ..property_client import PropertyClient, get_property_client


router = APIRouter(prefix="/bookings", tags=["Bookings"])


def rate_limited(limiter: RateLimiter):
    """Applies the Redis-backed limiter unless rate limiting is switched off."""
    async def dependency(request: Request, response: Response):
        if settings.RATE_LIMIT_ENABLED:
            await limiter(request, response)
    return dependency


create_limiter = rate_limited(RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip))
read_limiter = rate_limited(RateLimiter(times=60, minutes=1, identifier=get_key_by_user_id_or_ip))


def get_booking_service(
        db: Session = Depends(get_db),
        property_client: PropertyClient = Depends(get_property_client),
        gateway: StripeGateway = Depends(get_payment_gateway),
) -> BookingService:
    return BookingService(db, property_client, gateway)


@router.post("/", response_model=schemas.BookingCreated, status_code=status.HTTP_201_CREATED)
def create_booking(
        booking: schemas.BookingCreate,
        response: Response,
        principal: Annotated[Principal, Depends(get_current_principal)],
        service: BookingService = Depends(get_booking_service),
        rate_limit: None = Depends(create_limiter),
):
    """
    Create a provisional booking for the authenticated guest and return the
    client secret to complete payment with. Safe to retry with the same
    idempotency key.
    """
    body, replayed = service.create_booking(principal, booking)
    if replayed:
        response.headers["Idempotent-Replayed"] = "true"
    return body


@router.get("/", response_model=List[schemas.BookingRead])
def read_user_bookings(
        principal: Annotated[Principal, Depends(get_current_principal)],
        service: BookingService = Depends(get_booking_service),
        skip: int = 0,
        limit: int = 100,
        rate_limit: None = Depends(read_limiter),
):
    """
    Get all bookings the authenticated user is the guest or host of.
    """
    return [schemas.BookingRead.from_booking(b) for b in service.list_bookings(principal, skip=skip, limit=limit)]


@router.get("/{booking_id}", response_model=schemas.BookingRead)
def read_booking(
        booking_id: str,
        principal: Annotated[Principal, Depends(get_current_principal)],
        service: BookingService = Depends(get_booking_service),
        rate_limit: None = Depends(read_limiter),
):
    return schemas.BookingRead.from_booking(service.get_booking(principal, booking_id))


@router.post("/{booking_id}/cancel", response_model=schemas.BookingCanceled)
def cancel_booking(
        booking_id: str,
        principal: Annotated[Principal, Depends(get_current_principal)],
        service: BookingService = Depends(get_booking_service),
        rate_limit: None = Depends(create_limiter),
):
    booking = service.cancel_booking(principal, booking_id)
    return schemas.BookingCanceled(booking_id=booking.id, status=booking.status)
