import logging
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import AliasChoices, BaseModel, Field

from .config import settings
from .errors import NotFoundError, GatewayUnavailable

logger = logging.getLogger("booking_service")


class PropertyServiceUnavailable(GatewayUnavailable):
    code = "property_service_unavailable"


class PropertyForBooking(BaseModel):
    """The slice of a property the reservation engine needs."""
    id: int
    active: bool = True
    max_guests: int = Field(validation_alias=AliasChoices("max_guests", "maxGuests"))
    price_per_night: Decimal = Field(validation_alias=AliasChoices("price_per_night", "pricePerNight"))
    currency: str = "USD"
    host_id: int = Field(validation_alias=AliasChoices("host_id", "hostId", "owner_id"))
    cleaning_fee: Decimal = Field(default=Decimal("0"), validation_alias=AliasChoices("cleaning_fee", "cleaningFee"))


class PropertyClient:
    """
    Reads properties from the Property Management service.

    Lookups are read-only, so a transport failure is retried once.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = (base_url or settings.PROPERTY_SERVICE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PROPERTY_SERVICE_TIMEOUT_SECONDS
        self.transport = transport

    def get_property_for_booking(self, property_id: int) -> PropertyForBooking:
        url = f"{self.base_url}/properties/{property_id}"
        response = self._get_with_retry(url)

        if response.status_code == httpx.codes.NOT_FOUND:
            raise NotFoundError("Property not found.")
        if response.status_code >= 500:
            raise PropertyServiceUnavailable("Property service is unavailable.")
        response.raise_for_status()

        data = response.json()
        # Bookability is reported through the status field
        if data.get("status") in ("inactive", "unavailable"):
            data["active"] = False
        prop = PropertyForBooking.model_validate(data)
        if not prop.active:
            raise NotFoundError("Property is not accepting bookings.")
        return prop

    def _get_with_retry(self, url: str) -> httpx.Response:
        last_error: Optional[httpx.TransportError] = None
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            for attempt in (1, 2):
                try:
                    return client.get(url)
                except httpx.TransportError as e:
                    last_error = e
                    logger.warning(f"Property service request failed (attempt {attempt}/2): {e}")
        raise PropertyServiceUnavailable("Property service is unavailable.") from last_error


def get_property_client() -> PropertyClient:
    return PropertyClient()
