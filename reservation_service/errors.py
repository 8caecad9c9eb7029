"""
Error taxonomy of the reservation engine.

Every error carries the HTTP status it surfaces as; main.py registers one
exception handler for the whole family.
"""
from typing import Optional

from fastapi import status


class BookingError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "booking_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class ValidationError(BookingError):
    status_code = 422  # Unprocessable Content
    code = "validation_error"

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail)
        self.field = field

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class ConflictError(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class DatesUnavailable(ConflictError):
    code = "dates_unavailable"


class IdempotencyKeyReused(ConflictError):
    code = "idempotency_key_reused"


class RequestInProgress(ConflictError):
    code = "request_in_progress"


class InvalidTransition(ConflictError):
    code = "invalid_transition"


class AuthorizationError(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class Forbidden(AuthorizationError):
    pass


class PolicyViolation(AuthorizationError):
    code = "policy_violation"


class NotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class GatewayError(BookingError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "gateway_error"


class GatewayUnavailable(GatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "gateway_unavailable"


class InvalidSignature(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"


class InvariantViolation(BookingError):
    code = "invariant_violation"
