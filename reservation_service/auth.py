from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import jwt, JWTError

from .config import settings

api_key_header = APIKeyHeader(name="Authorization")

ROLE_GUEST = "guest"
ROLE_HOST = "host"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as issued by the auth service."""
    user_id: int
    role: str = ROLE_GUEST

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def _decode(token: str) -> dict:
    scheme, jwt_token = token.split()
    if scheme.lower() != "bearer":
        raise ValueError("not a bearer token")
    return jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    try:
        payload = _decode(request.headers.get("Authorization"))
        user_id = payload.get("sub")
        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return request.client.host


async def get_current_principal(
        token: Annotated[str, Depends(api_key_header)]
) -> Principal:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = _decode(token)
        sub = payload.get("sub")
        if sub is None:
            raise credentials_exception
        role = payload.get("role") or ROLE_GUEST
        if role not in (ROLE_GUEST, ROLE_HOST, ROLE_ADMIN):
            raise credentials_exception
        return Principal(user_id=int(sub), role=role)
    except (JWTError, ValueError, AttributeError, TypeError):
        raise credentials_exception
