"""
Authentication for the HTTP boundary.

Two schemes:
- Operator routes use JWT bearer tokens carrying a ``tenant_id`` claim
- Trigger routes use a shared secret header, checked before anything
  touches the queues
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from vigil.api.deps import RuntimeDep
from vigil.clock import utcnow
from vigil.config import get_settings
from vigil.constants import TRIGGER_SECRET_HEADER

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    tenant_id: str
    exp: datetime


class AuthenticatedUser(BaseModel):
    """Authenticated operator context."""

    tenant_id: str


def create_access_token(
    tenant_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        tenant_id: The tenant identifier.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = utcnow()
    to_encode = {
        "tenant_id": tenant_id,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    tenant_id = payload.get("tenant_id")
    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing tenant_id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    exp = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    return TokenData(tenant_id=tenant_id, exp=exp)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedUser:
    """FastAPI dependency resolving the bearer token to a tenant."""
    token_data = decode_token(credentials.credentials)
    return AuthenticatedUser(tenant_id=token_data.tenant_id)


# Type alias for dependency injection
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_trigger_secret(
    runtime: RuntimeDep,
    secret: Annotated[str | None, Header(alias=TRIGGER_SECRET_HEADER)] = None,
) -> None:
    """
    Reject trigger calls without the shared secret.

    Raises:
        HTTPException: 401 when the header is missing or wrong.
    """
    expected = runtime.settings.trigger_secret
    if not secret or not hmac.compare_digest(secret.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid trigger secret",
        )
