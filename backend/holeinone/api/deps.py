"""
Hole-in-One Engine - API Dependencies
=====================================

Shared dependencies for FastAPI endpoints.

Identity comes from the session collaborator as an HS256 bearer token
carrying ``sub`` (player or staff UUID) and ``role``. The engine trusts it.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from holeinone.core.config import settings
from holeinone.core.database import get_db
from holeinone.core.engine.clock import Clock, SystemClock
from holeinone.core.engine.notifications import NotificationClient
from holeinone.core.engine.results import EngineResult, Reason, ResultKind
from holeinone.core.schemas import EngineErrorResponse


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)

ROLES = ("player", "staff", "admin", "service")
STAFF_ROLES = ("staff", "admin")
# Payment facts come from the payment collaborator (service) or venue staff
PAYMENT_ROLES = ("service", "staff", "admin")


@dataclass(frozen=True)
class Identity:
    """Caller identity asserted by the bearer token."""
    id: UUID
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def can_confirm_payment(self) -> bool:
        return self.role in PAYMENT_ROLES


# ==========================================================================
# Token Utilities
# ==========================================================================

def create_access_token(
    subject_id: UUID,
    role: str = "player",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a new access token.

    Args:
        subject_id: Player or staff UUID
        role: One of player, staff, admin, service
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(subject_id),
        "role": role,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


# ==========================================================================
# Identity Dependencies
# ==========================================================================

async def get_current_identity(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Identity:
    """
    Get the authenticated caller.

    Raises:
        HTTPException: If not authenticated or the token payload is malformed
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = payload.get("role", "player")
    if role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid role in token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        subject_id = UUID(payload.get("sub") or "")
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid subject in token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    return Identity(id=subject_id, role=role)


async def get_current_staff(
    identity: Annotated[Identity, Depends(get_current_identity)],
) -> Identity:
    """
    Get current caller and verify they are staff.

    Raises:
        HTTPException: If caller is a player
    """
    if not identity.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required",
        )
    return identity


async def get_payment_authority(
    identity: Annotated[Identity, Depends(get_current_identity)],
) -> Identity:
    """
    Get current caller and verify they may assert payment facts.

    Raises:
        HTTPException: If caller is a player
    """
    if not identity.can_confirm_payment:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Payment confirmation requires a service or staff identity",
        )
    return identity


# ==========================================================================
# Engine Collaborators
# ==========================================================================

_system_clock = SystemClock()
_notifier: Optional[NotificationClient] = None


def get_clock() -> Clock:
    """Clock used by the engine. Overridden in tests."""
    return _system_clock


def get_notifier() -> NotificationClient:
    """Shared notification client, created on first use."""
    global _notifier
    if _notifier is None:
        _notifier = NotificationClient()
    return _notifier


async def close_notifier() -> None:
    global _notifier
    if _notifier is not None:
        await _notifier.close()
        _notifier = None


# ==========================================================================
# Result Mapping
# ==========================================================================

def error_status(result: EngineResult) -> int:
    """HTTP status for a failed engine result."""
    if result.kind == ResultKind.VALIDATION:
        if result.reason is not None and result.reason.value.endswith("not_found"):
            return status.HTTP_404_NOT_FOUND
        if result.reason == Reason.NOT_OWNER:
            return status.HTTP_403_FORBIDDEN
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if result.kind == ResultKind.PRECONDITION_FAILED:
        if result.reason == Reason.RATE_LIMITED:
            return status.HTTP_429_TOO_MANY_REQUESTS
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(result: EngineResult) -> JSONResponse:
    """Render a failed engine result as ``{reason, retry_at, detail}``."""
    body = EngineErrorResponse(
        reason=result.reason.value if result.reason else result.kind.value,
        retry_at=result.retry_at,
        detail=result.detail,
    )
    return JSONResponse(
        status_code=error_status(result),
        content=body.model_dump(mode="json"),
    )


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

# Use these in endpoint signatures for cleaner code
CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
CurrentStaff = Annotated[Identity, Depends(get_current_staff)]
PaymentAuthority = Annotated[Identity, Depends(get_payment_authority)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
EngineClock = Annotated[Clock, Depends(get_clock)]
Notifier = Annotated[NotificationClient, Depends(get_notifier)]
