"""
FastAPI Dependencies - Caller authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hashlib
import secrets
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import AuthenticationError
from app.services.device_sync import DeviceSyncService
from app.services.trial_quota import TrialQuotaService

logger = get_logger(__name__)


# ============================================================================
# Service API Key Authentication
# ============================================================================


@dataclass(frozen=True)
class ServiceCaller:
    """Authenticated upstream caller."""

    key_id: str  # First 12 hex chars of the key's SHA-256, safe to log


def _key_id(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()[:12]


def validate_service_key(api_key: str | None, valid_keys: list[str]) -> ServiceCaller:
    """
    Check a presented key against the configured keys in constant time.

    Raises:
        AuthenticationError: key missing or not configured
    """
    if not api_key:
        raise AuthenticationError("missing X-API-Key header")

    presented = hashlib.sha256(api_key.encode()).digest()
    matched = False
    for candidate in valid_keys:
        expected = hashlib.sha256(candidate.encode()).digest()
        # Compare every key so timing does not reveal which one matched
        matched |= secrets.compare_digest(presented, expected)

    if not matched:
        raise AuthenticationError("invalid API key")
    return ServiceCaller(key_id=_key_id(api_key))


async def require_service_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> ServiceCaller:
    """
    FastAPI dependency to validate the X-API-Key header.

    Usage:
        @router.post("/v1/trials/consume")
        async def consume(caller: ServiceCaller = Depends(require_service_key)):
            ...

    Raises:
        HTTPException 401 if missing or invalid
    """
    try:
        return validate_service_key(x_api_key, settings.valid_service_api_keys)
    except AuthenticationError as exc:
        logger.warning("service_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


async def get_user_id(
    x_user_id: str | None = Header(None, description="Authenticated user id"),
    caller: ServiceCaller = Depends(require_service_key),
) -> str:
    """
    User id asserted by the authenticated upstream caller.

    Raises:
        HTTPException 401 if the header is missing or blank
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed: missing X-User-ID header",
        )
    return x_user_id.strip()


# ============================================================================
# Service Wiring
# ============================================================================


def get_trial_service(request: Request) -> TrialQuotaService:
    """Process-wide trial service built in the application lifespan."""
    service: TrialQuotaService = request.app.state.trial_service
    return service


async def get_device_service(db: AsyncSession = Depends(get_write_db)) -> DeviceSyncService:
    """Device sync service bound to a write session."""
    return DeviceSyncService(db, settings)


async def get_device_read_service(db: AsyncSession = Depends(get_read_db)) -> DeviceSyncService:
    """Device sync service bound to a read replica session."""
    return DeviceSyncService(db, settings)


def get_client_ip(request: Request) -> str | None:
    """Client address, honouring the first hop of X-Forwarded-For."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None
