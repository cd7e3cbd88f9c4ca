"""
Authentication dependencies for FastAPI.
"""

from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.auth.jwt import ROLE_DRIVER, TokenClaims, decode_access_token
from fleetcore.config import get_settings
from fleetcore.database import get_db
from fleetcore.models import Driver

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


async def get_current_driver(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Driver:
    """
    Get the driver the bearer token was issued to.

    Raises 401 if not authenticated, the token is invalid, or the token is
    not a driver token.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    claims = decode_access_token(credentials.credentials)
    if claims is None or claims.role != ROLE_DRIVER:
        raise credentials_exception

    result = await db.execute(
        select(Driver).where(Driver.id == claims.subject, Driver.is_active == True)
    )
    driver = result.scalar_one_or_none()

    if driver is None:
        raise credentials_exception

    return driver


def ensure_same_driver(driver: Driver, driver_id: UUID) -> None:
    """Reject a request that acts on behalf of another driver."""
    if driver.id != driver_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not belong to this driver",
        )


async def verify_admin_access(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_admin_api_key: Optional[str] = Header(None, alias="X-Admin-API-Key"),
) -> Optional[TokenClaims]:
    """
    Verify admin access via either:
    1. Valid X-Admin-API-Key header
    2. Supervisor bearer token

    Returns the supervisor's claims if authenticated via JWT, None if via API key.
    Raises 403 if neither method succeeds.
    """
    settings = get_settings()

    # Method 1: Check API key
    if x_admin_api_key:
        if settings.admin_api_key and x_admin_api_key == settings.admin_api_key:
            return None  # Valid API key, no user context
        # Invalid API key - don't fall through, reject immediately
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )

    # Method 2: Check supervisor token
    if credentials:
        claims = decode_access_token(credentials.credentials)
        if claims is not None and claims.is_supervisor:
            return claims

    # Neither method succeeded
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Admin access required. Provide a supervisor token or X-Admin-API-Key header.",
    )


def admin_actor_id(claims: Optional[TokenClaims]) -> str:
    """Identity recorded on admin actions (reviews, overrides)."""
    return str(claims.subject) if claims is not None else "admin-api-key"
