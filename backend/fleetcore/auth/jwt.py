"""
JWT token utilities for authentication.

Tokens are minted by the identity service at login; this service only
verifies them. The helpers to create tokens exist for seeding and tests.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt

from fleetcore.config import get_settings
from fleetcore.utils.timezone import utc_now

settings = get_settings()

ROLE_DRIVER = "driver"
ROLE_SUPERVISOR = "supervisor"
ROLES = {ROLE_DRIVER, ROLE_SUPERVISOR}


@dataclass(frozen=True)
class TokenClaims:
    """Verified identity carried by an access token."""
    subject: UUID
    role: str

    @property
    def is_supervisor(self) -> bool:
        return self.role == ROLE_SUPERVISOR


def create_access_token(
    subject: UUID,
    role: str = ROLE_DRIVER,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        subject: Driver id (or supervisor id for supervisor tokens)
        role: "driver" or "supervisor"
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    if expires_delta:
        expire = utc_now() + expires_delta
    else:
        expire = utc_now() + timedelta(minutes=settings.jwt_access_token_expire_minutes)

    to_encode = {
        "sub": str(subject),
        "role": role,
        "exp": expire,
        "type": "access",
    }

    encoded_jwt = jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> Optional[TokenClaims]:
    """
    Decode and validate a JWT access token.

    Args:
        token: The JWT token string

    Returns:
        TokenClaims if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    subject: Optional[str] = payload.get("sub")
    role: Optional[str] = payload.get("role")
    token_type: Optional[str] = payload.get("type")
    if subject is None or token_type != "access" or role not in ROLES:
        return None

    try:
        return TokenClaims(subject=UUID(subject), role=role)
    except ValueError:
        return None
