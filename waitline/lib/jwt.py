"""JWT token generation and validation utilities.

Staff identity arrives as an HS256 bearer token issued by the dashboard layer.
Tokens carry standard claims (exp, iat, sub) where sub is the staff user id.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from waitline.lib.settings import settings


# Token expiration time (12 hours by default, one staff shift)
TOKEN_EXPIRY_HOURS = 12


def create_access_token(
    user_id: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token for a staff user.

    Args:
        user_id: UUID of the staff user (stored in 'sub' claim)
        role: Staff role claim (employee or admin)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(hours=TOKEN_EXPIRY_HOURS)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + expires_delta,
    }

    return jwt.encode(
        payload,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Raises:
        jwt.InvalidTokenError: If token is invalid, expired, or signature doesn't match
    """
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
    )
