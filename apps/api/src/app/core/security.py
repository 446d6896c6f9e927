"""
Security Utilities

JWT encoding and decoding. Tokens are issued by the school portal; this
service validates them and reads the ``sub``, ``email`` and ``role`` claims.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from app.core.config import settings

logger = logging.getLogger(__name__)


def create_access_token(
    subject: str,
    additional_claims: dict[str, Any] | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a signed access token.

    Args:
        subject: User ID stored in the ``sub`` claim
        additional_claims: Extra claims (email, role, name)
        expires_delta: Custom lifetime, defaults to settings

    Returns:
        Encoded JWT string
    """
    now = datetime.now(UTC)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))

    payload: dict[str, Any] = {
        "sub": subject,
        "type": "access",
        "iat": now,
        "exp": expire,
    }
    if additional_claims:
        payload.update(additional_claims)

    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any] | None:
    """
    Decode and verify a JWT.

    Returns:
        The token payload, or None if the signature is invalid or it expired
    """
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        return None
