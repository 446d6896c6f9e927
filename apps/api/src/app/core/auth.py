"""
Authentication and Authorization Module

Admin authorization for the manual job trigger endpoints.

Tokens are issued by the school portal. This module validates them and checks
the ``role`` claim. Instead of raising, ``require_admin`` returns an
``AuthResult`` so the caller can answer in its own response format; the
message tells "not authenticated" (401) apart from "not authorized" (403).

SECURITY NOTE:
- Development mode test tokens are ONLY accepted when PYTHON_ENV=development
- PYTHON_ENV defaults to production, so an unconfigured deploy rejects them
"""

import logging
import os
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.security import decode_token

logger = logging.getLogger(__name__)

# auto_error=False so a missing header is reported through AuthResult
security = HTTPBearer(
    auto_error=False,
    description="JWT Bearer token issued by the school portal",
)

NOT_AUTHENTICATED = "Not authenticated"
NOT_AUTHORIZED = "Not authorized"


@dataclass
class AdminUser:
    """
    An authenticated user, populated from JWT claims.

    Attributes:
        id: User's unique identifier (UUID)
        email: User's email address
        role: User's role (must match settings.admin_role for admin endpoints)
        name: User's display name (optional)
    """

    id: UUID
    email: str
    role: str
    name: str | None = None

    def __str__(self) -> str:
        return f"AdminUser(id={self.id}, email={self.email}, role={self.role})"


@dataclass
class AuthResult:
    """Outcome of an authorization check."""

    authorized: bool
    user: AdminUser | None = None
    message: str | None = None


def _is_dev_mode_safe() -> bool:
    """
    Check if development test tokens may be accepted.

    Requires settings.is_development, not settings.is_production, and a
    PYTHON_ENV variable that is neither "production" nor "staging".
    """
    env_var = os.getenv("PYTHON_ENV", "").lower()

    is_safe = (
        settings.is_development
        and not settings.is_production
        and env_var != "production"
        and env_var != "staging"
    )

    if is_safe:
        logger.warning(
            "SECURITY: Development auth mode is ENABLED. This MUST NOT be used in production!"
        )

    return is_safe


_DEVELOPMENT_MODE = _is_dev_mode_safe()

_DEV_ADMIN = AdminUser(
    id=UUID("00000000-0000-0000-0000-000000000001"),
    email="admin@school.dev",
    role=settings.admin_role,
    name="Development Admin",
)


def _user_from_token(token: str) -> AdminUser | None:
    """
    Validate a bearer token and build the user from its claims.

    Returns:
        The user, or None when the token is invalid, expired, of the wrong
        type or missing required claims
    """
    if _DEVELOPMENT_MODE and token in ("dev-token", "test-token"):
        logger.debug("Development mode: Using test token")
        return _DEV_ADMIN

    payload = decode_token(token)
    if payload is None:
        logger.warning("Invalid or expired JWT token")
        return None

    if payload.get("type", "access") != "access":
        logger.warning(f"Invalid token type: {payload.get('type')}")
        return None

    try:
        user_id = UUID(payload["sub"])
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Invalid token claims: {e}")
        return None

    return AdminUser(
        id=user_id,
        email=payload.get("email", ""),
        role=payload.get("role", ""),
        name=payload.get("name"),
    )


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> AuthResult:
    """
    FastAPI dependency that checks for an admin session.

    Usage:
        @router.post("/cron/job")
        async def endpoint(auth: AuthResult = Depends(require_admin)):
            if not auth.authorized:
                ...

    Returns:
        AuthResult. When not authorized, ``message`` starts with
        NOT_AUTHENTICATED (no or invalid session) or NOT_AUTHORIZED
        (valid session without the admin role).
    """
    if credentials is None or not credentials.credentials:
        return AuthResult(authorized=False, message=f"{NOT_AUTHENTICATED}: missing session token")

    user = _user_from_token(credentials.credentials)
    if user is None:
        return AuthResult(
            authorized=False,
            message=f"{NOT_AUTHENTICATED}: invalid or expired session",
        )

    if user.role != settings.admin_role:
        logger.warning(
            f"Access denied: User {user.id} ({user.email}) has role '{user.role}', "
            f"but '{settings.admin_role}' is required"
        )
        return AuthResult(
            authorized=False,
            user=user,
            message=f"{NOT_AUTHORIZED}: admin access required",
        )

    logger.debug(f"Authenticated admin: {user.id} ({user.email})")
    return AuthResult(authorized=True, user=user)


def is_unauthenticated(result: AuthResult) -> bool:
    """True when the failure is a missing or invalid session rather than a role problem."""
    return bool(result.message) and NOT_AUTHENTICATED in result.message


__all__ = [
    "AdminUser",
    "AuthResult",
    "NOT_AUTHENTICATED",
    "NOT_AUTHORIZED",
    "is_unauthenticated",
    "require_admin",
]
