"""
Supabase JWT authentication for the feed API.

Authentication itself is owned by Supabase Auth; this module only verifies the
bearer token a client obtained there and exposes the caller's user id to the
routes.

Usage:
    from core.auth import require_auth, SupabaseUser

    @router.get("/api/feed")
    def get_feed(user: SupabaseUser = Depends(require_auth)):
        ...
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config.settings import get_settings


security = HTTPBearer(
    scheme_name="Supabase JWT",
    description="Access token issued by Supabase Auth.",
    auto_error=False,
)


@dataclass
class SupabaseUser:
    """
    Authenticated user from a Supabase JWT.

    Attributes:
        id: User's UUID (``sub`` claim)
        email: User's email address
        role: Postgres role (usually ``authenticated``)
        session_id: Supabase session UUID
        is_anonymous: True for anonymous sign-ins
        app_metadata: App-specific claims (used for the ``admin`` role)
    """
    id: str
    email: Optional[str] = None
    role: str = "authenticated"
    session_id: Optional[str] = None
    is_anonymous: bool = False
    app_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.app_metadata.get("role") == "admin"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_jwt(token: str) -> dict:
    """
    Verify and decode a Supabase JWT token.

    Raises:
        HTTPException: 401 if the token is invalid, expired or malformed,
            503 if the server has no JWT secret configured
    """
    settings = get_settings()
    if not settings.supabase_jwt_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )

    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            audience="authenticated",
            options={
                "verify_exp": True,
                "verify_aud": True,
                "require": ["sub", "exp", "aud"],
            },
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidAudienceError:
        raise _unauthorized("Invalid token audience")
    except jwt.InvalidTokenError as e:
        raise _unauthorized(f"Invalid token: {str(e)}")


def extract_user(payload: dict) -> SupabaseUser:
    """Build a SupabaseUser from a verified JWT payload."""
    return SupabaseUser(
        id=payload["sub"],
        email=payload.get("email"),
        role=payload.get("role", "authenticated"),
        session_id=payload.get("session_id"),
        is_anonymous=payload.get("is_anonymous", False),
        app_metadata=payload.get("app_metadata") or {},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[SupabaseUser]:
    """Optional auth: the verified user, or None when no token was sent."""
    if not credentials or not credentials.credentials:
        return None
    return extract_user(verify_jwt(credentials.credentials))


def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> SupabaseUser:
    """FastAPI dependency that requires a valid bearer token (401 otherwise)."""
    if not credentials:
        raise _unauthorized("Authorization header required")
    if not credentials.credentials:
        raise _unauthorized("Token required")
    return extract_user(verify_jwt(credentials.credentials))


def require_admin(user: SupabaseUser = Depends(require_auth)) -> SupabaseUser:
    """FastAPI dependency for management endpoints (403 for non-admins)."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user
