# =============================================================================
# app/auth/dependencies.py - FastAPI Auth Dependencies
# =============================================================================
# Dependency injection for authentication and authorization.
#
# Token verification supports both:
# - ES256 (current Supabase JWT signing keys) via JWKS
# - HS256 (legacy Supabase JWT secret)
#
# Usage:
#   from app.auth import get_user_context, require_roles, UserContext
#
#   @router.get("/seats")
#   async def seats(user: UserContext = Depends(require_roles("principal"))):
#       ...
# =============================================================================

import logging
import time
from typing import Callable, Optional
from uuid import UUID

import httpx
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError, ExpiredSignatureError

from app.config import settings
from app.auth.models import AuthUser, UserContext
from app.exceptions import AuthenticationError, PermissionDeniedError
from lib.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

# HTTP Bearer token extractor; missing headers become our 401, not FastAPI's 403
security = HTTPBearer(auto_error=False)

# Cache for JWKS keys
_jwks_cache: dict = {}
_jwks_cache_time: float = 0
JWKS_CACHE_TTL = 3600  # 1 hour


def _get_jwks_url() -> str:
    supabase_url = settings.SUPABASE_URL.rstrip("/")
    return f"{supabase_url}/auth/v1/.well-known/jwks.json"


def _fetch_jwks() -> dict:
    """Fetch JWKS from Supabase with caching. Stale keys are served if the refresh fails."""
    global _jwks_cache, _jwks_cache_time

    now = time.time()
    if _jwks_cache and (now - _jwks_cache_time) < JWKS_CACHE_TTL:
        return _jwks_cache

    try:
        response = httpx.get(_get_jwks_url(), timeout=10)
        response.raise_for_status()
        _jwks_cache = response.json()
        _jwks_cache_time = now
        return _jwks_cache
    except httpx.HTTPError as e:
        logger.warning(f"Failed to fetch JWKS: {e}")
        return _jwks_cache or {"keys": []}


def _get_signing_key(token: str) -> tuple:
    """
    Get the signing key for a token.

    Returns:
        Tuple of (key, algorithm) to use for verification
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        return settings.SUPABASE_JWT_SECRET, "HS256"

    alg = header.get("alg", "HS256")
    kid = header.get("kid")

    if alg == "HS256":
        return settings.SUPABASE_JWT_SECRET, "HS256"

    if kid:
        for key in _fetch_jwks().get("keys", []):
            if key.get("kid") == kid:
                return key, alg

    logger.warning(f"No JWKS key for alg={alg}, kid={kid}; falling back to HS256")
    return settings.SUPABASE_JWT_SECRET, "HS256"


def decode_token(token: str) -> AuthUser:
    """
    Verify a Supabase access token.

    Used by both HTTP dependencies and the WebSocket handshake.

    Raises:
        AuthenticationError: If the token is invalid, expired, or malformed
    """
    try:
        signing_key, algorithm = _get_signing_key(token)
        payload = jwt.decode(token, signing_key, algorithms=[algorithm], audience="authenticated")
    except ExpiredSignatureError:
        logger.warning("JWT token has expired")
        raise AuthenticationError("Token has expired")
    except JWTError as e:
        logger.warning(f"JWT validation failed: {e}")
        raise AuthenticationError(f"Invalid token: {e}")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token: missing user ID")

    try:
        user_uuid = UUID(user_id)
    except ValueError:
        raise AuthenticationError("Invalid token: malformed user ID")

    return AuthUser(
        id=user_uuid,
        email=payload.get("email"),
        is_anonymous=bool(payload.get("is_anonymous", False)),
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> AuthUser:
    """
    Extract and validate user from the Bearer token.

    Raises:
        AuthenticationError: 401 if the header is missing or the token is invalid
    """
    if credentials is None:
        raise AuthenticationError("Missing authorization header")

    user = decode_token(credentials.credentials)
    logger.debug(f"Authenticated user: {user.id}")
    return user


def load_user_context(user: AuthUser) -> UserContext:
    """Build a UserContext from the caller's profile row."""
    profile = SupabaseClient.fetch_profile(
        user.id,
        columns="id, email, role, organization_id, preschool_id",
    ) or {}

    return UserContext(
        id=user.id,
        email=user.email or profile.get("email"),
        role=profile.get("role"),
        organization_id=profile.get("organization_id"),
        preschool_id=profile.get("preschool_id"),
        is_guest=user.is_anonymous,
    )


async def get_user_context(user: AuthUser = Depends(get_current_user)) -> UserContext:
    """
    Authenticated caller with role and school.

    Users without a profile row get a context with no role; role-guarded
    endpoints then reject them.
    """
    return load_user_context(user)


def require_roles(*roles: str) -> Callable:
    """
    Dependency factory restricting an endpoint to some roles.

    Usage:
        @router.get("/", dependencies=[Depends(require_roles("superadmin"))])
    """

    async def _check(user: UserContext = Depends(get_user_context)) -> UserContext:
        if not user.has_role(*roles):
            raise PermissionDeniedError(
                f"This action requires one of the roles: {', '.join(roles)}",
                required_roles=list(roles),
            )
        return user

    return _check
