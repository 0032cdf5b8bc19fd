# =============================================================================
# app/auth/__init__.py - Authentication Module
# =============================================================================
# Provides JWT-based authentication using Supabase Auth, plus role checks
# against the profiles table.
#
# Usage:
#   from app.auth import get_user_context, UserContext
#
#   @router.get("/protected")
#   async def protected(user: UserContext = Depends(get_user_context)):
#       return {"user_id": user.id, "role": user.role}
# =============================================================================

from app.auth.dependencies import (
    decode_token,
    get_current_user,
    get_user_context,
    load_user_context,
    require_roles,
)
from app.auth.models import AuthUser, UserContext

__all__ = [
    "decode_token",
    "get_current_user",
    "get_user_context",
    "load_user_context",
    "require_roles",
    "AuthUser",
    "UserContext",
]
