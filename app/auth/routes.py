# =============================================================================
# app/auth/routes.py - Authentication Routes
# =============================================================================
# Sign-up and sign-in happen client-side with Supabase Auth.
# These routes let clients check their token and see the resolved context.
# =============================================================================

import logging

from fastapi import APIRouter, Depends

from app.auth.dependencies import get_current_user, get_user_context
from app.auth.models import AuthUser, UserContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.get("/me")
async def get_current_user_info(
    user: UserContext = Depends(get_user_context)
) -> dict:
    """
    The caller's identity, role and school as the API sees them.

    Raises:
        401: If not authenticated
    """
    return {
        "id": str(user.id),
        "email": user.email,
        "role": user.role,
        "organization_id": user.effective_org_id,
        "is_guest": user.is_guest,
    }


@router.get("/verify")
async def verify_token(
    user: AuthUser = Depends(get_current_user)
) -> dict:
    """Check that a stored token is still valid."""
    return {
        "valid": True,
        "user_id": str(user.id),
        "email": user.email,
    }
