# =============================================================================
# app/auth/models.py - Authentication Models
# =============================================================================
# Pydantic models for authentication data.
# - AuthUser: identity from the verified JWT
# - UserContext: AuthUser plus role and school from the profiles table
# =============================================================================

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuthUser(BaseModel):
    """
    Authenticated user extracted from Supabase JWT.

    This is the minimal user info available from the token itself,
    without querying the database.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID
    email: Optional[str] = None
    is_anonymous: bool = False


class UserContext(BaseModel):
    """
    Caller identity plus tenancy, loaded once per request.

    Schools are stored as organization_id on newer profiles and
    preschool_id on older ones; effective_org_id reads either.
    """
    id: UUID
    email: Optional[str] = None
    role: Optional[str] = None
    organization_id: Optional[str] = None
    preschool_id: Optional[str] = None
    is_guest: bool = False

    @property
    def effective_org_id(self) -> Optional[str]:
        return self.organization_id or self.preschool_id

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    def belongs_to_organization(self, org_id: str | UUID | None) -> bool:
        if not org_id or not self.effective_org_id:
            return False
        return str(org_id) == str(self.effective_org_id)
