# =============================================================================
# lib/supabase_client.py - Supabase Client Wrapper
# =============================================================================
# This module provides a typed wrapper for Supabase database operations.
# It implements the singleton pattern to reuse a single client connection
# and provides specialized methods for fetching:
# - User profiles (role, organization, preschool)
# - Organization subscription tier
# - RPC calls with consistent error wrapping
#
# Usage:
#   from lib.supabase_client import SupabaseClient
#   profile = SupabaseClient.fetch_profile(user_id)
# =============================================================================

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from supabase import create_client, Client

from app.config import settings

# Set up logging for this module
logger = logging.getLogger(__name__)

# PostgREST code returned by .single() when no row matches
NOT_FOUND_CODE = "PGRST116"


class SupabaseClientError(Exception):
    """
    Error during Supabase operations.

    Carries a code and an actionable suggestion alongside the message.
    """

    def __init__(
        self,
        message: str,
        code: str = "SUPABASE_ERROR",
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}

    def __str__(self) -> str:
        result = f"[{self.code}] {self.message}"
        if self.suggestion:
            result += f" Suggestion: {self.suggestion}"
        return result


def is_not_found(error: Exception) -> bool:
    """True if the error is PostgREST's "no rows returned" for .single()."""
    return NOT_FOUND_CODE in str(error)


class SupabaseClient:
    """
    Typed wrapper for Supabase database operations.

    One service-role client instance is shared across the application.
    All methods are class methods for easy access without instantiation.

    Example:
        profile = SupabaseClient.fetch_profile("550e8400-...")
        tier = SupabaseClient.fetch_organization_tier(profile["preschool_id"])
    """

    _instance: Client | None = None

    @classmethod
    def get_client(cls) -> Client:
        """
        Get or create the singleton Supabase client.

        Uses the service_role key which bypasses Row Level Security (RLS);
        every query in this codebase applies its own tenant filter.

        Raises:
            SupabaseClientError: If client creation fails
        """
        if cls._instance is None:
            try:
                cls._instance = create_client(
                    settings.SUPABASE_URL,
                    settings.SUPABASE_SERVICE_KEY
                )
                logger.info("Supabase client initialized successfully")
            except Exception as e:
                raise SupabaseClientError(
                    message=f"Failed to create Supabase client: {e}",
                    code="CLIENT_INIT_FAILED",
                    suggestion="Check SUPABASE_URL and SUPABASE_SERVICE_KEY in your .env file"
                )
        return cls._instance

    @classmethod
    def for_user(cls, access_token: str) -> Client:
        """
        Create a client that acts as the signed-in user.

        RLS policies and auth.uid() inside SQL functions then see the
        caller, not the service role. Not cached: one per request.
        """
        client = create_client(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
        client.postgrest.auth(access_token)
        return client

    @classmethod
    def _normalize_uuid(cls, uuid_value: str | UUID) -> str:
        """Convert UUID to string for queries."""
        return str(uuid_value) if isinstance(uuid_value, UUID) else uuid_value

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    @classmethod
    def fetch_profile(
        cls,
        user_id: str | UUID,
        columns: str = "id, email, first_name, last_name, role, organization_id, preschool_id",
    ) -> dict[str, Any] | None:
        """
        Fetch a single profile row.

        Args:
            user_id: The auth user UUID (profiles.id)
            columns: Columns to select

        Returns:
            Profile dict, or None if the user has no profile yet

        Raises:
            SupabaseClientError: If the query fails for another reason
        """
        client = cls.get_client()
        user_id_str = cls._normalize_uuid(user_id)

        try:
            response = (
                client.table("profiles")
                .select(columns)
                .eq("id", user_id_str)
                .single()
                .execute()
            )
            return response.data

        except Exception as e:
            if is_not_found(e):
                return None
            raise SupabaseClientError(
                message=f"Failed to fetch profile: {e}",
                code="FETCH_PROFILE_FAILED",
                suggestion="Check that the profiles table is accessible",
                details={"user_id": user_id_str},
            )

    @classmethod
    def fetch_profiles(
        cls,
        user_ids: list[str],
        columns: str = "id, email",
    ) -> list[dict[str, Any]]:
        """
        Fetch several profiles in one query.

        Returns an empty list when user_ids is empty.
        """
        if not user_ids:
            return []

        client = cls.get_client()
        try:
            response = (
                client.table("profiles")
                .select(columns)
                .in_("id", user_ids)
                .execute()
            )
            return response.data or []

        except Exception as e:
            raise SupabaseClientError(
                message=f"Failed to fetch profiles: {e}",
                code="FETCH_PROFILES_FAILED",
                details={"count": len(user_ids)},
            )

    @classmethod
    def fetch_profile_ids(
        cls,
        roles: list[str],
        preschool_id: str | None = None,
    ) -> list[str]:
        """
        Fetch ids of active profiles with any of the given roles.

        Args:
            roles: Role names to match
            preschool_id: Restrict to one school; None searches all schools

        Returns:
            List of profile ids
        """
        client = cls.get_client()
        try:
            query = (
                client.table("profiles")
                .select("id")
                .in_("role", roles)
                .eq("is_active", True)
            )
            if preschool_id:
                query = query.eq("preschool_id", preschool_id)
            response = query.execute()
            return [row["id"] for row in response.data or []]

        except Exception as e:
            raise SupabaseClientError(
                message=f"Failed to fetch profiles by role: {e}",
                code="FETCH_PROFILES_FAILED",
                details={"roles": roles, "preschool_id": preschool_id},
            )

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    @classmethod
    def fetch_organization_tier(cls, organization_id: str | UUID | None) -> str:
        """
        Get the subscription tier for a school.

        Users without an organization (independent parents and teachers)
        are on the free tier.

        Returns:
            Tier name, "free" if unknown
        """
        if not organization_id:
            return "free"

        client = cls.get_client()
        org_id_str = cls._normalize_uuid(organization_id)

        try:
            response = (
                client.table("preschools")
                .select("subscription_tier")
                .eq("id", org_id_str)
                .single()
                .execute()
            )
            tier = (response.data or {}).get("subscription_tier")
            return tier or "free"

        except Exception as e:
            if is_not_found(e):
                return "free"
            raise SupabaseClientError(
                message=f"Failed to fetch organization tier: {e}",
                code="FETCH_TIER_FAILED",
                details={"organization_id": org_id_str},
            )

    @classmethod
    def fetch_single(
        cls,
        table: str,
        row_id: str | UUID,
        columns: str = "*",
    ) -> dict[str, Any] | None:
        """
        Fetch one row by primary key from any table.

        Returns:
            Row dict, or None if not found
        """
        client = cls.get_client()
        row_id_str = cls._normalize_uuid(row_id)

        try:
            response = (
                client.table(table)
                .select(columns)
                .eq("id", row_id_str)
                .single()
                .execute()
            )
            return response.data

        except Exception as e:
            if is_not_found(e):
                return None
            raise SupabaseClientError(
                message=f"Failed to fetch {table} row: {e}",
                code="FETCH_ROW_FAILED",
                details={"table": table, "id": row_id_str},
            )

    # -------------------------------------------------------------------------
    # RPC
    # -------------------------------------------------------------------------

    @classmethod
    def call_rpc(
        cls,
        function_name: str,
        params: dict[str, Any] | None = None,
        access_token: str | None = None,
    ) -> Any:
        """
        Call a Postgres function exposed through PostgREST.

        Args:
            function_name: Name of the SQL function
            params: Named arguments
            access_token: Run as this user instead of the service role

        Returns:
            The function's return value (response.data)

        Raises:
            SupabaseClientError: If the RPC fails. The original database
                message is kept in .message so callers can map it.
        """
        try:
            client = cls.for_user(access_token) if access_token else cls.get_client()
            response = client.rpc(function_name, params or {}).execute()
            return response.data

        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            raise SupabaseClientError(
                message=message,
                code="RPC_FAILED",
                details={"function": function_name},
            )
