# =============================================================================
# core/services/quota_service.py - AI Usage & Quota Accounting
# =============================================================================
# Everything that reads or writes ai_usage_logs and teacher_ai_allocations:
# - Monthly quota checks for the AI proxy
# - Usage logging (proxy calls, client-reported events, bulk offline sync)
# - Usage statistics for the dashboards
# - Plan feature limits (what each subscription plan includes)
# - Per-teacher allocations set by principals
#
# Quota counts are per user, per service, per UTC calendar month, and only
# successful calls count.
# =============================================================================

import logging
from datetime import timedelta
from typing import Any

from core.models.usage import (
    AllocationQuotas,
    ClientUsageEvent,
    MonthlyUsage,
    QuotaCheckResult,
    QuotaInfo,
    ServiceUsage,
    UsageLogEntry,
    UsageStats,
)
from lib.supabase_client import SupabaseClient, is_not_found
from lib.utils import start_of_month_utc, utc_now

logger = logging.getLogger(__name__)

UNLIMITED = -1
DEFAULT_SERVICE_LIMIT = 10

# Monthly proxy call limits by tier and service
SERVICE_QUOTAS: dict[str, dict[str, int]] = {
    "free": {
        "lesson_generation": 5,
        "grading_assistance": 5,
        "homework_help": 15,
        "dash_conversation": 50,
    },
    "basic": {
        "lesson_generation": 20,
        "grading_assistance": 20,
        "homework_help": 50,
        "dash_conversation": 200,
    },
    "pro": {
        "lesson_generation": 100,
        "grading_assistance": 100,
        "homework_help": 300,
        "dash_conversation": 1000,
    },
    "enterprise": {
        "lesson_generation": UNLIMITED,
        "grading_assistance": UNLIMITED,
        "homework_help": UNLIMITED,
        "dash_conversation": UNLIMITED,
    },
}

# Feature quotas included in each subscription plan (transcription in minutes)
PLAN_FEATURE_LIMITS: dict[str, dict[str, int]] = {
    "free": {"lesson_generation": 5, "grading_assistance": 5, "homework_help": 15, "transcription": 60},
    "parent_starter": {"lesson_generation": 0, "grading_assistance": 0, "homework_help": 30, "transcription": 120},
    "parent_plus": {"lesson_generation": 0, "grading_assistance": 0, "homework_help": 100, "transcription": 300},
    "private_teacher": {"lesson_generation": 20, "grading_assistance": 20, "homework_help": 100, "transcription": 600},
    "pro": {"lesson_generation": 50, "grading_assistance": 100, "homework_help": 300, "transcription": 1800},
    "enterprise": {"lesson_generation": 5000, "grading_assistance": 10000, "homework_help": 30000, "transcription": 36000},
}

MONTHLY_TRACKED_SERVICES = ("lesson_generation", "grading_assistance", "homework_help")

PRINCIPAL_ALLOCATION = AllocationQuotas(claude_messages=200, content_generation=50, assessment_ai=100)
TEACHER_ALLOCATION = AllocationQuotas(claude_messages=50, content_generation=10, assessment_ai=25)


def get_service_limit(tier: str | None, service_type: str) -> int:
    """Monthly limit for a service; unknown tiers use free, unknown services get 10."""
    quotas = SERVICE_QUOTAS.get((tier or "free").lower(), SERVICE_QUOTAS["free"])
    return quotas.get(service_type, DEFAULT_SERVICE_LIMIT)


def get_plan_limits(tier: str | None) -> dict[str, int]:
    return dict(PLAN_FEATURE_LIMITS.get((tier or "free").lower(), PLAN_FEATURE_LIMITS["free"]))


def can_use_feature(tier: str | None, feature: str, used: int, count: int = 1) -> tuple[bool, str | None]:
    """
    Check a plan feature quota.

    Returns:
        (allowed, reason). reason is "not_in_plan" when the plan's limit is
        0, "over_quota" when used + count would exceed it.
    """
    limit = get_plan_limits(tier).get(feature, 0)
    if limit <= 0:
        return False, "not_in_plan"
    if used + count > limit:
        return False, "over_quota"
    return True, None


class QuotaService:
    """
    Quota checks and usage accounting.

    Logging methods never raise: a failed insert must not fail the AI call
    it describes.
    """

    # -------------------------------------------------------------------------
    # Quota checks
    # -------------------------------------------------------------------------

    @staticmethod
    def count_monthly_usage(user_id: str, service_type: str) -> int:
        """Successful calls for this user and service since the start of the UTC month."""
        client = SupabaseClient.get_client()
        response = (
            client.table("ai_usage_logs")
            .select("id")
            .eq("user_id", str(user_id))
            .eq("service_type", service_type)
            .eq("status", "success")
            .gte("created_at", start_of_month_utc().isoformat())
            .execute()
        )
        return len(response.data or [])

    @staticmethod
    def check_quota(
        user_id: str,
        organization_id: str | None,
        service_type: str,
    ) -> QuotaCheckResult:
        """
        Check whether the user may make another call for this service.

        Args:
            user_id: Caller's profile id
            organization_id: Caller's school, used to look up the tier
            service_type: Normalized service type

        Returns:
            QuotaCheckResult; allowed=False carries quota_info and an error
            message for the 429 response
        """
        try:
            tier = SupabaseClient.fetch_organization_tier(organization_id)
        except Exception as e:
            logger.warning(f"Tier lookup failed for org {organization_id}, using free: {e}")
            tier = "free"
        tier = (tier or "free").lower()

        limit = get_service_limit(tier, service_type)
        if limit == UNLIMITED:
            return QuotaCheckResult(
                allowed=True,
                quota_info=QuotaInfo(used=0, limit=UNLIMITED, remaining=UNLIMITED, tier=tier),
            )

        try:
            used = QuotaService.count_monthly_usage(user_id, service_type)
        except Exception as e:
            logger.error(f"Quota usage lookup failed for user {user_id}: {e}")
            return QuotaCheckResult(allowed=False, error="Quota service unavailable")

        remaining = max(0, limit - used)
        info = QuotaInfo(used=used, limit=limit, remaining=remaining, tier=tier)

        if remaining <= 0:
            return QuotaCheckResult(
                allowed=False,
                quota_info=info,
                error=f"Quota exceeded for {service_type}. Used {used}/{limit} this month.",
            )

        return QuotaCheckResult(allowed=True, quota_info=info)

    # -------------------------------------------------------------------------
    # Usage logging
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_from_entry(entry: UsageLogEntry) -> dict[str, Any]:
        return {
            "user_id": str(entry.user_id),
            "preschool_id": entry.organization_id,
            "organization_id": entry.organization_id,
            "service_type": entry.service_type,
            "ai_model_used": entry.model,
            "status": entry.status,
            "input_tokens": entry.tokens_in,
            "output_tokens": entry.tokens_out,
            "total_cost": entry.cost,
            "processing_time_ms": entry.processing_time_ms,
            "input_text": entry.input_text,
            "output_text": entry.output_text,
            "error_message": entry.error_message,
            "metadata": entry.metadata,
        }

    @staticmethod
    def log_usage(entry: UsageLogEntry) -> str | None:
        """
        Insert one ai_usage_logs row.

        Returns:
            The new row id, or None if the insert failed
        """
        client = SupabaseClient.get_client()
        try:
            response = client.table("ai_usage_logs").insert(QuotaService._row_from_entry(entry)).execute()
            if response.data:
                return response.data[0].get("id")
            return None
        except Exception as e:
            logger.error(f"Failed to log AI usage for user {entry.user_id}: {e}")
            return None

    @staticmethod
    def log_client_event(
        user_id: str,
        organization_id: str | None,
        event: ClientUsageEvent,
    ) -> bool:
        """Record usage reported by a client. Cost arrives in cents."""
        entry = UsageLogEntry(
            user_id=user_id,
            organization_id=organization_id,
            service_type=event.feature,
            model=event.model,
            status="success",
            tokens_in=event.tokens_in,
            tokens_out=event.tokens_out,
            cost=event.est_cost_cents / 100.0,
            metadata={**event.metadata, "source": "client"},
        )
        return QuotaService.log_usage(entry) is not None

    @staticmethod
    def bulk_increment(
        user_id: str,
        organization_id: str | None,
        feature: str,
        count: int,
    ) -> int:
        """
        Record `count` zero-token usage rows for offline usage.

        Returns:
            Number of rows inserted

        Raises:
            ValueError: If count is not positive
        """
        if count <= 0:
            raise ValueError("feature and positive count required for bulk_increment")

        rows = [
            QuotaService._row_from_entry(UsageLogEntry(
                user_id=user_id,
                organization_id=organization_id,
                service_type=feature,
                model="bulk_sync",
            ))
            for _ in range(count)
        ]

        client = SupabaseClient.get_client()
        client.table("ai_usage_logs").insert(rows).execute()
        logger.info(f"Bulk incremented {count} {feature} usage for user {user_id}")
        return count

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    @staticmethod
    def get_usage_stats(user_id: str, days: int = 30) -> UsageStats:
        """Totals and per-service breakdown over the last `days` days."""
        since = utc_now() - timedelta(days=days)
        client = SupabaseClient.get_client()
        response = (
            client.table("ai_usage_logs")
            .select("service_type, status, input_tokens, output_tokens, total_cost")
            .eq("user_id", str(user_id))
            .gte("created_at", since.isoformat())
            .execute()
        )

        stats = UsageStats(days=days)
        for row in response.data or []:
            tokens = (row.get("input_tokens") or 0) + (row.get("output_tokens") or 0)
            cost = float(row.get("total_cost") or 0)

            stats.total_calls += 1
            if row.get("status") == "success":
                stats.successful_calls += 1
            else:
                stats.failed_calls += 1
            stats.total_tokens += tokens
            stats.total_cost += cost

            service = stats.by_service.setdefault(row.get("service_type") or "unknown", ServiceUsage())
            service.calls += 1
            service.tokens += tokens
            service.cost += cost

        return stats

    @staticmethod
    def get_monthly_usage(user_id: str) -> MonthlyUsage:
        """This month's call counts for the three metered content services."""
        client = SupabaseClient.get_client()
        response = (
            client.table("ai_usage_logs")
            .select("service_type")
            .eq("user_id", str(user_id))
            .gte("created_at", start_of_month_utc().isoformat())
            .execute()
        )

        counts = {service: 0 for service in MONTHLY_TRACKED_SERVICES}
        for row in response.data or []:
            service = row.get("service_type")
            if service in counts:
                counts[service] += 1
        return MonthlyUsage(**counts)

    # -------------------------------------------------------------------------
    # Teacher allocations
    # -------------------------------------------------------------------------

    @staticmethod
    def get_teacher_allocation(preschool_id: str, user_id: str) -> dict[str, Any] | None:
        """
        Get the active allocation for a user, creating a default one if missing.

        Returns:
            Allocation row, or None if the user has no profile
        """
        client = SupabaseClient.get_client()

        try:
            response = (
                client.table("teacher_ai_allocations")
                .select("*")
                .eq("preschool_id", str(preschool_id))
                .eq("user_id", str(user_id))
                .eq("is_active", True)
                .maybe_single()
                .execute()
            )
            if response is not None and response.data:
                return response.data
        except Exception as e:
            if not is_not_found(e):
                logger.error(f"Allocation lookup failed for {user_id}: {e}")
                raise

        profile = SupabaseClient.fetch_profile(user_id)
        if not profile:
            return None

        email = profile.get("email") or ""
        first_name = profile.get("first_name") or (email.split("@")[0] if email else "Teacher")
        full_name = f"{first_name} {profile.get('last_name') or ''}".strip()
        role = profile.get("role") or "teacher"

        defaults = PRINCIPAL_ALLOCATION if role in ("principal", "principal_admin") else TEACHER_ALLOCATION

        row = {
            "preschool_id": str(preschool_id),
            "user_id": str(user_id),
            "teacher_name": full_name,
            "teacher_email": profile.get("email"),
            "role": role,
            "allocated_quotas": defaults.model_dump(),
            "used_quotas": AllocationQuotas().model_dump(),
            "allocated_by": str(user_id),
            "allocation_reason": "Auto-created default allocation",
            "is_active": True,
        }

        response = client.table("teacher_ai_allocations").insert(row).execute()
        logger.info(f"Created default AI allocation for {user_id} in {preschool_id}")
        return response.data[0] if response.data else row

    @staticmethod
    def list_teacher_allocations(preschool_id: str) -> list[dict[str, Any]]:
        client = SupabaseClient.get_client()
        response = (
            client.table("teacher_ai_allocations")
            .select("*")
            .eq("preschool_id", str(preschool_id))
            .eq("is_active", True)
            .order("teacher_name")
            .execute()
        )
        return response.data or []

    @staticmethod
    def update_teacher_allocation(
        preschool_id: str,
        user_id: str,
        allocated_quotas: AllocationQuotas,
        allocated_by: str,
        reason: str | None = None,
    ) -> dict[str, Any] | None:
        """
        Replace a teacher's allocated quotas.

        Returns:
            Updated row, or None if the teacher has no allocation
        """
        if QuotaService.get_teacher_allocation(preschool_id, user_id) is None:
            return None

        client = SupabaseClient.get_client()
        response = (
            client.table("teacher_ai_allocations")
            .update({
                "allocated_quotas": allocated_quotas.model_dump(),
                "allocated_by": str(allocated_by),
                "allocation_reason": reason,
                "updated_at": utc_now().isoformat(),
            })
            .eq("preschool_id", str(preschool_id))
            .eq("user_id", str(user_id))
            .eq("is_active", True)
            .execute()
        )
        logger.info(f"Allocation for {user_id} updated by {allocated_by}")
        return response.data[0] if response.data else None
