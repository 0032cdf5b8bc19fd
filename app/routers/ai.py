# =============================================================================
# app/routers/ai.py - AI Proxy, Usage and Allocation Endpoints
# =============================================================================
# - POST /ai/proxy: Forward a prompt to Claude (JSON or server-sent events)
# - /ai/usage, /ai/quota: Metering for the caller
# - /ai/allocations: Per-teacher AI budgets managed by principals
# - /ai/limits: What the caller's plan allows
# All endpoints require authentication.
# =============================================================================

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import StreamingResponse

from app.auth import UserContext, get_user_context, require_roles
from app.dependencies import ProxyServiceDep
from app.exceptions import (
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    TierRestrictionError,
)
from core.models.ai import ProxyRequest, ProxyResponse, normalize_service_type
from core.models.usage import (
    AllocationUpdate,
    BulkUsageRequest,
    ClientUsageEvent,
    MonthlyUsage,
    QuotaCheckResult,
    UsageStats,
)
from core.services.quota_service import QuotaService, get_plan_limits
from core.services.subscription_rules import (
    can_select_models,
    can_use_allocation,
    get_ai_quota_limits,
    normalize_tier,
    resolve_org_type,
)
from lib.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

router = APIRouter()

PrincipalDep = Annotated[UserContext, Depends(require_roles("principal", "principal_admin", "superadmin"))]


def _require_school(user: UserContext) -> str:
    org_id = user.effective_org_id
    if not org_id:
        raise InvalidRequestError("No preschool_id found")
    return org_id


# =============================================================================
# Proxy
# =============================================================================

@router.post(
    "/proxy",
    response_model=ProxyResponse,
    responses={200: {"content": {"text/event-stream": {}}}},
)
def ai_proxy(
    request: ProxyRequest,
    service: ProxyServiceDep,
    user: UserContext = Depends(get_user_context),
):
    """
    Forward a prompt to Claude on behalf of the caller.

    Quota is checked first; personal information is redacted before the
    prompt is stored in usage logs. With stream=true the response is
    server-sent events ending in `data: [DONE]`.

    Errors:
        429 quota_exceeded: Monthly limit for the service is used up
        503 ai_service_error: Claude failed after fallback
    """
    result = service.handle(request, user)

    if isinstance(result, ProxyResponse):
        return result

    return StreamingResponse(
        result,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Usage
# =============================================================================

@router.get("/usage", response_model=MonthlyUsage)
async def get_monthly_usage(user: UserContext = Depends(get_user_context)):
    """Calls made this calendar month (UTC) for each metered content service."""
    return QuotaService.get_monthly_usage(str(user.id))


@router.get("/usage/stats", response_model=UsageStats)
async def get_usage_stats(
    user: UserContext = Depends(get_user_context),
    days: Annotated[int, Query(ge=1, le=365, description="Look-back window in days")] = 30,
):
    return QuotaService.get_usage_stats(str(user.id), days=days)


@router.get("/quota/{service_type}", response_model=QuotaCheckResult)
async def check_quota(
    service_type: Annotated[str, Path(description="Metered AI service, e.g. lesson_generation")],
    user: UserContext = Depends(get_user_context),
):
    """
    Check whether the caller may make another call for a service.

    Unknown service types are checked as dash_conversation.
    """
    return QuotaService.check_quota(
        str(user.id),
        user.effective_org_id,
        normalize_service_type(service_type),
    )


@router.post("/usage/log")
async def log_usage(
    event: ClientUsageEvent,
    user: UserContext = Depends(get_user_context),
):
    """Record usage for a call the client made itself (e.g. on-device)."""
    logged = QuotaService.log_client_event(str(user.id), user.effective_org_id, event)
    return {"success": logged}


@router.post("/usage/bulk")
async def bulk_increment_usage(
    request: BulkUsageRequest,
    user: UserContext = Depends(get_user_context),
):
    """Record `count` usage events at once, for clients syncing offline use."""
    count = QuotaService.bulk_increment(
        str(user.id),
        user.effective_org_id,
        request.feature,
        request.count,
    )
    return {"success": True, "count": count}


# =============================================================================
# Allocations
# =============================================================================

@router.get("/allocations/me")
async def get_my_allocation(user: UserContext = Depends(get_user_context)):
    """
    The caller's AI allocation in their school.

    A default allocation is created on first access.

    Errors:
        403 tier_restriction: The school's plan has no allocations
    """
    org_id = _require_school(user)
    tier = SupabaseClient.fetch_organization_tier(org_id)

    if not can_use_allocation(tier, resolve_org_type(None, user.preschool_id or org_id), user.role):
        raise TierRestrictionError(
            "AI allocations are not available on your school's plan",
            tier=normalize_tier(tier).value,
        )

    allocation = QuotaService.get_teacher_allocation(org_id, str(user.id))
    if allocation is None:
        raise NotFoundError("Allocation", str(user.id))
    return allocation


@router.get("/allocations")
async def list_allocations(user: PrincipalDep):
    """All active teacher allocations in the principal's school."""
    org_id = _require_school(user)
    allocations = QuotaService.list_teacher_allocations(org_id)
    return {"allocations": allocations, "total": len(allocations)}


@router.put("/allocations/{teacher_id}")
async def update_allocation(
    teacher_id: Annotated[str, Path(description="Teacher's profile id")],
    update: AllocationUpdate,
    user: PrincipalDep,
):
    """
    Set a teacher's monthly AI budget.

    The teacher must belong to the principal's school.
    """
    org_id = _require_school(user)

    teacher = SupabaseClient.fetch_profile(
        teacher_id,
        columns="id, preschool_id, organization_id",
    )
    if not teacher:
        raise NotFoundError("Teacher", teacher_id)

    teacher_org = teacher.get("organization_id") or teacher.get("preschool_id")
    if not user.has_role("superadmin") and not user.belongs_to_organization(teacher_org):
        raise PermissionDeniedError("Teacher is not a member of your school")

    allocation = QuotaService.update_teacher_allocation(
        preschool_id=org_id,
        user_id=teacher_id,
        allocated_quotas=update.allocated_quotas,
        allocated_by=str(user.id),
        reason=update.reason,
    )
    if allocation is None:
        raise NotFoundError("Allocation", teacher_id)

    return allocation


# =============================================================================
# Limits
# =============================================================================

@router.get("/limits")
async def get_limits(user: UserContext = Depends(get_user_context)):
    """
    What the caller's plan allows.

    Example response:
        {
            "tier": "starter",
            "plan_limits": {"lesson_generation": 50, ...},
            "ai_quota": {"monthly": 500, "rpm": 15, "models": [...]},
            "can_select_models": false,
            "can_use_allocation": true
        }
    """
    tier = SupabaseClient.fetch_organization_tier(user.effective_org_id)
    org_type = resolve_org_type(None, user.preschool_id or user.organization_id)

    return {
        "tier": normalize_tier(tier).value,
        "plan_tier": tier,
        "plan_limits": get_plan_limits(tier),
        "ai_quota": get_ai_quota_limits(tier),
        "can_select_models": can_select_models(tier),
        "can_use_allocation": can_use_allocation(tier, org_type, user.role),
    }
