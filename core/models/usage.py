# =============================================================================
# core/models/usage.py - AI Usage, Quota and Allocation Schemas
# =============================================================================
# - QuotaInfo / QuotaCheckResult: Result of a monthly quota check
# - UsageLogEntry: One row for ai_usage_logs
# - UsageStats: Aggregated usage over a window
# - ClientUsageEvent / BulkUsageRequest: Client-reported usage
# - TeacherAllocation / AllocationUpdate: Per-teacher AI allocations
# =============================================================================

from typing import Any

from pydantic import BaseModel, Field


class QuotaInfo(BaseModel):
    used: int
    limit: int = Field(..., description="Monthly limit; -1 means unlimited")
    remaining: int = Field(..., description="Calls left this month; -1 means unlimited")
    tier: str


class QuotaCheckResult(BaseModel):
    allowed: bool
    quota_info: QuotaInfo | None = None
    error: str | None = None


class UsageLogEntry(BaseModel):
    """
    One AI call to record in ai_usage_logs.

    input_text must already be redacted.
    """

    user_id: str
    organization_id: str | None = None
    service_type: str
    model: str
    status: str = Field(default="success", description="success or error")
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    processing_time_ms: int = 0
    input_text: str | None = None
    output_text: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ServiceUsage(BaseModel):
    calls: int = 0
    tokens: int = 0
    cost: float = 0.0


class UsageStats(BaseModel):
    """Aggregated usage for one user over the last `days` days."""

    days: int
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    by_service: dict[str, ServiceUsage] = Field(default_factory=dict)


class MonthlyUsage(BaseModel):
    lesson_generation: int = 0
    grading_assistance: int = 0
    homework_help: int = 0


class ClientUsageEvent(BaseModel):
    """Usage reported by a client that called a model on its own."""

    feature: str = Field(..., description="Service type, e.g. homework_help")
    model: str = Field(..., description="Model id used by the client")
    tokens_in: int = Field(default=0, ge=0)
    tokens_out: int = Field(default=0, ge=0)
    est_cost_cents: float = Field(default=0, ge=0, description="Estimated cost in US cents")
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkUsageRequest(BaseModel):
    """Offline usage synced in one go (e.g. after the app was offline)."""

    feature: str
    count: int = Field(..., gt=0, description="Number of usage events to record")


class FeatureCheck(BaseModel):
    allowed: bool
    reason: str | None = Field(default=None, description="over_quota or not_in_plan")


# -----------------------------------------------------------------------------
# Teacher Allocations
# -----------------------------------------------------------------------------

class AllocationQuotas(BaseModel):
    claude_messages: int = 0
    content_generation: int = 0
    assessment_ai: int = 0


class TeacherAllocation(BaseModel):
    """A teacher_ai_allocations row."""

    id: str | None = None
    preschool_id: str
    user_id: str
    teacher_name: str | None = None
    teacher_email: str | None = None
    role: str | None = None
    allocated_quotas: AllocationQuotas
    used_quotas: AllocationQuotas = Field(default_factory=AllocationQuotas)
    allocated_by: str | None = None
    allocation_reason: str | None = None
    is_active: bool = True


class AllocationUpdate(BaseModel):
    allocated_quotas: AllocationQuotas
    reason: str | None = Field(default=None, max_length=500)
