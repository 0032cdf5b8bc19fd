# =============================================================================
# core/models/ - Pydantic Data Models
# =============================================================================
# This package contains Pydantic schemas for data validation:
# - ai.py: AI proxy request/response schemas
# - usage.py: Quota, usage log and teacher allocation schemas
# - subscription.py: Subscription and seat schemas
# - notification.py: Notification dispatch schemas
# - transcription.py: Speech-to-text schemas
#
# These models define the "contract" between API and clients.
# =============================================================================

# -----------------------------------------------------------------------------
# AI Proxy Models
# -----------------------------------------------------------------------------
from .ai import (
    ImageAttachment,
    ProxyPayload,
    ProxyRequest,
    ProxyResponse,
    ServiceType,
    UsageInfo,
)

# -----------------------------------------------------------------------------
# Usage & Quota Models
# -----------------------------------------------------------------------------
from .usage import (
    AllocationQuotas,
    AllocationUpdate,
    BulkUsageRequest,
    ClientUsageEvent,
    FeatureCheck,
    MonthlyUsage,
    QuotaCheckResult,
    QuotaInfo,
    ServiceUsage,
    TeacherAllocation,
    UsageLogEntry,
    UsageStats,
)

# -----------------------------------------------------------------------------
# Subscription & Seat Models
# -----------------------------------------------------------------------------
from .subscription import (
    BillingFrequency,
    SeatLimits,
    SeatUsageDisplay,
    SubscriptionCreate,
    SubscriptionCreated,
    SubscriptionStatus,
    SubscriptionStatusUpdate,
)

# -----------------------------------------------------------------------------
# Notification Models
# -----------------------------------------------------------------------------
from .notification import (
    BILLING_EVENTS,
    DatabaseTrigger,
    DispatchResult,
    NotificationEvent,
    NotificationRequest,
    NotificationTemplate,
)

# -----------------------------------------------------------------------------
# Transcription Models
# -----------------------------------------------------------------------------
from .transcription import (
    JobStatus,
    TranscriptionEvent,
    TranscriptionJob,
    TranscriptionResult,
)

__all__ = [
    # AI
    "ImageAttachment",
    "ProxyPayload",
    "ProxyRequest",
    "ProxyResponse",
    "ServiceType",
    "UsageInfo",
    # Usage
    "AllocationQuotas",
    "AllocationUpdate",
    "BulkUsageRequest",
    "ClientUsageEvent",
    "FeatureCheck",
    "MonthlyUsage",
    "QuotaCheckResult",
    "QuotaInfo",
    "ServiceUsage",
    "TeacherAllocation",
    "UsageLogEntry",
    "UsageStats",
    # Subscription
    "BillingFrequency",
    "SeatLimits",
    "SeatUsageDisplay",
    "SubscriptionCreate",
    "SubscriptionCreated",
    "SubscriptionStatus",
    "SubscriptionStatusUpdate",
    # Notification
    "BILLING_EVENTS",
    "DatabaseTrigger",
    "DispatchResult",
    "NotificationEvent",
    "NotificationRequest",
    "NotificationTemplate",
    # Transcription
    "JobStatus",
    "TranscriptionEvent",
    "TranscriptionJob",
    "TranscriptionResult",
]
