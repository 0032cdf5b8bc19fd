# =============================================================================
# core/models/subscription.py - Subscription & Seat Schemas
# =============================================================================
# - SubscriptionCreate: Superadmin request to put a school on a plan
# - SubscriptionStatusUpdate: Activate / cancel / expire a subscription
# - SeatLimits / SeatUsageDisplay: Teacher seat usage for a school
# =============================================================================

from enum import Enum

from pydantic import BaseModel, Field


class BillingFrequency(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """
    Subscription lifecycle.

    Paid plans start as pending_payment until the payment provider confirms.
    """
    ACTIVE = "active"
    PENDING_PAYMENT = "pending_payment"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionCreate(BaseModel):
    """
    Example:
        {
            "school_id": "550e8400-...",
            "plan_id": "660e8400-...",
            "billing_frequency": "monthly",
            "seats_total": 5
        }
    """

    school_id: str = Field(..., description="preschools.id to subscribe")
    plan_id: str = Field(..., description="subscription_plans.id")
    billing_frequency: BillingFrequency = Field(default=BillingFrequency.MONTHLY)
    seats_total: int | None = Field(
        default=None,
        gt=0,
        description="Teacher seats; defaults to the plan's max_teachers"
    )


class SubscriptionStatusUpdate(BaseModel):
    status: str = Field(..., description="active, cancelled or expired")


class SubscriptionCreated(BaseModel):
    id: str | None
    status: SubscriptionStatus
    requires_payment: bool
    seats_total: int
    start_date: str
    end_date: str


class SeatLimits(BaseModel):
    """Seat usage; limit is None on unlimited plans."""

    limit: int | None = None
    used: int = 0
    available: int | None = None


class SeatUsageDisplay(BaseModel):
    used: int
    total: int | None
    available: int | None
    is_over_limit: bool
    display_text: str
