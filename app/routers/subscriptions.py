# =============================================================================
# app/routers/subscriptions.py - Subscription Plan Endpoints
# =============================================================================
# Plans are public to signed-in users; creating and changing school
# subscriptions is for superadmins only.
# =============================================================================

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Path, status

from app.auth import UserContext, get_user_context, require_roles
from app.dependencies import AccessTokenDep
from core.models.subscription import (
    SubscriptionCreate,
    SubscriptionCreated,
    SubscriptionStatusUpdate,
)
from core.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter()

SuperadminDep = Annotated[UserContext, Depends(require_roles("superadmin"))]


@router.get("/plans", dependencies=[Depends(get_user_context)])
async def list_plans():
    """Active subscription plans, cheapest first."""
    plans = SubscriptionService.list_plans()
    return {"plans": plans, "total": len(plans)}


@router.get("")
async def list_subscriptions(user: SuperadminDep):
    subscriptions = SubscriptionService.list_subscriptions()
    return {"subscriptions": subscriptions, "total": len(subscriptions)}


@router.post("", response_model=SubscriptionCreated, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: SubscriptionCreate,
    user: SuperadminDep,
    access_token: AccessTokenDep,
):
    """
    Put a school on a plan.

    Paid plans start as pending_payment; free plans are active immediately
    with a trial. The school's principals are notified.
    """
    return SubscriptionService.create_school_subscription(
        admin_id=str(user.id),
        request=request,
        access_token=access_token,
    )


@router.patch("/{subscription_id}/status")
async def update_subscription_status(
    subscription_id: Annotated[str, Path(description="Subscription UUID")],
    update: SubscriptionStatusUpdate,
    user: SuperadminDep,
):
    """Set a subscription to active, cancelled or expired."""
    subscription = SubscriptionService.update_subscription_status(subscription_id, update.status)
    logger.info(f"Superadmin {user.id} set subscription {subscription_id} to {update.status}")
    return subscription
