# =============================================================================
# core/services/subscription_service.py - School Subscriptions
# =============================================================================
# Superadmin operations on school subscriptions.
#
# Creating a subscription:
#   1. Load the plan
#   2. Paid plans start as pending_payment, free plans as active
#   3. Create it via admin_create_school_subscription (role-checked in SQL)
#   4. Sync the school's tier via update_preschool_subscription
#   5. Queue a subscription_created notification; paid plans also queue
#      payment_required and subscription_pending_payment for the principals
# =============================================================================

import logging
from datetime import timedelta
from typing import Any

from app.config import settings
from app.exceptions import InvalidRequestError, NotFoundError
from core.models.subscription import (
    BillingFrequency,
    SubscriptionCreate,
    SubscriptionCreated,
    SubscriptionStatus,
)
from lib.supabase_client import SupabaseClient
from lib.utils import add_months, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SEATS = 10
PAYMENT_DEADLINE_DAYS = 7
PRINCIPAL_TARGETS = ["principal", "principal_admin"]
ALLOWED_STATUS_UPDATES = {
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
}


def is_paid_plan(plan: dict[str, Any]) -> bool:
    return (plan.get("price_monthly") or 0) > 0 or (plan.get("price_annual") or 0) > 0


class SubscriptionService:
    """Subscription plan and school subscription management."""

    @staticmethod
    def list_plans() -> list[dict[str, Any]]:
        """Active plans, cheapest first."""
        client = SupabaseClient.get_client()
        response = (
            client.table("subscription_plans")
            .select("*")
            .eq("is_active", True)
            .order("price_monthly")
            .execute()
        )
        return response.data or []

    @staticmethod
    def list_subscriptions() -> list[dict[str, Any]]:
        client = SupabaseClient.get_client()
        response = (
            client.table("subscriptions")
            .select("*, subscription_plans(name, tier), preschools(name)")
            .order("created_at", desc=True)
            .execute()
        )
        return response.data or []

    @staticmethod
    def create_school_subscription(
        admin_id: str,
        request: SubscriptionCreate,
        access_token: str | None = None,
    ) -> SubscriptionCreated:
        """
        Put a school on a plan.

        Args:
            admin_id: Superadmin creating the subscription
            request: School, plan, billing frequency, optional seat count
            access_token: Caller's JWT, so the SQL role check sees the admin

        Raises:
            NotFoundError: Unknown plan
            SupabaseClientError: If the create RPC fails
        """
        plan = SupabaseClient.fetch_single("subscription_plans", request.plan_id)
        if not plan:
            raise NotFoundError("Plan", request.plan_id)

        paid = is_paid_plan(plan)
        status = SubscriptionStatus.PENDING_PAYMENT if paid else SubscriptionStatus.ACTIVE
        seats_total = request.seats_total or plan.get("max_teachers") or DEFAULT_SEATS

        start_date = utc_now()
        months = 12 if request.billing_frequency == BillingFrequency.ANNUAL else 1
        end_date = add_months(start_date, months)

        tier = (plan.get("tier") or "free").lower()

        subscription_id = SupabaseClient.call_rpc(
            "admin_create_school_subscription",
            {
                "p_school_id": request.school_id,
                "p_plan_id": request.plan_id,
                "p_billing_frequency": request.billing_frequency.value,
                "p_seats_total": seats_total,
                "p_start_trial": tier == "free",
            },
            access_token=access_token,
        )
        logger.info(
            f"Subscription {subscription_id} created for school {request.school_id} "
            f"on plan {plan.get('name')} by {admin_id} ({status.value})"
        )

        try:
            SupabaseClient.call_rpc(
                "update_preschool_subscription",
                {
                    "p_preschool_id": request.school_id,
                    "p_subscription_tier": tier,
                    "p_subscription_status": "active",
                    "p_subscription_plan_id": request.plan_id,
                },
                access_token=access_token,
            )
        except Exception as e:
            logger.error(f"Failed to sync school subscription metadata: {e}")

        subscription_ref = str(subscription_id) if subscription_id else None
        SubscriptionService._notify_created(request.school_id, tier)
        if paid:
            SubscriptionService._notify_payment_due(
                request.school_id, subscription_ref, tier, plan, request.billing_frequency,
            )

        return SubscriptionCreated(
            id=subscription_ref,
            status=status,
            requires_payment=paid,
            seats_total=seats_total,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

    @staticmethod
    def _queue_notification(request: dict[str, Any]) -> None:
        """Queue a dispatch; failures are logged, the subscription stands."""
        try:
            from workers.tasks import dispatch_notification

            dispatch_notification.delay(request)
        except Exception as e:
            logger.warning(f"Failed to queue {request['event_type']} notification: {e}")

    @staticmethod
    def _notify_created(school_id: str, tier: str) -> None:
        SubscriptionService._queue_notification({
            "event_type": "subscription_created",
            "preschool_id": school_id,
            "plan_tier": tier,
            "role_targets": PRINCIPAL_TARGETS,
        })

    @staticmethod
    def _notify_payment_due(
        school_id: str,
        subscription_id: str | None,
        tier: str,
        plan: dict[str, Any],
        billing_frequency: BillingFrequency,
    ) -> None:
        """Ask the school's principals to pay for a pending_payment subscription."""
        if billing_frequency == BillingFrequency.ANNUAL:
            amount = plan.get("price_annual") or 0
        else:
            amount = plan.get("price_monthly") or 0

        base_url = settings.APP_WEB_URL.rstrip("/")
        deadline = utc_now() + timedelta(days=PAYMENT_DEADLINE_DAYS)

        SubscriptionService._queue_notification({
            "event_type": "payment_required",
            "preschool_id": school_id,
            "subscription_id": subscription_id,
            "plan_tier": tier,
            "custom_payload": {
                "amount": amount,
                "payment_url": f"{base_url}/payment/checkout/{subscription_id}",
                "message": f"Payment required for {tier} plan upgrade (R{amount})",
            },
            "role_targets": PRINCIPAL_TARGETS,
            "include_email": True,
        })
        SubscriptionService._queue_notification({
            "event_type": "subscription_pending_payment",
            "preschool_id": school_id,
            "subscription_id": subscription_id,
            "custom_payload": {
                "plan_name": plan.get("name"),
                "action_required": "Complete payment to activate subscription",
                "payment_deadline": deadline.isoformat(),
            },
            "role_targets": PRINCIPAL_TARGETS,
            "include_email": True,
        })

    @staticmethod
    def update_subscription_status(subscription_id: str, status: str) -> dict[str, Any]:
        """
        Activate, cancel or expire a subscription.

        Raises:
            InvalidRequestError: Status not in active/cancelled/expired
            NotFoundError: Unknown subscription
        """
        if status not in ALLOWED_STATUS_UPDATES:
            raise InvalidRequestError(
                f"Invalid status: {status}",
                details={"allowed": sorted(ALLOWED_STATUS_UPDATES)},
            )

        client = SupabaseClient.get_client()
        response = (
            client.table("subscriptions")
            .update({"status": status, "updated_at": utc_now().isoformat()})
            .eq("id", subscription_id)
            .execute()
        )
        if not response.data:
            raise NotFoundError("Subscription", subscription_id)

        logger.info(f"Subscription {subscription_id} set to {status}")
        return response.data[0]
