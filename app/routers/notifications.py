# =============================================================================
# app/routers/notifications.py - Notification Dispatch Endpoints
# =============================================================================
# - POST /notifications/dispatch: Send an event now (app or dashboard)
# - POST /notifications/trigger: Supabase database webhook; queued
# - POST /notifications/scheduled: Run the hourly sweep on demand
# =============================================================================

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.security import HTTPAuthorizationCredentials

from app.auth import UserContext, get_user_context, require_roles
from app.auth.dependencies import security
from app.config import settings
from app.exceptions import AuthenticationError, PermissionDeniedError
from core.models.notification import DatabaseTrigger, DispatchResult, NotificationRequest
from core.services.notification_service import NotificationService, map_database_trigger

logger = logging.getLogger(__name__)

router = APIRouter()

STAFF_ROLES = ("teacher", "principal", "principal_admin", "superadmin")


def verify_service_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> None:
    """Database webhooks authenticate with the service-role key as a Bearer token."""
    if credentials is None or not secrets.compare_digest(
        credentials.credentials, settings.SUPABASE_SERVICE_KEY
    ):
        raise AuthenticationError("Invalid webhook credentials")


@router.post("/dispatch", response_model=DispatchResult)
def dispatch_notification(
    request: NotificationRequest,
    user: UserContext = Depends(get_user_context),
):
    """
    Send a notification event synchronously.

    Recipients are resolved from the event (thread participants, a
    student's parents, a school's staff...) unless user_ids is given.

    Test sends (test=true) go only to target_user_id with sample data;
    staff may target anyone, others only themselves.
    """
    if request.test and request.target_user_id != str(user.id) and not user.has_role(*STAFF_ROLES):
        raise PermissionDeniedError("Test notifications can only target yourself")

    if request.user_ids and not user.has_role(*STAFF_ROLES):
        raise PermissionDeniedError(
            "Only staff can address notifications to explicit users",
            required_roles=list(STAFF_ROLES),
        )

    logger.info(f"User {user.id} dispatching {request.event_type.value}")
    return NotificationService.dispatch(request)


@router.post(
    "/trigger",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_service_key)],
)
async def database_trigger(payload: DatabaseTrigger):
    """
    Receive a Supabase database webhook.

    Inserts into messages and published announcements, and homework
    submissions moving to graded, are queued for dispatch. Other changes
    are acknowledged and skipped.
    """
    request = map_database_trigger(payload)
    if request is None:
        logger.debug(f"Skipping {payload.type} on {payload.table}")
        return {"success": True, "skipped": True}

    from workers.tasks import dispatch_notification as dispatch_task

    task = dispatch_task.delay(request.model_dump(mode="json", exclude_none=True))
    logger.info(f"Queued {request.event_type.value} from {payload.table} trigger as {task.id}")

    return {
        "success": True,
        "skipped": False,
        "event_type": request.event_type.value,
        "task_id": task.id,
    }


@router.post(
    "/scheduled",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_roles("superadmin"))],
)
async def run_scheduled():
    """Queue the trial-ending and assignment-due sweep now instead of waiting for beat."""
    from workers.tasks import run_scheduled_notifications

    task = run_scheduled_notifications.delay()
    return {
        "task_id": task.id,
        "status": "PENDING",
        "message": "Scheduled notification sweep queued",
    }
