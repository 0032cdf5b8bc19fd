# =============================================================================
# core/models/notification.py - Notification Schemas
# =============================================================================
# These models define the contract for the notification dispatcher:
# - NotificationEvent: Every event type the dispatcher knows how to render
# - NotificationRequest: What to send and to whom (explicit ids, roles, or
#   derived from the event's subject row)
# - NotificationTemplate: Rendered title/body/data for Expo
# - DispatchResult: Outcome counts returned to the caller
# - DatabaseTrigger: Supabase database webhook payload
# =============================================================================

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class NotificationEvent(str, Enum):
    NEW_MESSAGE = "new_message"
    NEW_ANNOUNCEMENT = "new_announcement"
    HOMEWORK_GRADED = "homework_graded"
    ASSIGNMENT_DUE_SOON = "assignment_due_soon"
    PROGRESS_UPDATE = "progress_update"
    SUBSCRIPTION_CREATED = "subscription_created"
    PAYMENT_SUCCESS = "payment_success"
    TRIAL_STARTED = "trial_started"
    TRIAL_ENDING = "trial_ending"
    TRIAL_ENDED = "trial_ended"
    SEAT_REQUEST_CREATED = "seat_request_created"
    SEAT_REQUEST_APPROVED = "seat_request_approved"
    PAYMENT_REQUIRED = "payment_required"
    SUBSCRIPTION_PENDING_PAYMENT = "subscription_pending_payment"
    NEW_INVOICE = "new_invoice"
    INVOICE_SENT = "invoice_sent"
    OVERDUE_REMINDER = "overdue_reminder"
    PAYMENT_CONFIRMED = "payment_confirmed"
    INVOICE_VIEWED = "invoice_viewed"
    REPORT_SUBMITTED_FOR_REVIEW = "report_submitted_for_review"
    REPORT_APPROVED = "report_approved"
    REPORT_REJECTED = "report_rejected"
    CUSTOM = "custom"


INVOICE_EVENTS = {
    NotificationEvent.NEW_INVOICE,
    NotificationEvent.INVOICE_SENT,
    NotificationEvent.OVERDUE_REMINDER,
    NotificationEvent.PAYMENT_CONFIRMED,
    NotificationEvent.INVOICE_VIEWED,
}

# Events that respect invoice_notification_preferences and always email
BILLING_EVENTS = INVOICE_EVENTS | {
    NotificationEvent.PAYMENT_REQUIRED,
    NotificationEvent.SUBSCRIPTION_PENDING_PAYMENT,
}


class TemplateOverride(BaseModel):
    title: str | None = None
    body: str | None = None
    data: dict[str, Any] | None = None


class EmailTemplateOverride(BaseModel):
    subject: str | None = None
    html: str | None = None
    text: str | None = None


class NotificationRequest(BaseModel):
    """
    Request to dispatch one notification event.

    Recipients come from user_ids if given, else from role_targets plus the
    rows referenced by the event (thread, student, invoice...).

    Example:
        {
            "event_type": "new_announcement",
            "preschool_id": "550e8400-...",
            "announcement_id": "660e8400-..."
        }
    """

    event_type: NotificationEvent
    preschool_id: str | None = None
    user_ids: list[str] | None = None
    role_targets: list[Literal["principal", "principal_admin", "superadmin", "teacher", "parent"]] | None = None

    # Subject rows
    student_id: str | None = None
    thread_id: str | None = None
    message_id: str | None = None
    announcement_id: str | None = None
    assignment_id: str | None = None
    subscription_id: str | None = None
    invoice_id: str | None = None
    report_id: str | None = None

    plan_tier: str | None = None
    seats: int | None = None
    rejection_reason: str | None = None
    custom_payload: dict[str, Any] | None = None

    # Test sends go to one user with a fixed sample context
    test: bool = False
    channel: Literal["email", "push", "sms"] | None = None
    target_user_id: str | None = None

    template_override: TemplateOverride | None = None
    include_email: bool = False
    email_template_override: EmailTemplateOverride | None = None
    send_immediately: bool | None = Field(
        default=None,
        description="Set to false to record without sending a push"
    )


class NotificationTemplate(BaseModel):
    title: str
    body: str
    data: dict[str, Any] | None = None
    sound: str | None = "default"
    priority: Literal["default", "normal", "high"] = "normal"
    channel_id: str = "general"


class DispatchResult(BaseModel):
    success: bool = True
    message: str | None = None
    recipients: int = Field(default=0, description="Push devices targeted")
    email_recipients: int = 0
    user_count: int = 0
    original_user_count: int = 0
    event_type: str | None = None
    sent_immediately: bool = True
    preferences_filtered: int = 0
    test: bool = False
    channel: str | None = None


class DatabaseTrigger(BaseModel):
    """Supabase database webhook body."""

    type: Literal["INSERT", "UPDATE", "DELETE"]
    table: str
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None
    schema_name: str | None = Field(default=None, alias="schema")
