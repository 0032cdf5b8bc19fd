# =============================================================================
# core/services/notification_service.py - Notification Dispatcher
# =============================================================================
# Turns a NotificationRequest into Expo push messages, push_notifications
# rows and (for billing events) Resend emails.
#
# Dispatch flow:
#   1. Resolve recipients (explicit ids > role targets + event subject rows)
#   2. Drop users who disabled the event in their billing preferences
#   3. Look up push tokens
#   4. Load context rows and render the event's template
#   5. Send to Expo, record one row per user, email if required
#
# Database webhooks (messages, announcements, graded homework) and the
# hourly sweep (trials ending, assignments due) both end up in dispatch().
# =============================================================================

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from app.config import settings
from app.exceptions import InvalidRequestError, NotificationError
from core.models.notification import (
    BILLING_EVENTS,
    INVOICE_EVENTS,
    DatabaseTrigger,
    DispatchResult,
    NotificationEvent,
    NotificationRequest,
    NotificationTemplate,
)
from lib.supabase_client import SupabaseClient, is_not_found
from lib.utils import parse_timestamp, unique, utc_now

logger = logging.getLogger(__name__)

EXPO_TTL_SECONDS = 86400
SIGNATURE_URL_TTL_SECONDS = 3600
SIGNATURE_BUCKET = "signatures"
HTTP_TIMEOUT_SECONDS = 15.0

# Invoice events that also notify the staff member who created the invoice
_CREATOR_EVENTS = {
    NotificationEvent.INVOICE_SENT,
    NotificationEvent.PAYMENT_CONFIRMED,
    NotificationEvent.INVOICE_VIEWED,
}

_PRINCIPAL_ROLES = ["principal", "principal_admin"]

_TEST_CONTEXT = {
    "invoice_number": "TEST-001",
    "invoice_id": "test-invoice-id",
    "total_amount": 150.00,
}


# =============================================================================
# Templates
# =============================================================================

def _tier(ctx: dict[str, Any]) -> str:
    return ctx.get("plan_tier") or "plan"


def _invoice_data(ctx: dict[str, Any]) -> dict[str, Any]:
    return {"type": "invoice", "invoice_id": ctx.get("invoice_id"), "screen": "invoice-details"}


def _report_data(ctx: dict[str, Any], **extra: Any) -> dict[str, Any]:
    return {
        "type": "report",
        "report_id": ctx.get("report_id"),
        "student_id": ctx.get("student_id"),
        **extra,
    }


def _invoice_body(ctx: dict[str, Any], with_number: str, without: str) -> str:
    number = ctx.get("invoice_number")
    return with_number.format(number=number) if number else without


def _report_rejected_body(ctx: dict[str, Any]) -> str:
    if ctx.get("student_name") and ctx.get("rejection_reason"):
        return f"Report for {ctx['student_name']} needs revision: {ctx['rejection_reason']}"
    return ctx.get("rejection_reason") or "Your progress report needs revision"


def _report_submitted_body(ctx: dict[str, Any]) -> str:
    if ctx.get("student_name") and ctx.get("teacher_name"):
        return f"{ctx['teacher_name']} submitted a progress report for {ctx['student_name']}"
    return "A progress report has been submitted for review"


_TEMPLATES: dict[NotificationEvent, Callable[[dict[str, Any]], NotificationTemplate]] = {
    NotificationEvent.NEW_MESSAGE: lambda ctx: NotificationTemplate(
        title="New Message",
        body=f"{ctx['sender_name']} sent you a message" if ctx.get("sender_name") else "You have a new message",
        data={
            "type": "message",
            "thread_id": ctx.get("thread_id"),
            "message_id": ctx.get("message_id"),
            "screen": "messages",
        },
        priority="high",
        channel_id="messages",
    ),
    NotificationEvent.NEW_ANNOUNCEMENT: lambda ctx: NotificationTemplate(
        title="School Announcement",
        body=ctx.get("announcement_title") or "New announcement from your school",
        data={"type": "announcement", "announcement_id": ctx.get("announcement_id"), "screen": "announcements"},
        priority="high",
        channel_id="announcements",
    ),
    NotificationEvent.HOMEWORK_GRADED: lambda ctx: NotificationTemplate(
        title="Homework Graded",
        body=(
            f"{ctx['assignment_title']} has been graded"
            if ctx.get("assignment_title")
            else "Your child's homework has been graded"
        ),
        data={
            "type": "homework",
            "assignment_id": ctx.get("assignment_id"),
            "submission_id": ctx.get("submission_id"),
            "student_id": ctx.get("student_id"),
            "screen": "homework-details",
        },
        channel_id="homework",
    ),
    NotificationEvent.ASSIGNMENT_DUE_SOON: lambda ctx: NotificationTemplate(
        title="Assignment Due Soon",
        body=(
            f"{ctx['assignment_title']} is due {ctx.get('due_text') or 'soon'}"
            if ctx.get("assignment_title")
            else "You have an assignment due soon"
        ),
        data={"type": "homework", "assignment_id": ctx.get("assignment_id"), "screen": "homework-submit"},
        channel_id="homework",
    ),
    NotificationEvent.PROGRESS_UPDATE: lambda ctx: NotificationTemplate(
        title="Progress Update",
        body=(
            f"{ctx['student_name']}'s progress report is ready"
            if ctx.get("student_name")
            else "New progress update available"
        ),
        data={"type": "progress", "student_id": ctx.get("student_id"), "screen": "progress"},
        channel_id="progress",
    ),
    NotificationEvent.SUBSCRIPTION_CREATED: lambda ctx: NotificationTemplate(
        title="Subscription Created",
        body=(
            f"A {_tier(ctx)} subscription was created for {ctx['school_name']}"
            if ctx.get("school_name")
            else f"A {_tier(ctx)} subscription was created"
        ),
        data={"type": "billing", "screen": "subscriptions", "plan_tier": ctx.get("plan_tier")},
        priority="high",
        channel_id="billing",
    ),
    NotificationEvent.PAYMENT_SUCCESS: lambda ctx: NotificationTemplate(
        title="Payment Successful",
        body=(
            f"Payment received ({ctx['amount']}). Subscription active."
            if ctx.get("amount")
            else "Payment received. Subscription active."
        ),
        data={"type": "billing", "screen": "subscriptions", "plan_tier": ctx.get("plan_tier")},
        priority="high",
        channel_id="billing",
    ),
    NotificationEvent.TRIAL_STARTED: lambda ctx: NotificationTemplate(
        title="Trial Started",
        body=(
            f"Your {_tier(ctx)} trial started. Ends {ctx['trial_end_text']}."
            if ctx.get("trial_end_text")
            else f"Your {_tier(ctx)} trial has started."
        ),
        data={"type": "billing", "screen": "subscriptions"},
        channel_id="billing",
    ),
    NotificationEvent.TRIAL_ENDING: lambda ctx: NotificationTemplate(
        title="Trial Ending Soon",
        body=(
            f"Your trial ends {ctx['trial_end_text']}. Add payment to continue."
            if ctx.get("trial_end_text")
            else "Your trial ends soon. Add payment to continue."
        ),
        data={"type": "billing", "screen": "subscriptions"},
        priority="high",
        channel_id="billing",
    ),
    NotificationEvent.TRIAL_ENDED: lambda ctx: NotificationTemplate(
        title="Trial Ended",
        body="Your trial period has ended. Upgrade to regain premium features.",
        data={"type": "billing", "screen": "subscriptions"},
        priority="high",
        channel_id="billing",
    ),
    NotificationEvent.SEAT_REQUEST_CREATED: lambda ctx: NotificationTemplate(
        title="Seat Request",
        body=(
            f"{ctx['requester_email']} requested a teacher seat"
            if ctx.get("requester_email")
            else "A teacher requested a seat"
        ),
        data={"type": "seats", "screen": "seat-management"},
        priority="high",
        channel_id="admin",
    ),
    NotificationEvent.SEAT_REQUEST_APPROVED: lambda ctx: NotificationTemplate(
        title="Seat Approved",
        body="Your teacher seat has been approved. You now have full access.",
        data={"type": "seats", "screen": "dashboard"},
        priority="high",
        channel_id="admin",
    ),
    NotificationEvent.PAYMENT_REQUIRED: lambda ctx: NotificationTemplate(
        title="Payment Required",
        body=ctx.get("message") or f"Payment required for {_tier(ctx)} upgrade",
        data={
            "type": "billing",
            "screen": "payment-checkout",
            "subscription_id": ctx.get("subscription_id"),
            "payment_url": ctx.get("payment_url"),
        },
        priority="high",
        channel_id="billing",
    ),
    NotificationEvent.SUBSCRIPTION_PENDING_PAYMENT: lambda ctx: NotificationTemplate(
        title="Payment Pending",
        body=ctx.get("action_required") or f"Complete payment for {ctx.get('plan_name') or 'your subscription'}",
        data={"type": "billing", "screen": "payment-checkout", "subscription_id": ctx.get("subscription_id")},
        priority="high",
        channel_id="billing",
    ),
    NotificationEvent.NEW_INVOICE: lambda ctx: NotificationTemplate(
        title="New Invoice",
        body=_invoice_body(ctx, "Invoice {number} has been created", "A new invoice has been created for you"),
        data=_invoice_data(ctx),
        channel_id="invoices",
    ),
    NotificationEvent.INVOICE_SENT: lambda ctx: NotificationTemplate(
        title="Invoice Sent",
        body=_invoice_body(ctx, "Invoice {number} has been sent", "Your invoice has been sent"),
        data=_invoice_data(ctx),
        channel_id="invoices",
    ),
    NotificationEvent.OVERDUE_REMINDER: lambda ctx: NotificationTemplate(
        title="Invoice Overdue",
        body=_invoice_body(
            ctx,
            "Invoice {number} is overdue - please pay to avoid late fees",
            "You have an overdue invoice - please pay to avoid late fees",
        ),
        data=_invoice_data(ctx),
        priority="high",
        channel_id="invoices",
    ),
    NotificationEvent.PAYMENT_CONFIRMED: lambda ctx: NotificationTemplate(
        title="Payment Received",
        body=_invoice_body(
            ctx,
            "Payment received for Invoice {number} - thank you!",
            "Payment received - thank you!",
        ),
        data=_invoice_data(ctx),
        channel_id="invoices",
    ),
    NotificationEvent.INVOICE_VIEWED: lambda ctx: NotificationTemplate(
        title="Invoice Viewed",
        body=_invoice_body(ctx, "Invoice {number} was viewed", "Your invoice was viewed"),
        data=_invoice_data(ctx),
        sound=None,
        channel_id="invoices",
    ),
    NotificationEvent.REPORT_SUBMITTED_FOR_REVIEW: lambda ctx: NotificationTemplate(
        title="Progress Report Submitted",
        body=_report_submitted_body(ctx),
        data=_report_data(ctx, screen="principal-report-review"),
        priority="high",
        channel_id="reports",
    ),
    NotificationEvent.REPORT_APPROVED: lambda ctx: NotificationTemplate(
        title="Progress Report Approved",
        body=(
            f"Your progress report for {ctx['student_name']} has been approved"
            if ctx.get("student_name")
            else "Your progress report has been approved"
        ),
        data=_report_data(ctx, screen="progress-report-creator"),
        channel_id="reports",
    ),
    NotificationEvent.REPORT_REJECTED: lambda ctx: NotificationTemplate(
        title="Progress Report Needs Revision",
        body=_report_rejected_body(ctx),
        data=_report_data(
            ctx,
            rejection_reason=ctx.get("rejection_reason"),
            screen="progress-report-creator",
        ),
        priority="high",
        channel_id="reports",
    ),
}


def build_template(event: NotificationEvent | str, context: dict[str, Any] | None = None) -> NotificationTemplate:
    """
    Render the push template for an event.

    Unknown events (and custom) get the generic EduDash Pro template.
    """
    context = context or {}
    try:
        renderer = _TEMPLATES.get(NotificationEvent(event))
    except ValueError:
        renderer = None

    if renderer is None:
        return NotificationTemplate(title="EduDash Pro", body="You have a new notification")
    return renderer(context)


def apply_template_override(template: NotificationTemplate, request: NotificationRequest) -> NotificationTemplate:
    if not request.template_override:
        return template
    return template.model_copy(update=request.template_override.model_dump(exclude_none=True))


# =============================================================================
# Relative time text
# =============================================================================

def due_text(due_date: datetime, now: datetime) -> str:
    """
    Example:
        due in 30 minutes -> "in 1 hour"
        due in 5 hours    -> "in 5 hours"
        due in 30 hours   -> "in 2 days"
    """
    hours = math.ceil((due_date - now).total_seconds() / 3600)
    if hours <= 24:
        return "in 1 hour" if hours <= 1 else f"in {hours} hours"

    days = math.ceil(hours / 24)
    return "tomorrow" if days == 1 else f"in {days} days"


def trial_end_text(end_date: datetime, now: datetime) -> str:
    days = math.ceil((end_date - now).total_seconds() / 86400)
    if days <= 0:
        return "today"
    return "tomorrow" if days == 1 else f"in {days} days"


def _full_name(person: dict[str, Any] | None) -> str | None:
    if not person:
        return None
    return f"{person.get('first_name')} {person.get('last_name')}"


def _signature_html(body: str, signature_url: str | None) -> str:
    html = f"<p>{body}</p>"
    if signature_url:
        html += f'<br><img src="{signature_url}" alt="Signature" style="max-width: 200px; height: auto;">'
    return html


# =============================================================================
# Database trigger mapping
# =============================================================================

def map_database_trigger(payload: DatabaseTrigger) -> NotificationRequest | None:
    """
    Map a Supabase database webhook to a notification, or None to skip it.

    - messages INSERT -> new_message
    - principal_announcements INSERT (published) -> new_announcement
    - homework_submissions UPDATE to graded -> homework_graded
    """
    record = payload.record or {}
    old_record = payload.old_record or {}

    if payload.table == "messages" and payload.type == "INSERT":
        return NotificationRequest(
            event_type=NotificationEvent.NEW_MESSAGE,
            thread_id=record.get("thread_id"),
            message_id=record.get("id"),
            send_immediately=True,
        )

    if payload.table == "principal_announcements" and payload.type == "INSERT" and record.get("is_published"):
        return NotificationRequest(
            event_type=NotificationEvent.NEW_ANNOUNCEMENT,
            preschool_id=record.get("preschool_id"),
            announcement_id=record.get("id"),
            send_immediately=True,
        )

    if (
        payload.table == "homework_submissions"
        and payload.type == "UPDATE"
        and record.get("status") == "graded"
        and old_record.get("status") != "graded"
    ):
        return NotificationRequest(
            event_type=NotificationEvent.HOMEWORK_GRADED,
            student_id=record.get("student_id"),
            assignment_id=record.get("assignment_id"),
            send_immediately=True,
        )

    return None


# =============================================================================
# Service
# =============================================================================

class NotificationService:
    """
    Service for dispatching push and email notifications.

    All methods are static; Supabase access goes through the shared
    service-role client.
    """

    # -------------------------------------------------------------------------
    # Row helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _single(table: str, columns: str, row_id: str) -> dict[str, Any] | None:
        client = SupabaseClient.get_client()
        try:
            response = client.table(table).select(columns).eq("id", row_id).single().execute()
            return response.data
        except Exception as e:
            if is_not_found(e):
                return None
            raise

    @staticmethod
    def _parent_ids(student: dict[str, Any] | None) -> list[str]:
        if not student:
            return []
        return [student.get("parent_id"), student.get("guardian_id")]

    # -------------------------------------------------------------------------
    # Recipients
    # -------------------------------------------------------------------------

    @staticmethod
    def resolve_recipients(request: NotificationRequest) -> list[str]:
        """
        Work out which users receive a notification.

        Explicit user_ids win. Otherwise role targets are combined with the
        users attached to the event's subject row.

        Returns:
            De-duplicated user ids in first-seen order
        """
        if request.user_ids:
            return unique(request.user_ids)

        user_ids: list[str | None] = []

        if request.role_targets:
            try:
                if "superadmin" in request.role_targets:
                    user_ids.extend(SupabaseClient.fetch_profile_ids(["superadmin"]))
                school_roles = [r for r in request.role_targets if r != "superadmin"]
                if school_roles and request.preschool_id:
                    user_ids.extend(SupabaseClient.fetch_profile_ids(school_roles, request.preschool_id))
            except Exception as e:
                logger.error(f"Role-based targeting failed: {e}")

        event = request.event_type
        client = SupabaseClient.get_client()
        single = NotificationService._single

        if event == NotificationEvent.NEW_MESSAGE and request.thread_id:
            thread = single("message_threads", "parent_id, teacher_id", request.thread_id)
            if thread:
                user_ids.extend([thread.get("parent_id"), thread.get("teacher_id")])

        elif event == NotificationEvent.NEW_ANNOUNCEMENT and request.preschool_id:
            user_ids.extend(SupabaseClient.fetch_profile_ids(["parent"], request.preschool_id))

        elif event == NotificationEvent.HOMEWORK_GRADED and request.student_id:
            user_ids.extend(NotificationService._parent_ids(
                single("students", "parent_id, guardian_id", request.student_id)
            ))

        elif event == NotificationEvent.ASSIGNMENT_DUE_SOON and request.assignment_id:
            assignment = single("homework_assignments", "class_id, preschool_id", request.assignment_id)
            if assignment:
                response = (
                    client.table("students")
                    .select("parent_id, guardian_id")
                    .eq("class_id", assignment.get("class_id"))
                    .eq("is_active", True)
                    .execute()
                )
                for student in response.data or []:
                    user_ids.extend(NotificationService._parent_ids(student))

        elif event == NotificationEvent.REPORT_SUBMITTED_FOR_REVIEW and request.preschool_id:
            user_ids.extend(SupabaseClient.fetch_profile_ids(_PRINCIPAL_ROLES, request.preschool_id))

        elif event in (NotificationEvent.REPORT_APPROVED, NotificationEvent.REPORT_REJECTED) and request.report_id:
            report = single("progress_reports", "teacher_id", request.report_id)
            if report:
                user_ids.append(report.get("teacher_id"))

        elif event in INVOICE_EVENTS and request.invoice_id:
            user_ids.extend(NotificationService._invoice_recipients(request))

        return unique(user_ids)

    @staticmethod
    def _invoice_recipients(request: NotificationRequest) -> list[str | None]:
        invoice = NotificationService._single(
            "invoices",
            "preschool_id, created_by, bill_to_email, student_id",
            request.invoice_id,
        )
        if not invoice:
            return []

        user_ids: list[str | None] = []

        if invoice.get("created_by") and request.event_type in _CREATOR_EVENTS:
            user_ids.append(invoice["created_by"])

        if invoice.get("student_id"):
            user_ids.extend(NotificationService._parent_ids(
                NotificationService._single("students", "parent_id, guardian_id", invoice["student_id"])
            ))
        elif invoice.get("bill_to_email"):
            client = SupabaseClient.get_client()
            response = (
                client.table("profiles")
                .select("id")
                .eq("email", invoice["bill_to_email"])
                .eq("preschool_id", invoice.get("preschool_id"))
                .limit(1)
                .execute()
            )
            if response.data:
                user_ids.append(response.data[0]["id"])

        if invoice.get("preschool_id"):
            user_ids.extend(SupabaseClient.fetch_profile_ids(_PRINCIPAL_ROLES, invoice["preschool_id"]))

        return user_ids

    @staticmethod
    def filter_by_preferences(
        user_ids: list[str],
        event: NotificationEvent | str,
        channel: str = "email",
    ) -> list[str]:
        """
        Drop users who switched off a billing event or channel.

        Non-billing events are never filtered. If preferences cannot be
        loaded, everyone is kept.
        """
        event_value = event.value if isinstance(event, NotificationEvent) else str(event)
        if event_value not in {e.value for e in BILLING_EVENTS}:
            return user_ids

        try:
            profiles = SupabaseClient.fetch_profiles(user_ids, columns="id, invoice_notification_preferences")
        except Exception as e:
            logger.error(f"Error filtering users by preferences: {e}")
            return user_ids

        allowed = []
        for profile in profiles:
            prefs = profile.get("invoice_notification_preferences") or {}
            channel_enabled = (prefs.get("channels") or {}).get(channel) is not False
            event_enabled = ((prefs.get("events") or {}).get(event_value) or {}).get(channel) is not False
            if channel_enabled and event_enabled:
                allowed.append(profile["id"])
        return allowed

    @staticmethod
    def get_push_tokens(user_ids: list[str]) -> list[dict[str, Any]]:
        """Latest active device per user: [{user_id, expo_push_token}]"""
        if not user_ids:
            return []

        client = SupabaseClient.get_client()
        response = (
            client.table("push_devices")
            .select("user_id, expo_push_token")
            .in_("user_id", user_ids)
            .eq("is_active", True)
            .order("updated_at", desc=True)
            .execute()
        )

        seen: set[str] = set()
        tokens = []
        for row in response.data or []:
            if row.get("expo_push_token") and row["user_id"] not in seen:
                seen.add(row["user_id"])
                tokens.append(row)
        return tokens

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    @staticmethod
    def build_context(request: NotificationRequest, now: datetime | None = None) -> dict[str, Any]:
        """
        Load whatever the event's template needs.

        Lookup failures are logged and the context gathered so far is returned.
        """
        now = now or utc_now()
        context: dict[str, Any] = {}
        payload = request.custom_payload or {}
        event = request.event_type
        single = NotificationService._single

        try:
            if event == NotificationEvent.NEW_MESSAGE and request.message_id:
                message = single(
                    "messages",
                    "id, thread_id, content, sender:sender_id(first_name, last_name)",
                    request.message_id,
                )
                if message:
                    context["sender_name"] = _full_name(message.get("sender")) or "Unknown"
                    context["thread_id"] = message.get("thread_id")
                    context["message_id"] = message.get("id")
                    content = message.get("content") or ""
                    context["message_preview"] = content[:50] + ("..." if len(content) > 50 else "")

            elif event == NotificationEvent.NEW_ANNOUNCEMENT and request.announcement_id:
                announcement = single("principal_announcements", "title, content, priority", request.announcement_id)
                if announcement:
                    context["announcement_title"] = announcement.get("title")
                    context["announcement_preview"] = (announcement.get("content") or "")[:100]
                    context["priority"] = announcement.get("priority")
                    context["announcement_id"] = request.announcement_id

            elif event == NotificationEvent.HOMEWORK_GRADED:
                if request.assignment_id:
                    assignment = single("homework_assignments", "title, subject", request.assignment_id)
                    if assignment:
                        context["assignment_title"] = assignment.get("title")
                        context["subject"] = assignment.get("subject")
                        context["assignment_id"] = request.assignment_id
                if request.student_id:
                    student = single("students", "first_name, last_name", request.student_id)
                    if student:
                        context["student_name"] = _full_name(student)
                        context["student_id"] = request.student_id

            elif event == NotificationEvent.ASSIGNMENT_DUE_SOON and request.assignment_id:
                assignment = single("homework_assignments", "title, due_date, subject", request.assignment_id)
                if assignment:
                    context["assignment_title"] = assignment.get("title")
                    context["subject"] = assignment.get("subject")
                    context["assignment_id"] = request.assignment_id
                    due_date = parse_timestamp(assignment.get("due_date"))
                    if due_date:
                        context["due_text"] = due_text(due_date, now)

            elif event in (NotificationEvent.SUBSCRIPTION_CREATED, NotificationEvent.PAYMENT_SUCCESS):
                NotificationService._add_school_name(context, request.preschool_id)
                context["plan_tier"] = request.plan_tier
                if event == NotificationEvent.PAYMENT_SUCCESS:
                    context["amount"] = payload.get("amount")

            elif event == NotificationEvent.PAYMENT_REQUIRED:
                context.update({
                    "subscription_id": request.subscription_id,
                    "plan_tier": request.plan_tier,
                    "payment_url": payload.get("payment_url"),
                    "amount": payload.get("amount"),
                    "message": payload.get("message"),
                })

            elif event == NotificationEvent.SUBSCRIPTION_PENDING_PAYMENT:
                context.update({
                    "subscription_id": request.subscription_id,
                    "plan_name": payload.get("plan_name"),
                    "action_required": payload.get("action_required"),
                    "payment_deadline": payload.get("payment_deadline"),
                })

            elif event in (
                NotificationEvent.TRIAL_STARTED,
                NotificationEvent.TRIAL_ENDING,
                NotificationEvent.TRIAL_ENDED,
            ):
                NotificationService._add_school_name(context, request.preschool_id)
                context["plan_tier"] = request.plan_tier
                end_date = parse_timestamp(payload.get("trial_end_date"))
                if end_date:
                    context["trial_end_text"] = trial_end_text(end_date, now)

            elif event == NotificationEvent.SEAT_REQUEST_CREATED:
                context["requester_email"] = payload.get("requester_email")

            elif event in (
                NotificationEvent.REPORT_SUBMITTED_FOR_REVIEW,
                NotificationEvent.REPORT_APPROVED,
                NotificationEvent.REPORT_REJECTED,
            ) and request.report_id:
                report = single(
                    "progress_reports",
                    "id, student:students(first_name, last_name), teacher:teacher_id(first_name, last_name)",
                    request.report_id,
                )
                if report:
                    context["report_id"] = report.get("id")
                    if report.get("student"):
                        context["student_name"] = _full_name(report["student"])
                        context["student_id"] = request.student_id
                    if report.get("teacher"):
                        context["teacher_name"] = _full_name(report["teacher"])
                    if event == NotificationEvent.REPORT_REJECTED:
                        context["rejection_reason"] = request.rejection_reason

            elif event in INVOICE_EVENTS and request.invoice_id:
                NotificationService._add_invoice_context(context, request, now)

        except Exception as e:
            logger.error(f"Error getting notification context for {event.value}: {e}")

        return context

    @staticmethod
    def _add_school_name(context: dict[str, Any], preschool_id: str | None) -> None:
        if not preschool_id:
            return
        school = NotificationService._single("preschools", "name", preschool_id)
        if school:
            context["school_name"] = school.get("name")

    @staticmethod
    def _add_invoice_context(context: dict[str, Any], request: NotificationRequest, now: datetime) -> None:
        invoice = NotificationService._single(
            "invoices",
            "id, invoice_number, total_amount, due_date, status, "
            "student:students(first_name, last_name), preschool:preschools(name)",
            request.invoice_id,
        )
        if not invoice:
            return

        context.update({
            "invoice_id": invoice.get("id"),
            "invoice_number": invoice.get("invoice_number"),
            "total_amount": invoice.get("total_amount"),
            "due_date": invoice.get("due_date"),
            "status": invoice.get("status"),
        })
        if invoice.get("student"):
            context["student_name"] = _full_name(invoice["student"])
        if invoice.get("preschool"):
            context["school_name"] = invoice["preschool"].get("name")

        if request.event_type == NotificationEvent.OVERDUE_REMINDER and invoice.get("due_date"):
            overdue = math.ceil((now - parse_timestamp(invoice["due_date"])).total_seconds() / 86400)
            context["overdue_days"] = max(overdue, 0)

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    @staticmethod
    def send_expo_push(message: dict[str, Any]) -> dict[str, Any]:
        """
        Send one message (possibly many tokens) through Expo.

        Returns:
            Expo's response body, or {success: False, error} when no access
            token is configured

        Raises:
            NotificationError: If Expo responds with a non-2xx status
        """
        if not settings.EXPO_ACCESS_TOKEN:
            logger.warning("Expo access token not configured, skipping push notification")
            return {"success": False, "error": "No Expo access token configured"}

        logger.info(f"Sending Expo notification to {len(message.get('to', []))} device(s): {message.get('title')}")

        try:
            response = httpx.post(
                settings.EXPO_PUSH_URL,
                json=message,
                headers={
                    "Authorization": f"Bearer {settings.EXPO_ACCESS_TOKEN}",
                    "Content-Type": "application/json",
                },
                timeout=HTTP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"Expo request failed: {e}")

        if response.status_code >= 300:
            logger.error(f"Expo push notification error: {response.text}")
            raise NotificationError(
                f"Expo API error: {response.status_code}",
                details={"response": response.text},
            )

        return response.json()

    @staticmethod
    def send_email(to: list[str], subject: str, html: str | None = None, text: str | None = None) -> None:
        """Send through Resend. Never raises; failures are logged."""
        if not settings.RESEND_API_KEY:
            logger.warning("RESEND_API_KEY not configured; skipping email send")
            return

        payload = {"from": settings.EMAIL_FROM, "to": to, "subject": subject}
        if html:
            payload["html"] = html
        if text:
            payload["text"] = text

        try:
            response = httpx.post(
                settings.RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
                timeout=HTTP_TIMEOUT_SECONDS,
            )
            if response.status_code >= 300:
                logger.error(f"Resend API error: {response.text}")
        except httpx.HTTPError as e:
            logger.error(f"Email send failed: {e}")

    @staticmethod
    def get_emails_for_users(user_ids: list[str]) -> list[str]:
        try:
            profiles = SupabaseClient.fetch_profiles(user_ids, columns="id, email")
        except Exception as e:
            logger.error(f"Failed to fetch emails for users: {e}")
            return []
        return [p["email"] for p in profiles if p.get("email")]

    @staticmethod
    def get_user_signature(user_id: str) -> str | None:
        """1-hour signed URL to the user's signature image, if they opted in."""
        try:
            profile = SupabaseClient.fetch_profile(
                user_id,
                columns="invoice_notification_preferences, signature_public_id",
            )
            prefs = (profile or {}).get("invoice_notification_preferences") or {}
            if not (prefs.get("email_include_signature") and profile.get("signature_public_id")):
                return None

            client = SupabaseClient.get_client()
            signed = client.storage.from_(SIGNATURE_BUCKET).create_signed_url(
                profile["signature_public_id"],
                SIGNATURE_URL_TTL_SECONDS,
            )
            return signed.get("signedURL") or signed.get("signedUrl")

        except Exception as e:
            logger.error(f"Error getting user signature: {e}")
            return None

    @staticmethod
    def record_notifications(
        user_ids: list[str],
        template: NotificationTemplate,
        request: NotificationRequest,
        expo_result: dict[str, Any] | None = None,
    ) -> None:
        """Insert one push_notifications row per user. Failures are logged."""
        expo_result = expo_result or {}
        status = "failed" if expo_result.get("success") is False else "sent"
        receipt = expo_result.get("data")
        receipt_id = receipt.get("id") if isinstance(receipt, dict) else None

        rows = [
            {
                "recipient_user_id": user_id,
                "title": template.title,
                "body": template.body,
                "data": template.data,
                "status": status,
                "expo_receipt_id": receipt_id,
                "notification_type": request.event_type.value,
                "preschool_id": request.preschool_id,
            }
            for user_id in user_ids
        ]
        if not rows:
            return

        try:
            SupabaseClient.get_client().table("push_notifications").insert(rows).execute()
        except Exception as e:
            logger.error(f"Error recording notification: {e}")

    @staticmethod
    def _send_event_email(user_ids: list[str], template: NotificationTemplate, request: NotificationRequest) -> int:
        emails = NotificationService.get_emails_for_users(user_ids)
        if not emails:
            return 0

        signature = None
        for user_id in user_ids:
            signature = NotificationService.get_user_signature(user_id)
            if signature:
                break

        override = request.email_template_override
        subject = (override and override.subject) or template.title
        html = (override and override.html) or _signature_html(template.body, signature)
        text = (override and override.text) or template.body

        NotificationService.send_email(emails, subject, html, text)
        return len(emails)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    @staticmethod
    def _dispatch_test(request: NotificationRequest) -> DispatchResult:
        if not request.target_user_id:
            raise InvalidRequestError("target_user_id required for test notifications")

        template = apply_template_override(build_template(request.event_type, _TEST_CONTEXT), request)
        title = f"[TEST] {template.title}"
        channel = request.channel or "email"

        if channel == "email":
            emails = NotificationService.get_emails_for_users([request.target_user_id])
            if emails:
                signature = NotificationService.get_user_signature(request.target_user_id)
                NotificationService.send_email(emails, title, _signature_html(template.body, signature), template.body)
        else:
            tokens = NotificationService.get_push_tokens([request.target_user_id])
            if tokens:
                NotificationService.send_expo_push({
                    "to": [t["expo_push_token"] for t in tokens],
                    "title": title,
                    "body": template.body,
                    "data": template.data,
                })

        return DispatchResult(
            test=True,
            event_type=request.event_type.value,
            channel=channel,
            recipients=1,
        )

    @staticmethod
    def dispatch(request: NotificationRequest) -> DispatchResult:
        """
        Send one notification event.

        Args:
            request: Event type plus whatever identifies its subject

        Returns:
            DispatchResult with push device and email counts

        Raises:
            InvalidRequestError: Test send without target_user_id
            NotificationError: Expo rejected the push
        """
        event_type = request.event_type.value
        logger.info(f"Processing notification request: {event_type}")

        if request.test:
            return NotificationService._dispatch_test(request)

        user_ids = NotificationService.resolve_recipients(request)
        if not user_ids:
            logger.info(f"Notification skipped ({event_type}): no recipients")
            return DispatchResult(message="No users to notify", event_type=event_type)

        filtered = NotificationService.filter_by_preferences(user_ids, request.event_type, "email")
        if not filtered:
            logger.info(f"Notification skipped ({event_type}): disabled by preferences for {len(user_ids)} user(s)")
            return DispatchResult(
                message="All users have disabled notifications for this event",
                original_user_count=len(user_ids),
                event_type=event_type,
            )

        tokens = NotificationService.get_push_tokens(filtered)
        if not tokens and not request.include_email:
            logger.info(f"Notification skipped ({event_type}): no push tokens")
            return DispatchResult(message="No push tokens found for users", event_type=event_type)

        context = NotificationService.build_context(request)
        template = apply_template_override(build_template(request.event_type, context), request)

        send_now = request.send_immediately is not False
        expo_result = None
        if send_now and tokens:
            expo_result = NotificationService.send_expo_push({
                "to": [t["expo_push_token"] for t in tokens],
                "title": template.title,
                "body": template.body,
                "data": template.data,
                "sound": template.sound,
                "priority": template.priority,
                "channelId": template.channel_id,
                "ttl": EXPO_TTL_SECONDS,
            })

        NotificationService.record_notifications(filtered, template, request, expo_result)

        email_recipients = 0
        if request.event_type in BILLING_EVENTS or request.include_email:
            try:
                email_recipients = NotificationService._send_event_email(filtered, template, request)
            except Exception as e:
                logger.error(f"Error sending email notifications: {e}")

        logger.info(
            f"Notification {event_type} dispatched to {len(tokens)} device(s) "
            f"and {email_recipients} email recipient(s)"
        )

        return DispatchResult(
            recipients=len(tokens),
            email_recipients=email_recipients,
            user_count=len(filtered),
            original_user_count=len(user_ids),
            event_type=event_type,
            sent_immediately=send_now,
            preferences_filtered=len(user_ids) - len(filtered),
        )

    # -------------------------------------------------------------------------
    # Scheduled checks
    # -------------------------------------------------------------------------

    @staticmethod
    def run_scheduled_checks(now: datetime | None = None) -> dict[str, int]:
        """
        Hourly sweep: trials ending and assignments due in the next 24 hours.

        Each notification is dispatched on its own; one failure does not
        stop the rest.
        """
        now = now or utc_now()
        window_end = now + timedelta(hours=24)
        client = SupabaseClient.get_client()

        trials_notified = 0
        try:
            trials = (
                client.table("subscriptions")
                .select("id, school_id, plan_id, trial_end_date, status")
                .not_.is_("trial_end_date", "null")
                .gte("trial_end_date", now.isoformat())
                .lte("trial_end_date", window_end.isoformat())
                .eq("status", "active")
                .execute()
            ).data or []
        except Exception as e:
            logger.error(f"Trial ending query failed: {e}")
            trials = []

        for subscription in trials:
            try:
                result = NotificationService.dispatch(NotificationRequest(
                    event_type=NotificationEvent.TRIAL_ENDING,
                    preschool_id=subscription.get("school_id"),
                    plan_tier=subscription.get("plan_id"),
                    role_targets=["principal", "principal_admin", "superadmin"],
                    include_email=True,
                    custom_payload={"trial_end_date": subscription.get("trial_end_date")},
                ))
                trials_notified += result.recipients
            except Exception as e:
                logger.error(f"Failed to notify trial ending for subscription {subscription.get('id')}: {e}")

        try:
            assignments = (
                client.table("homework_assignments")
                .select("id, title, due_date, class_id, preschool_id")
                .gte("due_date", now.isoformat())
                .lte("due_date", window_end.isoformat())
                .eq("is_active", True)
                .execute()
            ).data or []
        except Exception as e:
            logger.error(f"Assignments due query failed: {e}")
            assignments = []

        notifications_sent = 0
        for assignment in assignments:
            try:
                result = NotificationService.dispatch(NotificationRequest(
                    event_type=NotificationEvent.ASSIGNMENT_DUE_SOON,
                    assignment_id=assignment["id"],
                    preschool_id=assignment.get("preschool_id"),
                    send_immediately=True,
                ))
                notifications_sent += result.recipients
            except Exception as e:
                logger.error(f"Error sending due soon notification for assignment {assignment.get('id')}: {e}")

        logger.info(
            f"Scheduled check: {trials_notified} trial device(s), "
            f"{len(assignments)} assignment(s), {notifications_sent} due-soon device(s)"
        )

        return {
            "trials_notified": trials_notified,
            "assignments_checked": len(assignments),
            "notifications_sent": notifications_sent,
        }
