# =============================================================================
# tests/test_notification_service.py - Notification Dispatcher Tests
# =============================================================================
# Run with: pytest tests/test_notification_service.py -v
# =============================================================================

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from app.config import settings
from app.exceptions import InvalidRequestError, NotificationError
from core.models.notification import DatabaseTrigger, NotificationEvent, NotificationRequest
from core.services.notification_service import (
    NotificationService,
    apply_template_override,
    build_template,
    due_text,
    map_database_trigger,
    trial_end_text,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
SCHOOL_ID = "55555555-5555-5555-5555-555555555555"


class TestTemplates:
    """Tests for push templates."""

    def test_message_with_sender(self):
        template = build_template(NotificationEvent.NEW_MESSAGE, {"sender_name": "Ms Naidoo", "thread_id": "t1"})

        assert template.title == "New Message"
        assert template.body == "Ms Naidoo sent you a message"
        assert template.priority == "high"
        assert template.channel_id == "messages"
        assert template.data["thread_id"] == "t1"

    def test_missing_context_uses_fallback_text(self):
        """Templates still render when the context lookup found nothing."""
        assert build_template("new_message").body == "You have a new message"
        assert build_template("assignment_due_soon").body == "You have an assignment due soon"

    def test_invoice_number_in_body(self):
        template = build_template(NotificationEvent.OVERDUE_REMINDER, {"invoice_number": "INV-7"})

        assert template.body.startswith("Invoice INV-7 is overdue")
        assert template.data["screen"] == "invoice-details"

    def test_custom_and_unknown_events(self):
        """custom and unknown events get the generic template."""
        assert build_template(NotificationEvent.CUSTOM).title == "EduDash Pro"
        assert build_template("not_an_event").body == "You have a new notification"

    def test_template_override(self):
        """Override fields replace the rendered ones; unset fields are kept."""
        request = NotificationRequest(
            event_type="new_announcement",
            template_override={"title": "Sports Day"},
        )

        template = apply_template_override(build_template(request.event_type), request)

        assert template.title == "Sports Day"
        assert template.body == "New announcement from your school"


class TestRelativeTime:
    """Tests for due_text and trial_end_text."""

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(minutes=30), "in 1 hour"),
        (timedelta(hours=5), "in 5 hours"),
        (timedelta(hours=24), "in 24 hours"),
        (timedelta(hours=30), "in 2 days"),
    ])
    def test_due_text(self, delta, expected):
        assert due_text(NOW + delta, NOW) == expected

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(hours=-1), "today"),
        (timedelta(hours=12), "tomorrow"),
        (timedelta(days=3), "in 3 days"),
    ])
    def test_trial_end_text(self, delta, expected):
        assert trial_end_text(NOW + delta, NOW) == expected


class TestDatabaseTrigger:
    """Tests for map_database_trigger."""

    def test_message_insert(self):
        request = map_database_trigger(DatabaseTrigger(
            type="INSERT", table="messages", record={"id": "m1", "thread_id": "t1"},
        ))

        assert request.event_type == NotificationEvent.NEW_MESSAGE
        assert request.thread_id == "t1"
        assert request.message_id == "m1"

    def test_unpublished_announcement_skipped(self):
        payload = DatabaseTrigger(type="INSERT", table="principal_announcements", record={"id": "a1", "is_published": False})

        assert map_database_trigger(payload) is None

    def test_homework_newly_graded(self):
        """Only the transition into graded notifies."""
        graded = DatabaseTrigger(
            type="UPDATE",
            table="homework_submissions",
            record={"status": "graded", "student_id": "s1", "assignment_id": "h1"},
            old_record={"status": "submitted"},
        )
        regraded = graded.model_copy(update={"old_record": {"status": "graded"}})

        assert map_database_trigger(graded).event_type == NotificationEvent.HOMEWORK_GRADED
        assert map_database_trigger(regraded) is None

    def test_schema_alias(self):
        payload = DatabaseTrigger.model_validate({"type": "DELETE", "table": "messages", "schema": "public"})

        assert payload.schema_name == "public"
        assert map_database_trigger(payload) is None


class TestRecipients:
    """Tests for recipient resolution and preference filtering."""

    @pytest.fixture
    def supabase(self, supabase_query):
        client, query = supabase_query
        with patch("core.services.notification_service.SupabaseClient") as mock_supabase:
            mock_supabase.get_client.return_value = client
            yield mock_supabase, client, query

    def test_explicit_user_ids_deduplicated(self, supabase):
        request = NotificationRequest(event_type="custom", user_ids=["u1", "u2", "u1"])

        assert NotificationService.resolve_recipients(request) == ["u1", "u2"]

    def test_announcement_goes_to_parents_and_roles(self, supabase):
        """Role targets and the school's parents are combined."""
        mock_supabase, _, _ = supabase
        mock_supabase.fetch_profile_ids.side_effect = [["principal-1"], ["parent-1", "parent-2"]]
        request = NotificationRequest(
            event_type="new_announcement", preschool_id=SCHOOL_ID, role_targets=["principal"],
        )

        assert NotificationService.resolve_recipients(request) == ["principal-1", "parent-1", "parent-2"]
        mock_supabase.fetch_profile_ids.assert_any_call(["parent"], SCHOOL_ID)

    def test_message_thread_participants(self, supabase):
        _, _, query = supabase
        query.execute.return_value.data = {"parent_id": "parent-1", "teacher_id": None}
        request = NotificationRequest(event_type="new_message", thread_id="t1")

        assert NotificationService.resolve_recipients(request) == ["parent-1"]

    def test_non_billing_events_not_filtered(self, supabase):
        mock_supabase, _, _ = supabase

        result = NotificationService.filter_by_preferences(["u1"], NotificationEvent.NEW_MESSAGE)

        assert result == ["u1"]
        mock_supabase.fetch_profiles.assert_not_called()

    def test_billing_preferences(self, supabase):
        """Users who turned off the channel or the event are dropped."""
        mock_supabase, _, _ = supabase
        mock_supabase.fetch_profiles.return_value = [
            {"id": "u1", "invoice_notification_preferences": None},
            {"id": "u2", "invoice_notification_preferences": {"channels": {"email": False}}},
            {"id": "u3", "invoice_notification_preferences": {"events": {"new_invoice": {"email": False}}}},
            {"id": "u4", "invoice_notification_preferences": {"events": {"new_invoice": {"push": False}}}},
        ]

        result = NotificationService.filter_by_preferences(["u1", "u2", "u3", "u4"], NotificationEvent.NEW_INVOICE)

        assert result == ["u1", "u4"]

    def test_preference_lookup_failure_keeps_everyone(self, supabase):
        mock_supabase, _, _ = supabase
        mock_supabase.fetch_profiles.side_effect = RuntimeError("timeout")

        assert NotificationService.filter_by_preferences(["u1"], "payment_required") == ["u1"]

    def test_push_tokens_latest_per_user(self, supabase):
        """Rows arrive newest first; one token per user is kept."""
        _, _, query = supabase
        query.execute.return_value.data = [
            {"user_id": "u1", "expo_push_token": "ExponentPushToken[new]"},
            {"user_id": "u1", "expo_push_token": "ExponentPushToken[old]"},
            {"user_id": "u2", "expo_push_token": None},
        ]

        tokens = NotificationService.get_push_tokens(["u1", "u2"])

        assert tokens == [{"user_id": "u1", "expo_push_token": "ExponentPushToken[new]"}]


class TestExpo:
    """Tests for the Expo push call."""

    def test_skipped_without_token(self):
        with patch.object(settings, "EXPO_ACCESS_TOKEN", ""), \
                patch("core.services.notification_service.httpx.post") as mock_post:
            result = NotificationService.send_expo_push({"to": ["t"], "title": "Hi"})

        assert result == {"success": False, "error": "No Expo access token configured"}
        mock_post.assert_not_called()

    def test_error_status_raises(self):
        response = MagicMock(status_code=500, text="server error")
        with patch.object(settings, "EXPO_ACCESS_TOKEN", "expo-token"), \
                patch("core.services.notification_service.httpx.post", return_value=response):
            with pytest.raises(NotificationError):
                NotificationService.send_expo_push({"to": ["t"], "title": "Hi"})

    def test_success(self):
        response = MagicMock(status_code=200)
        response.json.return_value = {"data": {"id": "receipt-1", "status": "ok"}}
        with patch.object(settings, "EXPO_ACCESS_TOKEN", "expo-token"), \
                patch("core.services.notification_service.httpx.post", return_value=response) as mock_post:
            result = NotificationService.send_expo_push({"to": ["t"], "title": "Hi"})

        assert result["data"]["id"] == "receipt-1"
        assert mock_post.call_args[1]["headers"]["Authorization"] == "Bearer expo-token"


class TestDispatch:
    """Tests for NotificationService.dispatch with its steps mocked."""

    @pytest.fixture
    def steps(self):
        with patch.object(NotificationService, "resolve_recipients") as recipients, \
                patch.object(NotificationService, "filter_by_preferences") as prefs, \
                patch.object(NotificationService, "get_push_tokens") as tokens, \
                patch.object(NotificationService, "build_context", return_value={}) as context, \
                patch.object(NotificationService, "send_expo_push") as expo, \
                patch.object(NotificationService, "record_notifications") as record, \
                patch.object(NotificationService, "_send_event_email", return_value=0) as email:
            prefs.side_effect = lambda user_ids, event, channel: user_ids
            yield {
                "recipients": recipients,
                "prefs": prefs,
                "tokens": tokens,
                "context": context,
                "expo": expo,
                "record": record,
                "email": email,
            }

    def test_no_recipients(self, steps):
        steps["recipients"].return_value = []

        result = NotificationService.dispatch(NotificationRequest(event_type="new_message", thread_id="t1"))

        assert result.message == "No users to notify"
        steps["expo"].assert_not_called()

    def test_all_filtered_by_preferences(self, steps):
        steps["recipients"].return_value = ["u1", "u2"]
        steps["prefs"].side_effect = None
        steps["prefs"].return_value = []

        result = NotificationService.dispatch(NotificationRequest(event_type="new_invoice", invoice_id="i1"))

        assert result.original_user_count == 2
        assert result.message == "All users have disabled notifications for this event"

    def test_no_tokens_skips_push(self, steps):
        """Without devices or email there is nothing to send."""
        steps["recipients"].return_value = ["u1"]
        steps["tokens"].return_value = []

        result = NotificationService.dispatch(NotificationRequest(event_type="new_message"))

        assert result.message == "No push tokens found for users"
        steps["expo"].assert_not_called()
        steps["record"].assert_not_called()

    def test_push_sent_and_recorded(self, steps):
        steps["recipients"].return_value = ["u1", "u2"]
        steps["tokens"].return_value = [{"user_id": "u1", "expo_push_token": "ExponentPushToken[a]"}]
        steps["expo"].return_value = {"data": {"id": "r1"}}

        result = NotificationService.dispatch(NotificationRequest(event_type="new_message"))

        message = steps["expo"].call_args[0][0]
        assert message["to"] == ["ExponentPushToken[a]"]
        assert message["channelId"] == "messages"
        assert message["ttl"] == 86400
        assert result.recipients == 1
        assert result.user_count == 2
        steps["record"].assert_called_once()
        steps["email"].assert_not_called()

    def test_send_immediately_false_records_only(self, steps):
        steps["recipients"].return_value = ["u1"]
        steps["tokens"].return_value = [{"user_id": "u1", "expo_push_token": "ExponentPushToken[a]"}]

        result = NotificationService.dispatch(NotificationRequest(event_type="new_message", send_immediately=False))

        assert result.sent_immediately is False
        steps["expo"].assert_not_called()
        steps["record"].assert_called_once()

    def test_billing_events_email(self, steps):
        """Billing events are always emailed."""
        steps["recipients"].return_value = ["u1"]
        steps["tokens"].return_value = []
        steps["email"].return_value = 1

        result = NotificationService.dispatch(NotificationRequest(
            event_type="payment_required", include_email=True,
        ))

        assert result.email_recipients == 1

    def test_test_send_requires_target(self):
        with pytest.raises(InvalidRequestError):
            NotificationService.dispatch(NotificationRequest(event_type="new_invoice", test=True))

    def test_test_send_email(self):
        """Test sends use sample context and a [TEST] subject."""
        with patch.object(NotificationService, "get_emails_for_users", return_value=["p@school.co.za"]), \
                patch.object(NotificationService, "get_user_signature", return_value=None), \
                patch.object(NotificationService, "send_email") as send_email:
            result = NotificationService.dispatch(NotificationRequest(
                event_type="new_invoice", test=True, target_user_id="u1",
            ))

        assert result.test is True
        assert result.channel == "email"
        subject = send_email.call_args[0][1]
        assert subject == "[TEST] New Invoice"
        assert "TEST-001" in send_email.call_args[0][3]


class TestScheduledChecks:
    """Tests for the hourly sweep."""

    def test_dispatches_trials_and_assignments(self, supabase_query):
        client, query = supabase_query
        query.execute.side_effect = [
            MagicMock(data=[{"id": "sub-1", "school_id": SCHOOL_ID, "plan_id": "starter", "trial_end_date": "2025-03-11T00:00:00Z"}]),
            MagicMock(data=[{"id": "hw-1", "preschool_id": SCHOOL_ID}, {"id": "hw-2", "preschool_id": SCHOOL_ID}]),
        ]

        with patch("core.services.notification_service.SupabaseClient") as mock_supabase, \
                patch.object(NotificationService, "dispatch") as dispatch:
            mock_supabase.get_client.return_value = client
            dispatch.side_effect = [
                MagicMock(recipients=2),
                MagicMock(recipients=3),
                RuntimeError("expo down"),
            ]
            counts = NotificationService.run_scheduled_checks(now=NOW)

        assert counts == {"trials_notified": 2, "assignments_checked": 2, "notifications_sent": 3}
        trial_request = dispatch.call_args_list[0][0][0]
        assert trial_request.event_type == NotificationEvent.TRIAL_ENDING
        assert trial_request.include_email is True

    def test_assignment_query_failure_keeps_trial_counts(self, supabase_query):
        """A failed assignments query is logged and the trial results still return."""
        client, query = supabase_query
        query.execute.side_effect = [
            MagicMock(data=[{"id": "sub-1", "school_id": SCHOOL_ID, "plan_id": "starter", "trial_end_date": "2025-03-11T00:00:00Z"}]),
            RuntimeError("statement timeout"),
        ]

        with patch("core.services.notification_service.SupabaseClient") as mock_supabase, \
                patch.object(NotificationService, "dispatch") as dispatch:
            mock_supabase.get_client.return_value = client
            dispatch.return_value = MagicMock(recipients=4)
            counts = NotificationService.run_scheduled_checks(now=NOW)

        assert counts == {"trials_notified": 4, "assignments_checked": 0, "notifications_sent": 0}
        dispatch.assert_called_once()
