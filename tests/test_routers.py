# =============================================================================
# tests/test_routers.py - API Endpoint Tests
# =============================================================================
# Endpoints are called through TestClient with the caller's UserContext
# injected (see client_for in conftest.py). Services are patched where the
# routers import them.
#
# Run with: pytest tests/test_routers.py -v
# =============================================================================

from unittest.mock import MagicMock, patch

import pytest

from app.auth.dependencies import get_current_user
from app.auth.models import AuthUser
from app.config import settings
from app.dependencies import get_proxy_service, get_transcription_service
from app.exceptions import QuotaExceededError
from core.models.ai import ProxyResponse, UsageInfo
from core.models.subscription import SeatLimits
from core.models.transcription import TranscriptionJob, TranscriptionResult
from core.models.usage import MonthlyUsage
from core.services.transcription_service import TranscriptionService

from tests.conftest import SCHOOL_ID, TEACHER_ID


# =============================================================================
# Health / root
# =============================================================================

class TestHealth:
    """Tests for health endpoints."""

    def test_health(self, client_for, teacher):
        response = client_for(teacher).get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["version"] == "1.0.0"

    def test_ready_degraded_when_redis_down(self, client_for, teacher):
        """Any failing dependency makes the service degraded."""
        with patch("lib.supabase_client.SupabaseClient.get_client"), \
                patch("redis.from_url", side_effect=ConnectionError("refused")):
            response = client_for(teacher).get("/api/v1/health/ready")

        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"] == "healthy"
        assert body["checks"]["redis"].startswith("unhealthy")

    def test_root(self, client_for, teacher):
        assert client_for(teacher).get("/").json()["name"] == "EduDash API"


# =============================================================================
# Auth
# =============================================================================

class TestAuthRoutes:
    """Tests for /auth endpoints."""

    def test_me(self, client_for, teacher):
        body = client_for(teacher).get("/api/v1/auth/me").json()

        assert body["id"] == str(TEACHER_ID)
        assert body["role"] == "teacher"
        assert body["organization_id"] == SCHOOL_ID

    def test_verify_without_token(self, client_for, teacher):
        """get_current_user is not overridden, so a missing header is 401."""
        response = client_for(teacher).get("/api/v1/auth/verify")

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"


# =============================================================================
# AI
# =============================================================================

class TestAIRoutes:
    """Tests for /ai endpoints."""

    @pytest.fixture
    def quota(self):
        with patch("app.routers.ai.QuotaService") as mock_quota:
            yield mock_quota

    @pytest.fixture
    def tier(self):
        with patch("app.routers.ai.SupabaseClient") as mock_supabase:
            mock_supabase.fetch_organization_tier.return_value = "free"
            yield mock_supabase

    def test_monthly_usage(self, client_for, teacher, quota):
        quota.get_monthly_usage.return_value = MonthlyUsage(lesson_generation=3)

        response = client_for(teacher).get("/api/v1/ai/usage")

        assert response.json() == {"lesson_generation": 3, "grading_assistance": 0, "homework_help": 0}
        quota.get_monthly_usage.assert_called_once_with(str(TEACHER_ID))

    def test_usage_stats_days_validated(self, client_for, teacher, quota):
        response = client_for(teacher).get("/api/v1/ai/usage/stats?days=0")

        assert response.status_code == 422

    def test_bulk_usage(self, client_for, teacher, quota):
        quota.bulk_increment.return_value = 4

        response = client_for(teacher).post("/api/v1/ai/usage/bulk", json={"feature": "homework_help", "count": 4})

        assert response.json() == {"success": True, "count": 4}
        quota.bulk_increment.assert_called_once_with(str(TEACHER_ID), SCHOOL_ID, "homework_help", 4)

    def test_proxy_json(self, client_for, teacher):
        service = MagicMock()
        service.handle.return_value = ProxyResponse(
            content="Lesson plan", usage=UsageInfo(tokens_in=5, tokens_out=7, cost=0.01), model="claude-3-haiku-20240307",
        )
        client = client_for(teacher, {get_proxy_service: lambda: service})

        response = client.post("/api/v1/ai/proxy", json={"scope": "teacher", "payload": {"prompt": "Plan"}})

        assert response.status_code == 200
        assert response.json()["content"] == "Lesson plan"
        assert response.json()["usage"]["tokens_out"] == 7

    def test_proxy_stream(self, client_for, teacher):
        service = MagicMock()
        service.handle.return_value = iter([
            'data: {"type": "content_block_delta", "delta": {"text": "Hi"}}\n\n',
            "data: [DONE]\n\n",
        ])
        client = client_for(teacher, {get_proxy_service: lambda: service})

        response = client.post(
            "/api/v1/ai/proxy",
            json={"scope": "teacher", "payload": {"prompt": "Plan"}, "stream": True},
        )

        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.text.endswith("data: [DONE]\n\n")

    def test_proxy_quota_exceeded(self, client_for, teacher):
        """Quota errors are 429 with Retry-After and quota_info."""
        service = MagicMock()
        service.handle.side_effect = QuotaExceededError(
            "Quota exceeded", quota_info={"used": 5, "limit": 5, "remaining": 0, "tier": "free"},
        )
        client = client_for(teacher, {get_proxy_service: lambda: service})

        response = client.post("/api/v1/ai/proxy", json={"scope": "teacher", "payload": {"prompt": "Plan"}})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3600"
        assert response.json()["quota_info"]["remaining"] == 0

    def test_proxy_rejects_empty_prompt(self, client_for, teacher):
        service = MagicMock()
        client = client_for(teacher, {get_proxy_service: lambda: service})

        response = client.post("/api/v1/ai/proxy", json={"scope": "teacher", "payload": {"prompt": ""}})

        assert response.status_code == 422
        service.handle.assert_not_called()

    def test_allocation_tier_restricted(self, client_for, teacher, quota, tier):
        """Teachers at a free preschool have no allocations."""
        response = client_for(teacher).get("/api/v1/ai/allocations/me")

        assert response.status_code == 403
        assert response.json()["code"] == "tier_restriction"
        quota.get_teacher_allocation.assert_not_called()

    def test_allocation_for_starter_school(self, client_for, teacher, quota, tier):
        tier.fetch_organization_tier.return_value = "starter"
        quota.get_teacher_allocation.return_value = {"id": "alloc-1"}

        response = client_for(teacher).get("/api/v1/ai/allocations/me")

        assert response.json() == {"id": "alloc-1"}

    def test_list_allocations_requires_principal(self, client_for, teacher, quota):
        response = client_for(teacher).get("/api/v1/ai/allocations")

        assert response.status_code == 403
        assert response.json()["code"] == "permission_denied"

    def test_update_allocation_other_school(self, client_for, principal, quota, tier):
        """Principals can't change allocations of teachers elsewhere."""
        tier.fetch_profile.return_value = {"id": "t9", "preschool_id": "another-school"}

        response = client_for(principal).put(
            "/api/v1/ai/allocations/t9",
            json={"allocated_quotas": {"claude_messages": 80}},
        )

        assert response.status_code == 403
        quota.update_teacher_allocation.assert_not_called()

    def test_update_allocation(self, client_for, principal, quota, tier):
        tier.fetch_profile.return_value = {"id": "t1", "preschool_id": SCHOOL_ID}
        quota.update_teacher_allocation.return_value = {"user_id": "t1"}

        response = client_for(principal).put(
            "/api/v1/ai/allocations/t1",
            json={"allocated_quotas": {"claude_messages": 80}, "reason": "Exam term"},
        )

        assert response.status_code == 200
        kwargs = quota.update_teacher_allocation.call_args[1]
        assert kwargs["preschool_id"] == SCHOOL_ID
        assert kwargs["allocated_quotas"].claude_messages == 80
        assert kwargs["reason"] == "Exam term"

    def test_limits(self, client_for, principal, tier):
        tier.fetch_organization_tier.return_value = "pro"

        body = client_for(principal).get("/api/v1/ai/limits").json()

        assert body["tier"] == "premium"
        assert body["plan_tier"] == "pro"
        assert body["plan_limits"]["transcription"] == 1800
        assert body["can_select_models"] is True
        assert body["can_use_allocation"] is True


# =============================================================================
# Notifications
# =============================================================================

class TestNotificationRoutes:
    """Tests for /notifications endpoints."""

    def test_trigger_requires_service_key(self, client_for, teacher):
        response = client_for(teacher).post(
            "/api/v1/notifications/trigger",
            json={"type": "INSERT", "table": "messages", "record": {}},
            headers={"Authorization": "Bearer not-the-key"},
        )

        assert response.status_code == 401

    def test_trigger_skipped(self, client_for, teacher):
        response = client_for(teacher).post(
            "/api/v1/notifications/trigger",
            json={"type": "UPDATE", "table": "students", "record": {}},
            headers={"Authorization": f"Bearer {settings.SUPABASE_SERVICE_KEY}"},
        )

        assert response.status_code == 202
        assert response.json() == {"success": True, "skipped": True}

    def test_trigger_queued(self, client_for, teacher):
        with patch("workers.tasks.dispatch_notification") as task:
            task.delay.return_value = MagicMock(id="task-9")
            response = client_for(teacher).post(
                "/api/v1/notifications/trigger",
                json={"type": "INSERT", "table": "messages", "record": {"id": "m1", "thread_id": "t1"}},
                headers={"Authorization": f"Bearer {settings.SUPABASE_SERVICE_KEY}"},
            )

        assert response.json()["task_id"] == "task-9"
        assert response.json()["event_type"] == "new_message"
        queued = task.delay.call_args[0][0]
        assert queued == {
            "event_type": "new_message",
            "thread_id": "t1",
            "message_id": "m1",
            "test": False,
            "include_email": False,
            "send_immediately": True,
        }

    def test_parent_cannot_address_users(self, client_for, parent):
        response = client_for(parent).post(
            "/api/v1/notifications/dispatch",
            json={"event_type": "custom", "user_ids": ["u1"]},
        )

        assert response.status_code == 403

    def test_parent_test_send_to_self(self, client_for, parent):
        from core.models.notification import DispatchResult

        with patch("app.routers.notifications.NotificationService") as service:
            service.dispatch.return_value = DispatchResult(test=True, channel="push", recipients=1)
            response = client_for(parent).post(
                "/api/v1/notifications/dispatch",
                json={"event_type": "new_invoice", "test": True, "channel": "push", "target_user_id": str(parent.id)},
            )

        assert response.status_code == 200
        assert response.json()["test"] is True

    def test_scheduled_superadmin_only(self, client_for, principal, superadmin):
        assert client_for(principal).post("/api/v1/notifications/scheduled").status_code == 403

        with patch("workers.tasks.run_scheduled_notifications") as task:
            task.delay.return_value = MagicMock(id="sweep-1")
            response = client_for(superadmin).post("/api/v1/notifications/scheduled")

        assert response.status_code == 202
        assert response.json()["task_id"] == "sweep-1"


# =============================================================================
# Transcriptions
# =============================================================================

class TestTranscriptionRoutes:
    """Tests for /transcriptions endpoints."""

    @pytest.fixture
    def service(self):
        service = MagicMock()
        service.load_audio.side_effect = TranscriptionService.load_audio
        return service

    def test_transcribe_upload(self, client_for, teacher, service):
        service.transcribe.return_value = TranscriptionResult(
            text="Molo", language="xh-ZA", duration_minutes=0.5, cost_usd=0.003, latency_ms=420, tier="starter",
        )
        client = client_for(teacher, {get_transcription_service: lambda: service})

        response = client.post(
            "/api/v1/transcriptions",
            files={"audio": ("clip.m4a", b"fake-audio", "audio/m4a")},
            data={"language": "xh"},
        )

        assert response.status_code == 200
        assert response.json()["text"] == "Molo"
        assert response.headers["X-Latency-Ms"] == "420"
        assert response.headers["X-Cost-Usd"] == "0.003000"
        assert response.headers["X-Quota-Tier"] == "starter"
        assert service.transcribe.call_args[0][1] == b"fake-audio"

    def test_unsupported_format(self, client_for, teacher, service):
        client = client_for(teacher, {get_transcription_service: lambda: service})

        response = client.post("/api/v1/transcriptions", data={"audio_base64": "aGVsbG8=", "format": "flac"})

        assert response.status_code == 400
        assert response.json()["details"]["allowed"] == ["m4a", "mp3", "ogg", "wav", "webm"]

    def test_no_audio(self, client_for, teacher, service):
        client = client_for(teacher, {get_transcription_service: lambda: service})

        response = client.post("/api/v1/transcriptions", data={"language": "en"})

        assert response.status_code == 400
        assert response.json()["detail"] == "No audio source provided"

    def test_too_large(self, client_for, teacher, service):
        client = client_for(teacher, {get_transcription_service: lambda: service})

        with patch.object(settings, "MAX_AUDIO_UPLOAD_MB", 0):
            response = client.post(
                "/api/v1/transcriptions",
                files={"audio": ("clip.m4a", b"xx", "audio/m4a")},
            )

        assert response.status_code == 400
        service.transcribe.assert_not_called()

    def test_create_job(self, client_for, teacher, service):
        service.create_job.return_value = TranscriptionJob(
            job_id="job-1", task_id="task-1", storage_path="u/clip.m4a", websocket_path="/ws/transcriptions/job-1",
        )
        client = client_for(teacher, {get_transcription_service: lambda: service})

        response = client.post(
            "/api/v1/transcriptions/jobs",
            files={"audio": ("clip.wav", b"RIFF-audio", "audio/wav")},
            data={"format": "wav", "duration_seconds": "2.5"},
        )

        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        kwargs = service.create_job.call_args[1]
        assert kwargs["duration_ms"] == 2500
        assert kwargs["audio_format"] == "wav"


# =============================================================================
# Subscriptions / Seats
# =============================================================================

class TestSubscriptionRoutes:
    """Tests for /subscriptions endpoints."""

    def test_plans_for_any_user(self, client_for, parent):
        with patch("app.routers.subscriptions.SubscriptionService") as service:
            service.list_plans.return_value = [{"id": "p1"}]
            response = client_for(parent).get("/api/v1/subscriptions/plans")

        assert response.json() == {"plans": [{"id": "p1"}], "total": 1}

    def test_create_requires_superadmin(self, client_for, principal):
        response = client_for(principal).post(
            "/api/v1/subscriptions",
            json={"school_id": SCHOOL_ID, "plan_id": "p1"},
        )

        assert response.status_code == 403
        assert response.json()["details"]["required_roles"] == ["superadmin"]

    def test_create_passes_caller_token(self, client_for, superadmin):
        from core.models.subscription import SubscriptionCreated

        with patch("app.routers.subscriptions.SubscriptionService") as service:
            service.create_school_subscription.return_value = SubscriptionCreated(
                id="sub-1", status="active", requires_payment=False, seats_total=10,
                start_date="2025-01-01T00:00:00+00:00", end_date="2025-02-01T00:00:00+00:00",
            )
            response = client_for(superadmin).post(
                "/api/v1/subscriptions",
                json={"school_id": SCHOOL_ID, "plan_id": "p1"},
            )

        assert response.status_code == 201
        assert service.create_school_subscription.call_args[1]["access_token"] == "user-access-token"


class TestSeatRoutes:
    """Tests for /seats endpoints."""

    def test_limits_with_display(self, client_for, principal):
        with patch("app.routers.seats.SeatService") as service:
            service.get_seat_limits.return_value = SeatLimits(limit=5, used=5, available=0)
            body = client_for(principal).get("/api/v1/seats/limits").json()

        assert body["display"]["display_text"] == "5/5 seats used"
        assert body["assignment_disabled"] is True

    def test_assign(self, client_for, principal):
        with patch("app.routers.seats.SeatService") as service:
            service.assign_teacher_seat.return_value = {"ok": True}
            response = client_for(principal).post("/api/v1/seats/t1")

        assert response.json() == {"success": True, "teacher_id": "t1", "result": {"ok": True}}
        service.assign_teacher_seat.assert_called_once_with("t1", "user-access-token")


# =============================================================================
# Tasks
# =============================================================================

class TestTaskRoutes:
    """Tests for /tasks endpoints."""

    def test_requires_token(self, client_for, teacher):
        assert client_for(teacher).get("/api/v1/tasks/abc").status_code == 401

    def test_progress_includes_partial_text(self, client_for, teacher):
        client = client_for(teacher, {get_current_user: lambda: AuthUser(id=TEACHER_ID)})
        result = MagicMock(status="PROGRESS", info={"percent": 50, "message": "Chunk 2/4", "text": "good morning"})

        with patch("workers.celery_app.celery_app.AsyncResult", return_value=result):
            body = client.get("/api/v1/tasks/abc").json()

        assert body["progress"] == 50
        assert body["partial_text"] == "good morning"

    def test_cancel_finished_task(self, client_for, teacher):
        client = client_for(teacher, {get_current_user: lambda: AuthUser(id=TEACHER_ID)})
        result = MagicMock(status="SUCCESS")

        with patch("workers.celery_app.celery_app.AsyncResult", return_value=result):
            body = client.delete("/api/v1/tasks/abc").json()

        assert body["cancelled"] is False
        result.revoke.assert_not_called()

    def test_cancel_running_transcription(self, client_for, teacher):
        client = client_for(teacher, {get_current_user: lambda: AuthUser(id=TEACHER_ID)})
        result = MagicMock(status="PROGRESS")

        with patch("workers.celery_app.celery_app.AsyncResult", return_value=result):
            body = client.delete("/api/v1/tasks/abc").json()

        assert body["cancelled"] is True
        result.revoke.assert_called_once_with(terminate=True)

    def test_revoked_status(self, client_for, teacher):
        client = client_for(teacher, {get_current_user: lambda: AuthUser(id=TEACHER_ID)})

        with patch("workers.celery_app.celery_app.AsyncResult", return_value=MagicMock(status="REVOKED")):
            body = client.get("/api/v1/tasks/abc").json()

        assert body["message"] == "Cancelled"
        assert body["progress"] is None

    def test_healthcheck_superadmin(self, client_for, teacher, superadmin):
        """Only superadmins can queue the worker healthcheck."""
        overrides = {get_current_user: lambda: AuthUser(id=TEACHER_ID)}
        assert client_for(teacher, overrides).post("/api/v1/tasks/healthcheck").status_code == 403

        with patch("workers.celery_app.healthcheck") as task:
            task.delay.return_value = MagicMock(id="hc-1")
            response = client_for(superadmin, overrides).post("/api/v1/tasks/healthcheck")

        assert response.json()["task_id"] == "hc-1"
        assert response.json()["status"] == "PENDING"
