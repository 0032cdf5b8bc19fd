# =============================================================================
# workers/tasks.py - Celery Task Definitions
# =============================================================================
# Background work that should not hold an HTTP request open.
#
# Tasks:
# - dispatch_notification: Send one notification event (push + email)
# - run_scheduled_notifications: Hourly trial-ending / due-soon sweep
# - transcribe_audio: Chunked Whisper transcription with live progress
# =============================================================================

import logging
from typing import Any
from celery import shared_task, current_task

logger = logging.getLogger(__name__)


# =============================================================================
# Task State Updates
# =============================================================================

def update_progress(current: int, total: int, message: str = "Processing...", **extra: Any):
    """Update task progress for polling via /tasks/{task_id}."""
    if current_task:
        current_task.update_state(
            state="PROGRESS",
            meta={
                "current": current,
                "total": total,
                "percent": int((current / total) * 100) if total else 0,
                "message": message,
                **extra,
            }
        )


# =============================================================================
# Notifications
# =============================================================================

@shared_task(bind=True, name="workers.tasks.dispatch_notification")
def dispatch_notification(self, request: dict[str, Any]) -> dict[str, Any]:
    """
    Dispatch a notification event.

    Args:
        request: NotificationRequest as a dict (JSON-serializable for Celery)

    Returns:
        DispatchResult as a dict
    """
    from core.models.notification import NotificationRequest
    from core.services.notification_service import NotificationService

    logger.info(f"Dispatching {request.get('event_type')} notification")

    try:
        result = NotificationService.dispatch(NotificationRequest.model_validate(request))
        return result.model_dump()
    except Exception as e:
        logger.exception(f"Notification dispatch failed: {e}")
        return {
            "success": False,
            "event_type": request.get("event_type"),
            "error": str(e),
        }


@shared_task(bind=True, name="workers.tasks.run_scheduled_notifications")
def run_scheduled_notifications(self) -> dict[str, Any]:
    """Run the hourly trial-ending and assignment-due checks."""
    from core.services.notification_service import NotificationService

    try:
        counts = NotificationService.run_scheduled_checks()
        return {"success": True, **counts}
    except Exception as e:
        logger.exception(f"Scheduled notifications failed: {e}")
        return {"success": False, "error": str(e)}


# =============================================================================
# Transcription
# =============================================================================

@shared_task(bind=True, name="workers.tasks.transcribe_audio")
def transcribe_audio(
    self,
    job_id: str,
    user_id: str,
    preschool_id: str,
    storage_path: str,
    language: str | None = None,
    duration_ms: int | None = None,
    audio_format: str = "m4a",
) -> dict[str, Any]:
    """
    Transcribe a stored recording in overlapping chunks.

    Each finished batch is published to WebSocket subscribers of the job
    and mirrored in the task's PROGRESS state.

    Returns:
        Dict with success, job_id and the TranscriptionResult fields
    """
    from app.websocket.broadcast import (
        publish_transcription_complete,
        publish_transcription_failed,
        publish_transcription_partial,
    )
    from core.services.transcription_service import TranscriptionService

    logger.info(f"Transcribing job {job_id}: {storage_path}")
    update_progress(0, 1, "Downloading audio...", job_id=job_id)

    def on_partial(chunk_index: int, total: int, text: str) -> None:
        publish_transcription_partial(job_id, chunk_index, text)
        update_progress(
            chunk_index + 1,
            total,
            f"Transcribed chunk {chunk_index + 1}",
            job_id=job_id,
            text=text,
        )

    try:
        result = TranscriptionService().run_job(
            user_id=user_id,
            preschool_id=preschool_id,
            storage_path=storage_path,
            language=language,
            duration_ms=duration_ms,
            audio_format=audio_format,
            on_partial=on_partial,
        )

        payload = result.model_dump()
        publish_transcription_complete(job_id, payload)
        logger.info(f"Job {job_id} complete: {len(result.text)} chars")

        return {"success": True, "job_id": job_id, **payload}

    except Exception as e:
        logger.exception(f"Transcription job {job_id} failed: {e}")
        error = getattr(e, "message", None) or str(e)
        publish_transcription_failed(job_id, error)
        return {"success": False, "job_id": job_id, "error": error}
