# =============================================================================
# app/websocket/broadcast.py - Cross-Process Broadcasting
# =============================================================================
# Provides utilities for Celery workers to publish events that get broadcast
# to WebSocket clients.
#
# Uses Redis pub/sub for cross-process communication:
# - Workers call publish_event() to send events
# - FastAPI subscribes and broadcasts to WebSocket clients
#
# Job ownership is kept in Redis too so the WebSocket handshake can check
# that the caller queued the job it wants to watch.
#
# Events:
#   - transcription.partial: Transcript so far after a batch of chunks
#   - transcription.complete: Final transcript and usage
#   - transcription.failed: The job gave up
# =============================================================================

import json
import logging
from typing import Any

from core.models.transcription import TranscriptionEvent

logger = logging.getLogger(__name__)

# Redis channel for WebSocket events
WEBSOCKET_CHANNEL = "edudash:websocket:events"

JOB_OWNER_KEY = "edudash:transcription_job:{job_id}"
JOB_OWNER_TTL_SECONDS = 6 * 60 * 60


def get_redis_client():
    """Get a Redis client for pub/sub operations."""
    import redis
    from app.config import settings
    return redis.from_url(settings.REDIS_URL)


def publish_event(channel_id: str, event_type: str, data: dict[str, Any]) -> bool:
    """
    Publish an event that will be broadcast to WebSocket clients.

    Args:
        channel_id: The channel to broadcast to (a transcription job id)
        event_type: Event type, see TranscriptionEvent
        data: Event data to include

    Returns:
        bool: True if published successfully
    """
    try:
        client = get_redis_client()

        message = json.dumps({
            "channel_id": channel_id,
            "type": event_type,
            **data
        })

        client.publish(WEBSOCKET_CHANNEL, message)

        logger.debug(f"Published {event_type} event for channel {channel_id}")
        return True

    except Exception as e:
        logger.error(f"Failed to publish event: {e}")
        return False


def publish_transcription_partial(job_id: str, chunk_index: int, text: str) -> bool:
    return publish_event(
        channel_id=job_id,
        event_type=TranscriptionEvent.PARTIAL.value,
        data={
            "job_id": job_id,
            "chunk_index": chunk_index,
            "text": text,
        }
    )


def publish_transcription_complete(job_id: str, result: dict[str, Any]) -> bool:
    """
    Publish the final transcript.

    Called by the worker once every chunk has been transcribed.
    """
    return publish_event(
        channel_id=job_id,
        event_type=TranscriptionEvent.COMPLETE.value,
        data={
            "job_id": job_id,
            "status": "SUCCESS",
            "result": result,
        }
    )


def publish_transcription_failed(job_id: str, error: str) -> bool:
    return publish_event(
        channel_id=job_id,
        event_type=TranscriptionEvent.FAILED.value,
        data={
            "job_id": job_id,
            "status": "FAILURE",
            "error": error,
        }
    )


# =============================================================================
# Job ownership
# =============================================================================

def register_job_owner(job_id: str, user_id: str) -> bool:
    """Remember who queued a job; expires after JOB_OWNER_TTL_SECONDS."""
    try:
        client = get_redis_client()
        client.set(JOB_OWNER_KEY.format(job_id=job_id), user_id, ex=JOB_OWNER_TTL_SECONDS)
        return True
    except Exception as e:
        logger.error(f"Failed to register owner for job {job_id}: {e}")
        return False


def get_job_owner(job_id: str) -> str | None:
    """
    Look up who queued a job.

    Returns:
        The user id, or None if the job is unknown or expired

    Raises:
        redis.RedisError: Redis is unreachable
    """
    client = get_redis_client()
    owner = client.get(JOB_OWNER_KEY.format(job_id=job_id))
    if owner is None:
        return None
    return owner.decode() if isinstance(owner, bytes) else str(owner)
