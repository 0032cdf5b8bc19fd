# =============================================================================
# app/websocket/__init__.py - WebSocket Module
# =============================================================================
# Provides real-time transcription progress.
#
# Usage:
#   # Broadcast to every client watching a job (from FastAPI)
#   from app.websocket import websocket_manager
#
#   await websocket_manager.broadcast(job_id, {"type": "transcription.partial", ...})
#
#   # Publish events from Celery workers
#   from app.websocket.broadcast import publish_transcription_partial
#
#   publish_transcription_partial(job_id, chunk_index, text)
# =============================================================================

from app.websocket.manager import websocket_manager
from app.websocket.broadcast import (
    publish_event,
    publish_transcription_partial,
    publish_transcription_complete,
    publish_transcription_failed,
    register_job_owner,
    get_job_owner,
    WEBSOCKET_CHANNEL,
)

__all__ = [
    "websocket_manager",
    "publish_event",
    "publish_transcription_partial",
    "publish_transcription_complete",
    "publish_transcription_failed",
    "register_job_owner",
    "get_job_owner",
    "WEBSOCKET_CHANNEL",
]
