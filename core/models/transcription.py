# =============================================================================
# core/models/transcription.py - Speech-to-Text Schemas
# =============================================================================
# - TranscriptionResult: Text plus provider, cost and latency for one request
# - TranscriptionJob: Handle returned when audio is queued for background
#   (chunked) transcription; progress arrives over the WebSocket
# - TranscriptionEvent: Event types pushed to WebSocket subscribers
# =============================================================================

from enum import Enum

from pydantic import BaseModel, Field


class TranscriptionResult(BaseModel):
    """
    Example:
        {
            "text": "Good morning class",
            "language": "en-ZA",
            "provider": "openai-whisper",
            "duration_minutes": 0.5,
            "cost_usd": 0.003,
            "latency_ms": 812
        }
    """

    text: str
    language: str = Field(..., description="BCP-47 locale the audio was transcribed as")
    provider: str = "openai-whisper"
    duration_minutes: float
    cost_usd: float
    latency_ms: int
    tier: str | None = Field(default=None, description="Voice quota tier reported by the limit check")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class TranscriptionJob(BaseModel):
    job_id: str
    task_id: str
    status: JobStatus = JobStatus.QUEUED
    storage_path: str
    websocket_path: str = Field(..., description="Subscribe here for partial transcripts")


class TranscriptionEvent(str, Enum):
    PARTIAL = "transcription.partial"
    COMPLETE = "transcription.complete"
    FAILED = "transcription.failed"
