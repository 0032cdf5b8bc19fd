# =============================================================================
# app/routers/transcriptions.py - Speech-to-Text Endpoints
# =============================================================================
# Audio arrives as a multipart upload, a Storage path, or base64.
# - POST /transcriptions: Transcribe now and return the text
# - POST /transcriptions/jobs: Queue chunked transcription; follow it on
#   /ws/transcriptions/{job_id} or /api/v1/tasks/{task_id}
# =============================================================================

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status

from app.auth import UserContext, get_user_context
from app.config import settings
from app.dependencies import TranscriptionServiceDep
from app.exceptions import InvalidRequestError
from core.models.transcription import TranscriptionJob, TranscriptionResult

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_FORMATS = {"m4a", "mp3", "wav", "webm", "ogg"}


def _read_audio(
    service,
    audio: UploadFile | None,
    storage_path: str | None,
    audio_base64: str | None,
) -> bytes:
    upload = None
    if audio is not None:
        upload = audio.file.read(settings.max_audio_upload_bytes + 1)

    data = service.load_audio(storage_path=storage_path, audio_base64=audio_base64, upload=upload)

    if len(data) > settings.max_audio_upload_bytes:
        raise InvalidRequestError(
            f"Audio exceeds {settings.MAX_AUDIO_UPLOAD_MB}MB limit",
            details={"max_bytes": settings.max_audio_upload_bytes},
        )
    return data


def _check_format(audio_format: str) -> str:
    value = audio_format.lower().lstrip(".")
    if value not in ALLOWED_FORMATS:
        raise InvalidRequestError(
            f"Unsupported audio format: {audio_format}",
            details={"allowed": sorted(ALLOWED_FORMATS)},
        )
    return value


@router.post("", response_model=TranscriptionResult)
def transcribe(
    response: Response,
    service: TranscriptionServiceDep,
    user: UserContext = Depends(get_user_context),
    audio: Annotated[UploadFile | None, File(description="Audio file")] = None,
    language: Annotated[str | None, Form(description="Language hint, e.g. zu-ZA")] = None,
    storage_path: Annotated[str | None, Form(description="Path of audio already in Storage")] = None,
    audio_base64: Annotated[str | None, Form(description="Base64 audio")] = None,
    format: Annotated[str, Form(description="Audio container")] = "m4a",
    duration_seconds: Annotated[float | None, Form(gt=0)] = None,
):
    """
    Transcribe one recording with Whisper.

    Errors:
        400 invalid_request: No audio, bad base64, or file too large
        429 voice_quota_exceeded: Fall back to on-device recognition
        502 transcription_error: Whisper or Storage failed
    """
    audio_format = _check_format(format)
    data = _read_audio(service, audio, storage_path, audio_base64)

    result = service.transcribe(
        user,
        data,
        language=language,
        audio_format=audio_format,
        duration_seconds=duration_seconds,
    )

    response.headers["X-Latency-Ms"] = str(result.latency_ms)
    response.headers["X-Cost-Usd"] = f"{result.cost_usd:.6f}"
    if result.tier:
        response.headers["X-Quota-Tier"] = result.tier

    return result


@router.post("/jobs", response_model=TranscriptionJob, status_code=status.HTTP_202_ACCEPTED)
def create_transcription_job(
    service: TranscriptionServiceDep,
    user: UserContext = Depends(get_user_context),
    audio: Annotated[UploadFile | None, File(description="Audio file")] = None,
    language: Annotated[str | None, Form()] = None,
    audio_base64: Annotated[str | None, Form()] = None,
    format: Annotated[str, Form()] = "m4a",
    duration_seconds: Annotated[float | None, Form(gt=0)] = None,
):
    """
    Queue a long recording for chunked transcription.

    The audio is stored under voice-notes/{user_id}/. Partial transcripts
    are pushed to websocket_path as each batch of chunks finishes.
    """
    audio_format = _check_format(format)
    data = _read_audio(service, audio, None, audio_base64)

    return service.create_job(
        user,
        data,
        language=language,
        audio_format=audio_format,
        duration_ms=int(duration_seconds * 1000) if duration_seconds else None,
    )
