# =============================================================================
# core/services/transcription_service.py - Speech-to-Text
# =============================================================================
# Whisper transcription with voice quota checks and usage recording.
#
# Two entry points:
#   - transcribe(): one Whisper call for a short recording (synchronous API)
#   - transcribe_chunked(): split a long recording into overlapping byte
#     windows, transcribe them in parallel and stitch the text back together
#     (used by the transcribe_audio Celery task, which streams partials)
#
# Chunk boundaries overlap by CHUNK_OVERLAP_MS, so the stitched transcript
# is de-duplicated on repeated words and 2-5 word phrases.
# =============================================================================

import base64
import binascii
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable
from uuid import uuid4

from openai import OpenAI, OpenAIError

from app.auth.models import UserContext
from app.config import settings
from app.exceptions import (
    InvalidRequestError,
    TranscriptionError,
    VoiceQuotaExceededError,
)
from core.models.transcription import TranscriptionJob, TranscriptionResult
from lib.supabase_client import SupabaseClient, SupabaseClientError

logger = logging.getLogger(__name__)

CHUNK_DURATION_MS = 1500
CHUNK_OVERLAP_MS = 300
MAX_PARALLEL_CHUNKS = 4
MIN_CHUNK_SIZE_BYTES = 512

WHISPER_COST_PER_MINUTE = 0.006
DEFAULT_ESTIMATED_MINUTES = 0.5
PROVIDER = "openai-whisper"
DEFAULT_LOCALE = "en-ZA"

VOICE_NOTES_BUCKET = "voice-notes"
WAV_HEADER_BYTES = 44

_WHISPER_LANGUAGES = {
    "en-ZA": "en", "en-US": "en", "en": "en",
    "af-ZA": "af", "af": "af",
    "zu-ZA": "zu", "zu": "zu",
    "xh-ZA": "xh", "xh": "xh",
    "nso-ZA": "st", "st": "st",
}

_MIME_TYPES = {"wav": "audio/wav", "mp3": "audio/mpeg", "m4a": "audio/m4a"}


# =============================================================================
# Language and storage helpers
# =============================================================================

def map_whisper_language(locale: str | None) -> str:
    """BCP-47 locale -> Whisper's two-letter code (en when unknown)."""
    return _WHISPER_LANGUAGES.get(locale or "", "en")


def map_azure_locale(code: str | None) -> str:
    """
    Normalise any language hint to one of the South African locales.

    Example:
        map_azure_locale("zu")     # "zu-ZA"
        map_azure_locale("en-us")  # "en-US"
        map_azure_locale("nso")    # "en-ZA"
    """
    value = (code or "").lower()
    if value.startswith("af"):
        return "af-ZA"
    if value.startswith("zu"):
        return "zu-ZA"
    if value.startswith("xh"):
        return "xh-ZA"
    if value.startswith("nso") or value.startswith("st"):
        return "en-ZA"
    if value.startswith("en-us"):
        return "en-US"
    return "en-ZA"


def bucket_for_path(path: str) -> str:
    if "homework-submissions" in path:
        return "homework-submissions"
    if "message-media" in path:
        return "message-media"
    return VOICE_NOTES_BUCKET


def estimate_duration_ms(total_bytes: int) -> int:
    return int(total_bytes * 1000 / settings.AUDIO_BYTES_PER_SECOND)


# =============================================================================
# Chunking
# =============================================================================

def plan_chunks(total_bytes: int, duration_ms: int | None = None) -> list[tuple[int, int]]:
    """
    Split a recording into overlapping [start, end) byte ranges.

    Each window covers CHUNK_DURATION_MS of audio and starts
    CHUNK_DURATION_MS - CHUNK_OVERLAP_MS after the previous one. Short
    recordings are a single chunk, and a tiny trailing chunk is folded into
    the one before it.

    Example:
        plan_chunks(48000, 3000)  # [(0, 24000), (19200, 43200), (38400, 48000)]
    """
    if total_bytes <= 0:
        return []

    if duration_ms is None:
        duration_ms = estimate_duration_ms(total_bytes)
    if duration_ms <= CHUNK_DURATION_MS:
        return [(0, total_bytes)]

    bytes_per_ms = total_bytes / duration_ms
    window = max(1, int(CHUNK_DURATION_MS * bytes_per_ms))
    step = max(1, window - int(CHUNK_OVERLAP_MS * bytes_per_ms))

    chunks: list[tuple[int, int]] = []
    start = 0
    while start < total_bytes:
        end = min(start + window, total_bytes)
        chunks.append((start, end))
        if end == total_bytes:
            break
        start += step

    if len(chunks) > 1 and chunks[-1][1] - chunks[-1][0] < MIN_CHUNK_SIZE_BYTES:
        last = chunks.pop()
        chunks[-1] = (chunks[-1][0], last[1])

    return chunks


def slice_chunk(audio: bytes, start: int, end: int) -> bytes:
    """Cut one chunk; WAV chunks after the first reuse the file's header."""
    if start > 0 and audio[:4] == b"RIFF":
        return audio[:WAV_HEADER_BYTES] + audio[max(start, WAV_HEADER_BYTES):end]
    return audio[start:end]


def deduplicate_transcript(chunk_texts: list[str]) -> str:
    """
    Join chunk transcripts and remove text repeated across chunk overlaps.

    Example:
        deduplicate_transcript(["the cat sat on", "sat on the mat"])
        # "the cat sat on the mat"
    """
    words = " ".join(t.strip() for t in chunk_texts if t and t.strip()).split()
    result: list[str] = []

    i = 0
    while i < len(words):
        word = words[i]
        if result and word.lower() == result[-1].lower():
            i += 1
            continue

        skipped = False
        for lookback in range(2, min(5, len(result)) + 1):
            upcoming = words[i:i + lookback]
            if len(upcoming) < lookback:
                break
            recent = [w.lower() for w in result[-lookback:]]
            if recent == [w.lower() for w in upcoming]:
                i += lookback
                skipped = True
                break

        if not skipped:
            result.append(word)
            i += 1

    return " ".join(result)


# =============================================================================
# Whisper
# =============================================================================

class WhisperTranscriber:
    """Thin wrapper over OpenAI's audio transcription endpoint."""

    def __init__(self, client: OpenAI | None = None, model: str | None = None):
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise TranscriptionError("OpenAI API key not configured")
            client = OpenAI(api_key=settings.OPENAI_API_KEY)
        self.client = client
        self.model = model or settings.WHISPER_MODEL

    def transcribe(self, audio: bytes, language: str, filename: str = "audio.m4a") -> str:
        """
        Returns:
            Transcribed text (may be empty for silence)

        Raises:
            TranscriptionError: If Whisper rejects the request
        """
        logger.debug(f"Transcribing {len(audio)} bytes with Whisper (lang={language})")
        try:
            response = self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio),
                language=language,
            )
        except OpenAIError as e:
            raise TranscriptionError(f"Whisper STT error: {e}")
        return (getattr(response, "text", None) or "").strip()


# =============================================================================
# Service
# =============================================================================

class TranscriptionService:
    """
    Voice transcription with per-school voice quotas.

    Example:
        service = TranscriptionService()
        result = service.transcribe(user, audio_bytes, language="zu-ZA")
    """

    def __init__(self, transcriber: WhisperTranscriber | None = None):
        self._transcriber = transcriber

    @property
    def transcriber(self) -> WhisperTranscriber:
        # Created lazily so endpoints that only queue jobs work without a key
        if self._transcriber is None:
            self._transcriber = WhisperTranscriber()
        return self._transcriber

    # -------------------------------------------------------------------------
    # Voice quota
    # -------------------------------------------------------------------------

    @staticmethod
    def check_voice_limit(
        user_id: str,
        preschool_id: str,
        estimated_minutes: float = DEFAULT_ESTIMATED_MINUTES,
    ) -> dict[str, Any]:
        """
        Check the school's voice allowance before calling Whisper.

        Fails open: if the RPC errors the request is allowed.

        Raises:
            VoiceQuotaExceededError: The allowance is used up
        """
        try:
            result = SupabaseClient.call_rpc(
                "check_voice_usage_limit",
                {
                    "p_user_id": user_id,
                    "p_preschool_id": preschool_id,
                    "p_service": "stt",
                    "p_estimated_units": estimated_minutes,
                },
            )
        except SupabaseClientError as e:
            logger.error(f"Voice usage limit check failed, allowing request: {e.message}")
            return {"allowed": True}

        if isinstance(result, list):
            result = result[0] if result else None
        result = result or {"allowed": True}

        if result.get("allowed") is False:
            logger.warning(f"Voice usage limit exceeded for {user_id}: {result.get('reason')}")
            raise VoiceQuotaExceededError(
                reason=result.get("reason"),
                tier=result.get("tier"),
                quota_remaining=result.get("quota_remaining"),
            )
        return result

    @staticmethod
    def record_voice_usage(
        user_id: str,
        preschool_id: str,
        minutes: float,
        cost_usd: float,
        language: str,
    ) -> None:
        try:
            SupabaseClient.call_rpc(
                "record_voice_usage",
                {
                    "p_user_id": user_id,
                    "p_preschool_id": preschool_id,
                    "p_service": "stt",
                    "p_units": minutes,
                    "p_cost_usd": cost_usd,
                    "p_provider": PROVIDER,
                    "p_language": language,
                },
            )
        except SupabaseClientError as e:
            logger.error(f"Failed to record voice usage: {e.message}")

    # -------------------------------------------------------------------------
    # Audio sources
    # -------------------------------------------------------------------------

    @staticmethod
    def load_audio(
        storage_path: str | None = None,
        audio_base64: str | None = None,
        upload: bytes | None = None,
    ) -> bytes:
        """
        Resolve the audio bytes from whichever source the client sent.

        Raises:
            InvalidRequestError: No source, or base64 that does not decode
            TranscriptionError: Storage download failed
        """
        if upload:
            return upload

        if audio_base64:
            try:
                return base64.b64decode(audio_base64, validate=True)
            except (binascii.Error, ValueError):
                raise InvalidRequestError("audio_base64 is not valid base64")

        if storage_path:
            bucket = bucket_for_path(storage_path)
            try:
                client = SupabaseClient.get_client()
                return client.storage.from_(bucket).download(storage_path)
            except Exception as e:
                logger.error(f"Audio download failed for {bucket}/{storage_path}: {e}")
                raise TranscriptionError(
                    f"Failed to download audio: {storage_path}",
                    details={"bucket": bucket},
                )

        raise InvalidRequestError("No audio source provided")

    @staticmethod
    def upload_audio(user_id: str, audio: bytes, audio_format: str = "m4a") -> str:
        """Store a recording under voice-notes/{user_id}/ and return its path."""
        path = f"{user_id}/{uuid4()}.{audio_format}"
        try:
            client = SupabaseClient.get_client()
            client.storage.from_(VOICE_NOTES_BUCKET).upload(
                path=path,
                file=audio,
                file_options={"content-type": _MIME_TYPES.get(audio_format, "audio/m4a")},
            )
        except Exception as e:
            logger.error(f"Audio upload failed: {e}")
            raise TranscriptionError("Failed to store audio for transcription")

        logger.info(f"Uploaded audio to {VOICE_NOTES_BUCKET}/{path} ({len(audio)} bytes)")
        return path

    # -------------------------------------------------------------------------
    # Transcription
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_preschool(user: UserContext) -> str:
        if not user.preschool_id:
            raise InvalidRequestError("No preschool_id found")
        return user.preschool_id

    def transcribe(
        self,
        user: UserContext,
        audio: bytes,
        language: str | None = None,
        audio_format: str = "m4a",
        duration_seconds: float | None = None,
    ) -> TranscriptionResult:
        """
        Transcribe one recording in a single Whisper call.

        Args:
            user: Caller; must belong to a preschool
            audio: Raw audio bytes
            language: Any language hint ("zu", "af-ZA"...); defaults to en-ZA
            audio_format: File extension passed to Whisper
            duration_seconds: Real duration if the client knows it

        Raises:
            InvalidRequestError: Caller has no preschool
            VoiceQuotaExceededError: Voice allowance used up
            TranscriptionError: Whisper failed
        """
        user_id = str(user.id)
        preschool_id = self._require_preschool(user)
        locale = map_azure_locale(language or DEFAULT_LOCALE)

        limit = self.check_voice_limit(user_id, preschool_id)

        start = time.monotonic()
        text = self.transcriber.transcribe(audio, map_whisper_language(locale), f"audio.{audio_format}")
        latency_ms = int((time.monotonic() - start) * 1000)

        minutes = duration_seconds / 60 if duration_seconds else DEFAULT_ESTIMATED_MINUTES
        cost = minutes * WHISPER_COST_PER_MINUTE
        self.record_voice_usage(user_id, preschool_id, minutes, cost, locale)

        logger.info(f"Transcribed {len(audio)} bytes for {user_id} in {latency_ms}ms ({locale})")

        return TranscriptionResult(
            text=text,
            language=locale,
            provider=PROVIDER,
            duration_minutes=minutes,
            cost_usd=round(cost, 6),
            latency_ms=latency_ms,
            tier=limit.get("tier"),
        )

    def _transcribe_chunk(self, audio: bytes, index: int, language: str, filename: str) -> str:
        try:
            return self.transcriber.transcribe(audio, language, filename)
        except Exception as e:
            logger.warning(f"Chunk {index} failed, skipping: {e}")
            return ""

    def transcribe_chunked(
        self,
        audio: bytes,
        language: str | None = None,
        on_partial: Callable[[int, int, str], None] | None = None,
        duration_ms: int | None = None,
        audio_format: str = "m4a",
    ) -> str:
        """
        Transcribe a long recording as overlapping chunks.

        Chunks run MAX_PARALLEL_CHUNKS at a time. After each batch the
        transcript so far is de-duplicated and handed to on_partial along
        with the index of the last finished chunk and the chunk count.

        Returns:
            The full de-duplicated transcript
        """
        whisper_language = map_whisper_language(map_azure_locale(language or DEFAULT_LOCALE))
        filename = f"audio.{audio_format}"
        ranges = plan_chunks(len(audio), duration_ms)
        texts: list[str] = [""] * len(ranges)

        logger.info(f"Transcribing {len(audio)} bytes as {len(ranges)} chunk(s)")

        with ThreadPoolExecutor(max_workers=MAX_PARALLEL_CHUNKS) as pool:
            for batch_start in range(0, len(ranges), MAX_PARALLEL_CHUNKS):
                batch = list(range(batch_start, min(batch_start + MAX_PARALLEL_CHUNKS, len(ranges))))
                futures = {
                    index: pool.submit(
                        self._transcribe_chunk,
                        slice_chunk(audio, *ranges[index]),
                        index,
                        whisper_language,
                        filename,
                    )
                    for index in batch
                }
                for index, future in futures.items():
                    texts[index] = future.result()

                if on_partial:
                    on_partial(batch[-1], len(ranges), deduplicate_transcript(texts[:batch[-1] + 1]))

        return deduplicate_transcript(texts)

    # -------------------------------------------------------------------------
    # Background jobs
    # -------------------------------------------------------------------------

    def create_job(
        self,
        user: UserContext,
        audio: bytes,
        language: str | None = None,
        audio_format: str = "m4a",
        duration_ms: int | None = None,
    ) -> TranscriptionJob:
        """
        Store the audio and queue chunked transcription in the worker.

        Quota is checked up front with the estimated length so the client
        can fall back to on-device recognition immediately.
        """
        from app.websocket.broadcast import register_job_owner
        from workers.tasks import transcribe_audio

        user_id = str(user.id)
        preschool_id = self._require_preschool(user)
        duration_ms = duration_ms or estimate_duration_ms(len(audio))
        self.check_voice_limit(user_id, preschool_id, max(duration_ms / 60000, DEFAULT_ESTIMATED_MINUTES))

        storage_path = self.upload_audio(user_id, audio, audio_format)
        job_id = str(uuid4())
        if not register_job_owner(job_id, user_id):
            # The WebSocket will report 4004; polling /tasks still works
            logger.warning(f"Job {job_id} has no registered owner, live updates unavailable")

        task = transcribe_audio.delay(
            job_id=job_id,
            user_id=user_id,
            preschool_id=preschool_id,
            storage_path=storage_path,
            language=language,
            duration_ms=duration_ms,
            audio_format=audio_format,
        )
        logger.info(f"Queued transcription job {job_id} as task {task.id}")

        return TranscriptionJob(
            job_id=job_id,
            task_id=task.id,
            storage_path=storage_path,
            websocket_path=f"/ws/transcriptions/{job_id}",
        )

    def run_job(
        self,
        user_id: str,
        preschool_id: str,
        storage_path: str,
        language: str | None = None,
        duration_ms: int | None = None,
        audio_format: str = "m4a",
        on_partial: Callable[[int, int, str], None] | None = None,
    ) -> TranscriptionResult:
        """Worker side of create_job: download, transcribe in chunks, record usage."""
        locale = map_azure_locale(language or DEFAULT_LOCALE)
        audio = self.load_audio(storage_path=storage_path)
        duration_ms = duration_ms or estimate_duration_ms(len(audio))

        start = time.monotonic()
        text = self.transcribe_chunked(
            audio,
            locale,
            on_partial=on_partial,
            duration_ms=duration_ms,
            audio_format=audio_format,
        )
        latency_ms = int((time.monotonic() - start) * 1000)

        minutes = math.ceil(duration_ms / 1000) / 60
        cost = minutes * WHISPER_COST_PER_MINUTE
        self.record_voice_usage(user_id, preschool_id, minutes, cost, locale)

        return TranscriptionResult(
            text=text,
            language=locale,
            provider=PROVIDER,
            duration_minutes=minutes,
            cost_usd=round(cost, 6),
            latency_ms=latency_ms,
        )
