# =============================================================================
# tests/test_transcription_service.py - Speech-to-Text Tests
# =============================================================================
# Whisper is replaced by a fake transcriber; Supabase and Celery are mocked.
#
# Run with: pytest tests/test_transcription_service.py -v
# =============================================================================

from unittest.mock import MagicMock, patch

import pytest

from app.exceptions import InvalidRequestError, TranscriptionError, VoiceQuotaExceededError
from core.services.transcription_service import (
    TranscriptionService,
    bucket_for_path,
    deduplicate_transcript,
    estimate_duration_ms,
    map_azure_locale,
    map_whisper_language,
    plan_chunks,
    slice_chunk,
)
from lib.supabase_client import SupabaseClientError

# Three chunks at 3000 ms: each window starts with a different byte
AUDIO = b"A" * 19200 + b"B" * 19200 + b"C" * 9600


class FakeTranscriber:
    """Returns canned text keyed on the first byte of each chunk."""

    def __init__(self, texts: dict[bytes, str], fail_on: bytes | None = None):
        self.texts = texts
        self.fail_on = fail_on
        self.languages: list[str] = []

    def transcribe(self, audio: bytes, language: str, filename: str = "audio.m4a") -> str:
        self.languages.append(language)
        key = audio[:1]
        if key == self.fail_on:
            raise TranscriptionError("Whisper STT error: 500")
        return self.texts.get(key, "")


@pytest.fixture
def supabase():
    with patch("core.services.transcription_service.SupabaseClient") as mock_supabase:
        mock_supabase.call_rpc.return_value = [{"allowed": True, "tier": "starter"}]
        yield mock_supabase


class TestLanguages:
    """Tests for locale mapping."""

    @pytest.mark.parametrize("hint,locale", [
        ("zu", "zu-ZA"),
        ("AF-za", "af-ZA"),
        ("xh", "xh-ZA"),
        ("nso", "en-ZA"),
        ("en-US", "en-US"),
        (None, "en-ZA"),
    ])
    def test_map_azure_locale(self, hint, locale):
        assert map_azure_locale(hint) == locale

    def test_map_whisper_language(self):
        assert map_whisper_language("zu-ZA") == "zu"
        assert map_whisper_language("nso-ZA") == "st"
        assert map_whisper_language("fr-FR") == "en"

    def test_bucket_for_path(self):
        assert bucket_for_path("homework-submissions/u1/a.m4a") == "homework-submissions"
        assert bucket_for_path("message-media/t1/a.m4a") == "message-media"
        assert bucket_for_path("u1/abc.m4a") == "voice-notes"


class TestChunking:
    """Tests for chunk planning, slicing and de-duplication."""

    def test_plan_chunks_overlap(self):
        """1500 ms windows stepping 1200 ms."""
        assert plan_chunks(48000, 3000) == [(0, 24000), (19200, 43200), (38400, 48000)]

    def test_short_recording_single_chunk(self):
        assert plan_chunks(10000, 1000) == [(0, 10000)]
        assert plan_chunks(0) == []

    def test_tiny_tail_folded(self):
        """A trailing chunk under 512 bytes joins the previous one."""
        assert plan_chunks(2800, 2800) == [(0, 1500), (1200, 2800)]

    def test_duration_estimated_from_size(self):
        """16 kB per second by default."""
        assert estimate_duration_ms(32000) == 2000

    def test_slice_wav_reuses_header(self):
        audio = b"RIFF" + b"\x00" * 40 + b"x" * 100

        chunk = slice_chunk(audio, 60, 100)

        assert chunk[:4] == b"RIFF"
        assert len(chunk) == 44 + 40

    def test_slice_non_wav(self):
        assert slice_chunk(b"0123456789", 2, 5) == b"234"

    def test_deduplicate_overlap_phrase(self):
        assert deduplicate_transcript(["the cat sat on", "sat on the mat"]) == "the cat sat on the mat"

    def test_deduplicate_repeated_word(self):
        """Case-insensitive; blank chunks are ignored."""
        assert deduplicate_transcript(["Hello world", "", "World again"]) == "Hello world again"


class TestVoiceLimit:
    """Tests for the voice quota check."""

    def test_allowed(self, supabase):
        result = TranscriptionService.check_voice_limit("u1", "school-1")

        assert result["tier"] == "starter"
        params = supabase.call_rpc.call_args[0][1]
        assert params["p_service"] == "stt"
        assert params["p_estimated_units"] == 0.5

    def test_denied(self, supabase):
        supabase.call_rpc.return_value = [
            {"allowed": False, "reason": "monthly_limit", "tier": "free", "quota_remaining": 0},
        ]

        with pytest.raises(VoiceQuotaExceededError) as exc_info:
            TranscriptionService.check_voice_limit("u1", "school-1")

        assert exc_info.value.status_code == 429
        assert exc_info.value.details["fallback_available"] is True
        assert exc_info.value.headers["X-Quota-Tier"] == "free"

    def test_fails_open(self, supabase):
        """An RPC error allows the request."""
        supabase.call_rpc.side_effect = SupabaseClientError("function does not exist")

        assert TranscriptionService.check_voice_limit("u1", "school-1") == {"allowed": True}


class TestLoadAudio:
    """Tests for resolving audio sources."""

    def test_upload_wins(self):
        assert TranscriptionService.load_audio(storage_path="x", upload=b"raw") == b"raw"

    def test_base64(self):
        assert TranscriptionService.load_audio(audio_base64="aGVsbG8=") == b"hello"

    def test_bad_base64(self):
        with pytest.raises(InvalidRequestError, match="not valid base64"):
            TranscriptionService.load_audio(audio_base64="%%%not-base64")

    def test_no_source(self):
        with pytest.raises(InvalidRequestError, match="No audio source"):
            TranscriptionService.load_audio()

    def test_storage_download(self, supabase):
        """The bucket is chosen from the path."""
        bucket = supabase.get_client.return_value.storage.from_.return_value
        bucket.download.return_value = b"stored"

        audio = TranscriptionService.load_audio(storage_path="homework-submissions/u1/a.m4a")

        assert audio == b"stored"
        supabase.get_client.return_value.storage.from_.assert_called_with("homework-submissions")

    def test_storage_failure(self, supabase):
        bucket = supabase.get_client.return_value.storage.from_.return_value
        bucket.download.side_effect = RuntimeError("404")

        with pytest.raises(TranscriptionError):
            TranscriptionService.load_audio(storage_path="u1/missing.m4a")


class TestTranscribe:
    """Tests for single-shot transcription."""

    def test_transcribe_records_usage(self, supabase, teacher):
        fake = MagicMock()
        fake.transcribe.return_value = "Sawubona"
        service = TranscriptionService(transcriber=fake)

        result = service.transcribe(teacher, b"audio", language="zu", duration_seconds=30)

        assert result.text == "Sawubona"
        assert result.language == "zu-ZA"
        assert result.duration_minutes == 0.5
        assert result.cost_usd == 0.003
        assert result.tier == "starter"
        fake.transcribe.assert_called_once_with(b"audio", "zu", "audio.m4a")
        record_call = supabase.call_rpc.call_args_list[-1]
        assert record_call[0][0] == "record_voice_usage"
        assert record_call[0][1]["p_provider"] == "openai-whisper"

    def test_requires_preschool(self, supabase, superadmin):
        service = TranscriptionService(transcriber=MagicMock())

        with pytest.raises(InvalidRequestError, match="No preschool_id"):
            service.transcribe(superadmin, b"audio")


class TestChunkedTranscription:
    """Tests for chunked transcription with partial callbacks."""

    TEXTS = {b"A": "good morning class", b"B": "class today we", b"C": "we learn shapes"}

    def test_stitches_chunks(self):
        fake = FakeTranscriber(self.TEXTS)
        partials = []
        service = TranscriptionService(transcriber=fake)

        text = service.transcribe_chunked(
            AUDIO,
            language="af",
            duration_ms=3000,
            on_partial=lambda index, total, running: partials.append((index, total, running)),
        )

        assert text == "good morning class today we learn shapes"
        assert partials == [(2, 3, "good morning class today we learn shapes")]
        assert set(fake.languages) == {"af"}

    def test_failed_chunk_skipped(self):
        """One failed chunk does not fail the whole recording."""
        service = TranscriptionService(transcriber=FakeTranscriber(self.TEXTS, fail_on=b"B"))

        text = service.transcribe_chunked(AUDIO, duration_ms=3000)

        assert text == "good morning class we learn shapes"

    def test_run_job(self, supabase):
        """The worker path downloads, transcribes and records rounded minutes."""
        service = TranscriptionService(transcriber=FakeTranscriber(self.TEXTS))

        with patch.object(TranscriptionService, "load_audio", return_value=AUDIO):
            result = service.run_job("u1", "school-1", "u1/a.m4a", language="en", duration_ms=3000)

        assert result.text == "good morning class today we learn shapes"
        assert result.duration_minutes == pytest.approx(0.05)
        assert supabase.call_rpc.call_args[0][0] == "record_voice_usage"


class TestCreateJob:
    """Tests for queueing background transcription."""

    def test_create_job(self, supabase, teacher):
        service = TranscriptionService()
        task = MagicMock(id="task-1")

        with patch.object(TranscriptionService, "upload_audio", return_value="u1/clip.m4a"), \
                patch("app.websocket.broadcast.register_job_owner") as register, \
                patch("workers.tasks.transcribe_audio") as transcribe_task:
            transcribe_task.delay.return_value = task
            job = service.create_job(teacher, b"x" * 64000, language="zu")

        assert job.task_id == "task-1"
        assert job.websocket_path == f"/ws/transcriptions/{job.job_id}"
        register.assert_called_once_with(job.job_id, str(teacher.id))
        kwargs = transcribe_task.delay.call_args[1]
        assert kwargs["duration_ms"] == 4000
        assert kwargs["storage_path"] == "u1/clip.m4a"
        # 4 seconds is under the minimum estimate
        assert supabase.call_rpc.call_args[0][1]["p_estimated_units"] == 0.5

    def test_unregistered_owner_still_queues(self, supabase, teacher):
        """A Redis failure on the owner key is logged but the job still runs."""
        service = TranscriptionService()

        with patch.object(TranscriptionService, "upload_audio", return_value="u1/clip.m4a"), \
                patch("app.websocket.broadcast.register_job_owner", return_value=False), \
                patch("workers.tasks.transcribe_audio") as transcribe_task, \
                patch("core.services.transcription_service.logger") as mock_logger:
            transcribe_task.delay.return_value = MagicMock(id="task-2")
            job = service.create_job(teacher, b"x" * 64000)

        assert job.task_id == "task-2"
        transcribe_task.delay.assert_called_once()
        mock_logger.warning.assert_called_once()
        assert job.job_id in mock_logger.warning.call_args[0][0]

    def test_quota_checked_before_upload(self, supabase, teacher):
        supabase.call_rpc.return_value = {"allowed": False, "reason": "limit", "tier": "free"}
        service = TranscriptionService()

        with patch.object(TranscriptionService, "upload_audio") as upload:
            with pytest.raises(VoiceQuotaExceededError):
                service.create_job(teacher, b"x" * 1000)

        upload.assert_not_called()
