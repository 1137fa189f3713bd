"""Tests for caption generation and the OpenAI transcription client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from openai import APIConnectionError

from conftest import InMemoryStorage
from streamvault.modules.captions.audio import AudioExtractionFailed
from streamvault.modules.captions.generator import CaptionGenerator, CaptionTrack
from streamvault.modules.captions.transcription import (
    OpenAITranscriber,
    Transcription,
    TranscriptionError,
    TranscriptSegment,
)

GENERATOR = "streamvault.modules.captions.generator"


class FakeTranscriber:
    def __init__(self, detected: str = "en", failing: frozenset = frozenset(), detect_error: bool = False):
        self.detected = detected
        self.failing = failing
        self.detect_error = detect_error
        self.requested: list[str] = []

    async def detect_language(self, audio_path: str) -> str:
        if self.detect_error:
            raise TranscriptionError("detection unavailable")
        return self.detected

    async def transcribe(self, chunk_paths, language, chunk_seconds) -> Transcription:
        self.requested.append(language)
        if language in self.failing:
            raise TranscriptionError(f"{language} unavailable")
        return Transcription(
            language=language,
            segments=[TranscriptSegment(0.0, 2.0, f"hello in {language}")],
        )


def audio_patches(extract_error: bool = False):
    extract = AsyncMock(return_value=["/tmp/audio_000.wav"])
    if extract_error:
        extract.side_effect = AudioExtractionFailed("no audio stream")
    return (
        patch(f"{GENERATOR}.extract_audio", extract),
        patch(f"{GENERATOR}.extract_sample", AsyncMock(return_value="/tmp/sample.wav")),
    )


async def generate(storage, transcriber, extract_error: bool = False) -> dict[str, CaptionTrack]:
    generator = CaptionGenerator(storage, transcriber, base_language="en")
    extract_patch, sample_patch = audio_patches(extract_error)
    with extract_patch, sample_patch:
        return await generator.generate("/tmp/source", "users/u1/a1/")


class TestCaptionGenerator:
    @pytest.mark.asyncio
    async def test_base_and_detected_language_tracks(self, storage: InMemoryStorage) -> None:
        transcriber = FakeTranscriber(detected="es")
        tracks = await generate(storage, transcriber)

        assert set(tracks) == {"en", "es"}
        assert tracks["es"] == CaptionTrack(
            vtt_key="users/u1/a1/captions/es.vtt",
            srt_key="users/u1/a1/captions/es.srt",
        )
        assert storage.objects["users/u1/a1/captions/en.vtt"].startswith(b"WEBVTT")
        assert b"hello in es" in storage.objects["users/u1/a1/captions/es.srt"]

    @pytest.mark.asyncio
    async def test_same_language_is_transcribed_once(self, storage: InMemoryStorage) -> None:
        transcriber = FakeTranscriber(detected="en")
        tracks = await generate(storage, transcriber)

        assert list(tracks) == ["en"]
        assert transcriber.requested == ["en"]

    @pytest.mark.asyncio
    async def test_failed_language_is_omitted(self, storage: InMemoryStorage) -> None:
        transcriber = FakeTranscriber(detected="fr", failing=frozenset({"fr"}))
        tracks = await generate(storage, transcriber)

        assert set(tracks) == {"en"}
        assert "users/u1/a1/captions/fr.vtt" not in storage.objects

    @pytest.mark.asyncio
    async def test_failed_upload_omits_language(self, storage: InMemoryStorage) -> None:
        storage.fail_keys.add("users/u1/a1/captions/de.srt")
        tracks = await generate(storage, FakeTranscriber(detected="de"))

        assert set(tracks) == {"en"}

    @pytest.mark.asyncio
    async def test_detection_failure_falls_back_to_base(self, storage: InMemoryStorage) -> None:
        transcriber = FakeTranscriber(detect_error=True)
        tracks = await generate(storage, transcriber)

        assert list(tracks) == ["en"]

    @pytest.mark.asyncio
    async def test_no_audio_means_no_captions(self, storage: InMemoryStorage) -> None:
        transcriber = FakeTranscriber(detected="es")
        tracks = await generate(storage, transcriber, extract_error=True)

        assert tracks == {}
        assert transcriber.requested == []
        assert storage.objects == {}

    @pytest.mark.asyncio
    async def test_no_transcriber_means_no_captions(self, storage: InMemoryStorage) -> None:
        generator = CaptionGenerator(storage, None)
        assert await generator.generate("/tmp/source", "users/u1/a1/") == {}


def verbose_response(language: str, segments: list[tuple[float, float, str]]) -> SimpleNamespace:
    return SimpleNamespace(
        language=language,
        segments=[SimpleNamespace(start=s, end=e, text=t) for s, e, t in segments],
    )


def mock_openai_client() -> MagicMock:
    client = MagicMock()
    client.audio.transcriptions.create = AsyncMock()
    client.audio.translations.create = AsyncMock()
    client.close = AsyncMock()
    return client


class TestOpenAITranscriber:
    @pytest.mark.asyncio
    async def test_detect_language_maps_name_to_code(self) -> None:
        client = mock_openai_client()
        client.audio.transcriptions.create.return_value = verbose_response("spanish", [])

        assert await OpenAITranscriber(client).detect_language("/tmp/sample.wav") == "es"
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["model"] == "whisper-1"
        assert kwargs["response_format"] == "verbose_json"

    @pytest.mark.asyncio
    async def test_chunk_segments_are_offset(self) -> None:
        client = mock_openai_client()
        client.audio.transcriptions.create.side_effect = [
            verbose_response("spanish", [(0.0, 4.0, "uno")]),
            verbose_response("spanish", [(1.0, 3.0, "dos")]),
        ]

        result = await OpenAITranscriber(client).transcribe(["/a0.wav", "/a1.wav"], "es", 600)

        assert [(s.start, s.end, s.text) for s in result.segments] == [
            (0.0, 4.0, "uno"),
            (601.0, 603.0, "dos"),
        ]
        assert client.audio.transcriptions.create.call_args.kwargs["language"] == "es"

    @pytest.mark.asyncio
    async def test_english_track_uses_translation(self) -> None:
        client = mock_openai_client()
        client.audio.translations.create.return_value = verbose_response("english", [(0.0, 1.0, "hi")])

        result = await OpenAITranscriber(client).transcribe(["/a0.wav"], "en", 600)

        assert result.text == "hi"
        client.audio.transcriptions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_api_errors_become_transcription_errors(self) -> None:
        client = mock_openai_client()
        client.audio.transcriptions.create.side_effect = APIConnectionError(request=MagicMock())

        with pytest.raises(TranscriptionError):
            await OpenAITranscriber(client).transcribe(["/a0.wav"], "fr", 600)
        with pytest.raises(TranscriptionError):
            await OpenAITranscriber(client).detect_language("/sample.wav")
