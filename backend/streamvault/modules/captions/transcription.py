"""OpenAI speech-to-text client for caption generation.

Wraps the audio transcription and translation endpoints. ``verbose_json``
responses carry segment timestamps and, for transcriptions, the detected
language as an English name, which is mapped to an ISO 639-1 code here.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from openai import AsyncOpenAI, OpenAIError

from streamvault.core.config import Settings
from streamvault.modules.captions.audio import CaptionFailure

logger = logging.getLogger(__name__)

# Language names reported by whisper mapped to ISO 639-1 codes
LANGUAGE_CODES = {
    "afrikaans": "af",
    "arabic": "ar",
    "armenian": "hy",
    "azerbaijani": "az",
    "belarusian": "be",
    "bengali": "bn",
    "bosnian": "bs",
    "bulgarian": "bg",
    "catalan": "ca",
    "chinese": "zh",
    "croatian": "hr",
    "czech": "cs",
    "danish": "da",
    "dutch": "nl",
    "english": "en",
    "estonian": "et",
    "finnish": "fi",
    "french": "fr",
    "galician": "gl",
    "german": "de",
    "greek": "el",
    "hebrew": "he",
    "hindi": "hi",
    "hungarian": "hu",
    "icelandic": "is",
    "indonesian": "id",
    "italian": "it",
    "japanese": "ja",
    "kannada": "kn",
    "kazakh": "kk",
    "korean": "ko",
    "latvian": "lv",
    "lithuanian": "lt",
    "macedonian": "mk",
    "malay": "ms",
    "marathi": "mr",
    "maori": "mi",
    "nepali": "ne",
    "norwegian": "no",
    "persian": "fa",
    "polish": "pl",
    "portuguese": "pt",
    "romanian": "ro",
    "russian": "ru",
    "serbian": "sr",
    "slovak": "sk",
    "slovenian": "sl",
    "spanish": "es",
    "swahili": "sw",
    "swedish": "sv",
    "tagalog": "tl",
    "tamil": "ta",
    "thai": "th",
    "turkish": "tr",
    "ukrainian": "uk",
    "urdu": "ur",
    "vietnamese": "vi",
    "welsh": "cy",
}


class TranscriptionError(CaptionFailure):
    """Raised when the transcription service call fails."""


@dataclass
class TranscriptSegment:
    """A timed piece of transcript text, in seconds from the start of the media."""
    start: float
    end: float
    text: str


@dataclass
class Transcription:
    """Full transcript of one language."""
    language: str
    segments: list[TranscriptSegment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(s.text.strip() for s in self.segments if s.text.strip())


def normalize_language(reported: Optional[str]) -> str:
    """Map a reported language name or code to an ISO 639-1 code.

    Raises:
        TranscriptionError: If the language is missing or unknown
    """
    if not reported:
        raise TranscriptionError("Service reported no language")
    value = reported.strip().lower()
    if value in LANGUAGE_CODES:
        return LANGUAGE_CODES[value]
    if value in LANGUAGE_CODES.values():
        return value
    raise TranscriptionError(f"Unrecognized language: {reported}")


def _segments_from_response(response: Any, offset: float = 0.0) -> list[TranscriptSegment]:
    segments = getattr(response, "segments", None) or []
    return [
        TranscriptSegment(
            start=float(segment.start) + offset,
            end=float(segment.end) + offset,
            text=segment.text,
        )
        for segment in segments
    ]


class OpenAITranscriber:
    """Transcription service backed by the OpenAI audio API."""

    def __init__(self, client: AsyncOpenAI, model: str = "whisper-1"):
        self._client = client
        self.model = model

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAITranscriber":
        if not settings.OPENAI_API_KEY:
            raise TranscriptionError("OpenAI API key not configured")
        return cls(AsyncOpenAI(api_key=settings.OPENAI_API_KEY), settings.TRANSCRIPTION_MODEL)

    async def close(self) -> None:
        await self._client.close()

    async def detect_language(self, audio_path: str) -> str:
        """Detect the spoken language of an audio sample.

        Returns:
            ISO 639-1 language code

        Raises:
            TranscriptionError: If the call fails or the language is unknown
        """
        try:
            response = await self._client.audio.transcriptions.create(
                model=self.model,
                file=Path(audio_path),
                response_format="verbose_json",
            )
        except OpenAIError as e:
            raise TranscriptionError(f"Language detection failed: {e}") from e
        return normalize_language(getattr(response, "language", None))

    async def _transcribe_chunk(self, audio_path: str, language: str) -> Any:
        # The translations endpoint always produces English, whatever is spoken
        if language == "en":
            return await self._client.audio.translations.create(
                model=self.model,
                file=Path(audio_path),
                response_format="verbose_json",
            )
        return await self._client.audio.transcriptions.create(
            model=self.model,
            file=Path(audio_path),
            language=language,
            response_format="verbose_json",
            timestamp_granularities=["segment"],
        )

    async def transcribe(
        self,
        chunk_paths: list[str],
        language: str,
        chunk_seconds: float,
    ) -> Transcription:
        """Transcribe consecutive audio chunks into one timed transcript.

        Args:
            chunk_paths: Audio chunks in playback order
            language: ISO 639-1 code of the transcript to produce
            chunk_seconds: Duration of every chunk but the last

        Raises:
            TranscriptionError: If any chunk cannot be transcribed
        """
        segments: list[TranscriptSegment] = []
        for index, chunk_path in enumerate(chunk_paths):
            try:
                response = await self._transcribe_chunk(chunk_path, language)
            except OpenAIError as e:
                raise TranscriptionError(f"Transcription ({language}) failed: {e}") from e
            segments.extend(_segments_from_response(response, offset=index * chunk_seconds))

        logger.info(f"Transcribed {len(segments)} segment(s) in {language}")
        return Transcription(language=language, segments=segments)
