"""Caption generation: audio extraction, language detection, transcription.

Every step can fail on its own without failing the asset. Without audio the
caption set is empty; a failed detection falls back to the base language;
a language whose transcript or upload fails is left out.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Optional, Protocol

from streamvault.core.metrics import CAPTION_TRACKS_TOTAL
from streamvault.core.storage import StorageService
from streamvault.modules.captions.audio import (
    AudioExtractionFailed,
    CaptionFailure,
    extract_audio,
    extract_sample,
)
from streamvault.modules.captions.formats import to_srt, to_vtt
from streamvault.modules.captions.transcription import Transcription

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    async def detect_language(self, audio_path: str) -> str: ...

    async def transcribe(
        self, chunk_paths: list[str], language: str, chunk_seconds: float
    ) -> Transcription: ...


@dataclass(frozen=True)
class CaptionTrack:
    """Storage keys of one language's subtitle files."""
    vtt_key: str
    srt_key: str

    def to_dict(self) -> dict[str, str]:
        return {"vtt_key": self.vtt_key, "srt_key": self.srt_key}


def caption_keys(key_prefix: str, language: str) -> CaptionTrack:
    base = f"{key_prefix.rstrip('/')}/captions/{language}"
    return CaptionTrack(vtt_key=f"{base}.vtt", srt_key=f"{base}.srt")


class CaptionGenerator:
    """Builds WebVTT and SRT tracks for the base language and the spoken one."""

    def __init__(
        self,
        storage: StorageService,
        transcriber: Optional[Transcriber],
        base_language: str = "en",
        sample_seconds: int = 30,
        chunk_seconds: int = 600,
        ffmpeg_path: str = "ffmpeg",
        scratch_dir: Optional[str] = None,
    ):
        self.storage = storage
        self.transcriber = transcriber
        self.base_language = base_language
        self.sample_seconds = sample_seconds
        self.chunk_seconds = chunk_seconds
        self.ffmpeg_path = ffmpeg_path
        self.scratch_dir = scratch_dir

    async def _detect_language(self, source_path: str, work_dir: str) -> str:
        try:
            sample = await extract_sample(
                source_path,
                os.path.join(work_dir, "sample.wav"),
                self.sample_seconds,
                self.ffmpeg_path,
            )
            return await self.transcriber.detect_language(sample)
        except CaptionFailure as e:
            logger.warning(f"Language detection failed, using {self.base_language}: {e}")
            return self.base_language

    async def _build_track(self, chunks: list[str], language: str, key_prefix: str) -> CaptionTrack:
        transcription = await self.transcriber.transcribe(chunks, language, self.chunk_seconds)
        track = caption_keys(key_prefix, language)

        for key, body in (
            (track.vtt_key, to_vtt(transcription.segments)),
            (track.srt_key, to_srt(transcription.segments)),
        ):
            result = await self.storage.put(key, body.encode("utf-8"))
            if not result.success:
                raise CaptionFailure(f"Upload of {language} captions failed: {result.error_message}")
        return track

    async def generate(self, local_path: str, key_prefix: str) -> dict[str, CaptionTrack]:
        """Generate caption tracks for a local source file.

        Returns:
            Map of ISO 639-1 language code to its uploaded track; empty when
            the source has no extractable audio or no transcriber is configured
        """
        if self.transcriber is None:
            return {}

        with tempfile.TemporaryDirectory(prefix="captions-", dir=self.scratch_dir) as work_dir:
            try:
                chunks = await extract_audio(local_path, work_dir, self.chunk_seconds, self.ffmpeg_path)
            except AudioExtractionFailed as e:
                logger.warning(f"No captions, audio extraction failed: {e}")
                return {}

            detected = await self._detect_language(local_path, work_dir)
            languages = [self.base_language]
            if detected != self.base_language:
                languages.append(detected)

            tracks: dict[str, CaptionTrack] = {}
            for language in languages:
                try:
                    tracks[language] = await self._build_track(chunks, language, key_prefix)
                except CaptionFailure as e:
                    logger.warning(f"Omitting {language} captions: {e}")
                    CAPTION_TRACKS_TOTAL.labels(language=language, outcome="failed").inc()
                    continue
                CAPTION_TRACKS_TOTAL.labels(language=language, outcome="created").inc()

        logger.info(f"Caption tracks: {sorted(tracks)}")
        return tracks
