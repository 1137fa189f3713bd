"""Audio extraction with ffmpeg."""

import asyncio
import logging
import os

logger = logging.getLogger(__name__)


class CaptionFailure(Exception):
    """Base exception for caption generation errors."""


class AudioExtractionFailed(CaptionFailure):
    """Raised when no audio track can be extracted from the source."""


async def _run(cmd: list[str]) -> None:
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise AudioExtractionFailed(f"Cannot start ffmpeg: {e}") from e

    _, stderr = await process.communicate()
    if process.returncode != 0:
        tail = stderr.decode("utf-8", errors="ignore").strip()[-500:]
        raise AudioExtractionFailed(f"ffmpeg exited with {process.returncode}: {tail}")


def pcm_options() -> list[str]:
    """Mono 16 kHz signed 16-bit PCM, the input speech models expect."""
    return ["-vn", "-ac", "1", "-ar", "16000", "-c:a", "pcm_s16le"]


async def extract_audio(
    source_path: str,
    output_dir: str,
    chunk_seconds: int,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Extract the whole audio track as consecutive WAV chunks.

    Every chunk but the last is exactly ``chunk_seconds`` long, so chunk ``n``
    starts at ``n * chunk_seconds`` in the source.

    Returns:
        Chunk file paths in playback order

    Raises:
        AudioExtractionFailed: If ffmpeg fails or writes nothing
    """
    pattern = os.path.join(output_dir, "audio_%03d.wav")
    await _run([
        ffmpeg_path,
        "-y",
        "-i", source_path,
        *pcm_options(),
        "-f", "segment",
        "-segment_time", str(chunk_seconds),
        pattern,
    ])

    chunks = sorted(
        os.path.join(output_dir, name)
        for name in os.listdir(output_dir)
        if name.startswith("audio_") and name.endswith(".wav")
    )
    if not chunks:
        raise AudioExtractionFailed("ffmpeg produced no audio")
    logger.info(f"Extracted {len(chunks)} audio chunk(s)")
    return chunks


async def extract_sample(
    source_path: str,
    output_path: str,
    seconds: int,
    ffmpeg_path: str = "ffmpeg",
) -> str:
    """Extract the first ``seconds`` of audio for language detection."""
    await _run([
        ffmpeg_path,
        "-y",
        "-i", source_path,
        "-t", str(seconds),
        *pcm_options(),
        output_path,
    ])
    return output_path
