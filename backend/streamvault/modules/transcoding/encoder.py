"""FFmpeg HLS rendition encoder.

Each call runs one ffmpeg subprocess that scales the source to a single
ladder rung and segments it as an HLS VOD playlist, then uploads the
playlist and every segment under the rendition's key prefix.
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from streamvault.core.storage import StorageService
from streamvault.modules.media.models import Resolution

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "seg_%d.ts"


class EncodeFailure(Exception):
    """Raised when a single rendition cannot be produced."""

    def __init__(self, resolution: Resolution, cause: str):
        self.resolution = resolution
        self.cause = cause
        super().__init__(f"Encoding {resolution.value} failed: {cause}")


@dataclass
class EncodingProfile:
    """Encoder settings shared by every rendition of a run."""
    preset: str = "veryfast"
    segment_seconds: int = 6
    crf: int = 23
    audio_bitrate: int = 128000  # 128 kbps


def rendition_prefix(key_prefix: str, resolution: Resolution) -> str:
    """Storage directory of one rendition, with a trailing slash."""
    return f"{key_prefix.rstrip('/')}/{resolution.value}/"


class RenditionEncoder:
    """Produces one HLS rendition per ``encode`` call."""

    def __init__(
        self,
        storage: StorageService,
        profile: Optional[EncodingProfile] = None,
        ffmpeg_path: str = "ffmpeg",
        scratch_dir: Optional[str] = None,
    ):
        self.storage = storage
        self.profile = profile or EncodingProfile()
        self.ffmpeg_path = ffmpeg_path
        self.scratch_dir = scratch_dir

    def build_command(self, input_path: str, output_dir: str, resolution: Resolution) -> list[str]:
        """Build the ffmpeg command for one rendition.

        Args:
            input_path: Local source file
            output_dir: Directory receiving the playlist and segments
            resolution: Target ladder rung

        Returns:
            FFmpeg command as list of arguments
        """
        profile = self.profile
        return [
            self.ffmpeg_path,
            "-y",
            "-i", input_path,
            # Video settings
            "-c:v", "libx264",
            "-preset", profile.preset,
            "-crf", str(profile.crf),
            "-vf", f"scale={resolution.width}:{resolution.height}",
            # Audio settings
            "-c:a", "aac",
            "-b:a", str(profile.audio_bitrate),
            "-ac", "2",
            # Output format
            "-f", "hls",
            "-hls_time", str(profile.segment_seconds),
            "-hls_playlist_type", "vod",
            "-hls_list_size", "0",
            "-hls_segment_filename", os.path.join(output_dir, SEGMENT_PATTERN),
            os.path.join(output_dir, PLAYLIST_NAME),
        ]

    async def _run_ffmpeg(self, cmd: list[str], resolution: Resolution) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodeFailure(resolution, f"cannot start ffmpeg: {e}") from e

        _, stderr = await process.communicate()
        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="ignore").strip()[-500:]
            raise EncodeFailure(resolution, f"ffmpeg exited with {process.returncode}: {tail}")

    async def _upload_directory(self, output_dir: str, prefix: str, resolution: Resolution) -> None:
        names = sorted(os.listdir(output_dir))
        if PLAYLIST_NAME not in names:
            raise EncodeFailure(resolution, "ffmpeg produced no playlist")

        # Segments first so the playlist never references a missing object
        names.remove(PLAYLIST_NAME)
        names.append(PLAYLIST_NAME)
        for name in names:
            result = await self.storage.upload_file(os.path.join(output_dir, name), prefix + name)
            if not result.success:
                raise EncodeFailure(resolution, f"upload of {name} failed: {result.error_message}")

    async def encode(self, local_path: str, resolution: Resolution, key_prefix: str) -> str:
        """Encode ``local_path`` at ``resolution`` and upload the rendition.

        Returns:
            Storage prefix of the rendition directory

        Raises:
            EncodeFailure: If ffmpeg fails or any file cannot be uploaded
        """
        prefix = rendition_prefix(key_prefix, resolution)
        logger.info(f"Encoding {resolution.value} into {prefix}")

        with tempfile.TemporaryDirectory(prefix=f"{resolution.value}-", dir=self.scratch_dir) as output_dir:
            await self._run_ffmpeg(self.build_command(local_path, output_dir, resolution), resolution)
            await self._upload_directory(output_dir, prefix, resolution)

        logger.info(f"Rendition {resolution.value} uploaded")
        return prefix
