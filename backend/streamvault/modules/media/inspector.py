"""Media probing with ffprobe."""

import asyncio
import json
import logging

logger = logging.getLogger(__name__)


class UnreadableMedia(Exception):
    """Raised when a file has no decodable video stream."""


class MissingDimensions(Exception):
    """Raised when the video stream does not report its dimensions."""


class MediaInspector:
    """Reads the native resolution of a local media file."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    async def get_video_info(self, input_path: str) -> dict:
        """Run ffprobe and return its parsed JSON report.

        Raises:
            UnreadableMedia: If ffprobe cannot read the file
        """
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise UnreadableMedia(f"Cannot run ffprobe: {e}") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise UnreadableMedia(
                f"ffprobe exited with {process.returncode}: "
                f"{stderr.decode('utf-8', errors='ignore').strip()[:500]}"
            )

        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise UnreadableMedia(f"Unparseable ffprobe output: {e}") from e

    async def probe(self, local_path: str) -> tuple[int, int]:
        """Return ``(width, height)`` of the first video stream.

        Raises:
            UnreadableMedia: If there is no decodable video stream
            MissingDimensions: If the stream has no usable width/height
        """
        info = await self.get_video_info(local_path)
        return parse_dimensions(info)


def parse_dimensions(info: dict) -> tuple[int, int]:
    """Extract the first video stream's dimensions from an ffprobe report."""
    video = next(
        (s for s in info.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video is None:
        raise UnreadableMedia("No video stream found")

    width = video.get("width")
    height = video.get("height")
    if not width or not height:
        raise MissingDimensions("Video stream has no width/height")

    logger.info(f"Source resolution {width}x{height}")
    return int(width), int(height)
