"""Resolution ladder for adaptive-bitrate renditions."""

from collections.abc import Iterable
from enum import Enum


class Resolution(str, Enum):
    """Supported rendition resolutions.

    The value doubles as the rendition's directory name in storage.
    """
    RES_4K = "2160p"
    RES_1440P = "1440p"
    RES_1080P = "1080p"
    RES_720P = "720p"
    RES_480P = "480p"
    RES_360P = "360p"
    RES_240P = "240p"
    RES_144P = "144p"

    @property
    def width(self) -> int:
        return RESOLUTION_DIMENSIONS[self][0]

    @property
    def height(self) -> int:
        return RESOLUTION_DIMENSIONS[self][1]

    @property
    def dimensions(self) -> str:
        """``<width>x<height>`` as used in manifests and ffmpeg scale filters."""
        width, height = RESOLUTION_DIMENSIONS[self]
        return f"{width}x{height}"


# Resolution dimensions mapping
RESOLUTION_DIMENSIONS = {
    Resolution.RES_4K: (3840, 2160),
    Resolution.RES_1440P: (2560, 1440),
    Resolution.RES_1080P: (1920, 1080),
    Resolution.RES_720P: (1280, 720),
    Resolution.RES_480P: (854, 480),
    Resolution.RES_360P: (640, 360),
    Resolution.RES_240P: (426, 240),
    Resolution.RES_144P: (256, 144),
}

# Highest first; renditions and manifest entries keep this order
DEFAULT_LADDER: tuple[Resolution, ...] = tuple(Resolution)


def filter_ladder(
    source_width: int,
    source_height: int,
    ladder: Iterable[Resolution] = DEFAULT_LADDER,
) -> list[Resolution]:
    """Drop every rung that would upscale the source.

    A rung survives only if both its width and its height are at most the
    source's. Ladder order is preserved.
    """
    return [
        resolution
        for resolution in ladder
        if resolution.width <= source_width and resolution.height <= source_height
    ]
