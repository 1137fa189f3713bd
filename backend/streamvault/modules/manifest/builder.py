"""Master playlist assembly.

Rendering is a pure function of the rendition and caption references. The
builder checks that every referenced object exists before the single upload,
so a published master playlist never points at a missing file.
"""

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Optional

from streamvault.core.storage import StorageService
from streamvault.modules.captions.generator import CaptionTrack
from streamvault.modules.media.models import Resolution
from streamvault.modules.transcoding.encoder import PLAYLIST_NAME

logger = logging.getLogger(__name__)

DEFAULT_BANDWIDTH_FACTOR = 0.07
MASTER_PLAYLIST_NAME = "master.m3u8"
SUBTITLE_GROUP = "subs"


class ManifestContractViolation(Exception):
    """Raised when the master playlist would reference a missing artifact."""


def estimate_bandwidth(width: int, height: int, factor: float = DEFAULT_BANDWIDTH_FACTOR) -> int:
    """Approximate bits per second of a rendition: floor(width * height * factor)."""
    return math.floor(width * height * factor)


@dataclass(frozen=True)
class RenditionRef:
    """A rendition that has been fully uploaded."""
    resolution: Resolution
    directory_key: str

    @property
    def playlist_key(self) -> str:
        return f"{self.directory_key.rstrip('/')}/{PLAYLIST_NAME}"

    def to_dict(self, bandwidth_factor: float = DEFAULT_BANDWIDTH_FACTOR) -> dict:
        return {
            "resolution": self.resolution.value,
            "width": self.resolution.width,
            "height": self.resolution.height,
            "bandwidth": estimate_bandwidth(
                self.resolution.width, self.resolution.height, bandwidth_factor
            ),
            "playlist_key": self.playlist_key,
        }


def _relative(key: str, key_prefix: str) -> str:
    prefix = key_prefix.rstrip("/") + "/"
    return key[len(prefix):] if key.startswith(prefix) else key


def _quote_attr(value: str) -> str:
    return value.replace('"', "'")


def default_caption_language(
    caption_tracks: Mapping[str, CaptionTrack], base_language: str
) -> Optional[str]:
    """The track marked DEFAULT: the base language, else the first listed."""
    if base_language in caption_tracks:
        return base_language
    return next(iter(caption_tracks), None)


def render_master_playlist(
    renditions: Sequence[RenditionRef],
    caption_tracks: Mapping[str, CaptionTrack],
    key_prefix: str,
    base_language: str = "en",
    bandwidth_factor: float = DEFAULT_BANDWIDTH_FACTOR,
) -> str:
    """Render the master playlist text.

    Variant entries follow the order of ``renditions``; paths are relative
    to ``key_prefix``, where the master playlist itself is stored.
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]

    default_language = default_caption_language(caption_tracks, base_language)
    for language, track in caption_tracks.items():
        flag = "YES" if language == default_language else "NO"
        lines.append(
            f'#EXT-X-MEDIA:TYPE=SUBTITLES,GROUP-ID="{SUBTITLE_GROUP}",'
            f'NAME="{_quote_attr(language)}",LANGUAGE="{_quote_attr(language)}",'
            f"DEFAULT={flag},AUTOSELECT={flag},"
            f'URI="{_relative(track.vtt_key, key_prefix)}"'
        )

    for rendition in renditions:
        resolution = rendition.resolution
        attributes = [
            f"BANDWIDTH={estimate_bandwidth(resolution.width, resolution.height, bandwidth_factor)}",
            f"RESOLUTION={resolution.dimensions}",
        ]
        if caption_tracks:
            attributes.append(f'SUBTITLES="{SUBTITLE_GROUP}"')
        lines.append("#EXT-X-STREAM-INF:" + ",".join(attributes))
        lines.append(_relative(rendition.playlist_key, key_prefix))

    return "\n".join(lines) + "\n"


class ManifestBuilder:
    """Uploads the master playlist for an asset's finished artifacts."""

    def __init__(
        self,
        storage: StorageService,
        base_language: str = "en",
        bandwidth_factor: float = DEFAULT_BANDWIDTH_FACTOR,
    ):
        self.storage = storage
        self.base_language = base_language
        self.bandwidth_factor = bandwidth_factor

    async def _verify_artifacts(
        self,
        renditions: Sequence[RenditionRef],
        caption_tracks: Mapping[str, CaptionTrack],
    ) -> None:
        keys = [r.playlist_key for r in renditions]
        for track in caption_tracks.values():
            keys.extend([track.vtt_key, track.srt_key])

        for key in keys:
            if not await self.storage.exists(key):
                raise ManifestContractViolation(f"Referenced artifact missing: {key}")

    async def build_master(
        self,
        renditions: Sequence[RenditionRef],
        caption_tracks: Mapping[str, CaptionTrack],
        key_prefix: str,
    ) -> str:
        """Write ``master.m3u8`` under ``key_prefix`` and return its key.

        Raises:
            ManifestContractViolation: If there are no renditions, a referenced
                artifact is missing, or the upload fails
        """
        if not renditions:
            raise ManifestContractViolation("No renditions to publish")
        await self._verify_artifacts(renditions, caption_tracks)

        content = render_master_playlist(
            renditions,
            caption_tracks,
            key_prefix,
            base_language=self.base_language,
            bandwidth_factor=self.bandwidth_factor,
        )
        manifest_key = f"{key_prefix.rstrip('/')}/{MASTER_PLAYLIST_NAME}"
        result = await self.storage.put(manifest_key, content.encode("utf-8"))
        if not result.success:
            raise ManifestContractViolation(f"Master playlist upload failed: {result.error_message}")

        logger.info(f"Master playlist written with {len(renditions)} variant(s)")
        return manifest_key
