"""Streaming gateway: access-controlled HLS playback.

Clients never see a storage key or an unsigned URL. Playlists are fetched
through a short-lived signed URL and rewritten so every nested reference
points back at the gateway, which re-authorizes each request; segments are
answered with a redirect to a freshly signed URL. Subtitle files named in
``#EXT-X-MEDIA`` tags are signed directly.
"""

import logging
import posixpath
import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Optional, Protocol, Union
from urllib.parse import quote, unquote, urlparse

import httpx

from streamvault.core.metrics import GATEWAY_REQUESTS_TOTAL
from streamvault.core.storage import StorageError, StorageService
from streamvault.modules.pipeline.state import AssetStatus
from streamvault.modules.video.models import Asset

logger = logging.getLogger(__name__)

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
PLAYLIST_EXTENSIONS = frozenset({".m3u8"})
SEGMENT_EXTENSIONS = frozenset({".ts", ".aac", ".mp4"})

_URI_ATTRIBUTE = re.compile(r'URI="([^"]*)"')


class GatewayError(Exception):
    """Base exception for playback errors. Messages are safe to show clients."""


class AccessDenied(GatewayError):
    """Raised when the asset is not playable by the requesting user."""

    def __init__(self):
        super().__init__("Video not available")


class UnsupportedResource(GatewayError):
    """Raised for a path whose extension the gateway does not serve."""

    def __init__(self):
        super().__init__("Unsupported resource type")


class ManifestUnavailable(GatewayError):
    """Raised when a playlist cannot be fetched from storage."""

    def __init__(self):
        super().__init__("Playlist temporarily unavailable")


@dataclass(frozen=True)
class PlaylistContent:
    """A rewritten playlist returned inline."""
    content: str
    content_type: str = PLAYLIST_CONTENT_TYPE


@dataclass(frozen=True)
class SegmentRedirect:
    """A redirect to a signed media URL."""
    url: str


StreamResponse = Union[PlaylistContent, SegmentRedirect]


class AssetLookup(Protocol):
    async def get_by_id(self, asset_id: uuid.UUID) -> Optional[Asset]: ...


def _is_url(reference: str) -> bool:
    return bool(urlparse(reference).scheme)


def resolve_reference(base_dir: str, reference: str) -> str:
    """Resolve a playlist reference to an absolute storage key.

    Relative references resolve against ``base_dir``, the playlist's own
    directory; a leading slash means the key is already absolute.
    """
    reference = reference.strip()
    if reference.startswith("/"):
        return posixpath.normpath(reference.lstrip("/"))
    return posixpath.normpath(posixpath.join(base_dir, reference))


def proxy_url(gateway_base: str, asset_id: uuid.UUID, storage_key: str) -> str:
    """Gateway URL serving ``storage_key``; slashes in the key stay literal."""
    return f"{gateway_base.rstrip('/')}/videos/{asset_id}/stream?path={quote(storage_key, safe='/')}"


def _is_subtitle_media(line: str) -> bool:
    return line.startswith("#EXT-X-MEDIA:") and "TYPE=SUBTITLES" in line


def subtitle_references(content: str, base_dir: str) -> list[str]:
    """Absolute keys of every subtitle file declared in a playlist."""
    keys = []
    for line in content.splitlines():
        line = line.strip()
        if _is_subtitle_media(line):
            match = _URI_ATTRIBUTE.search(line)
            if match and not _is_url(match.group(1)):
                keys.append(resolve_reference(base_dir, match.group(1)))
    return keys


def rewrite_playlist(
    content: str,
    base_dir: str,
    to_proxy: Callable[[str], str],
    signed_subtitles: Mapping[str, str],
) -> str:
    """Rewrite every reference in a playlist.

    Args:
        content: Playlist text as stored
        base_dir: Storage directory of the playlist, with trailing slash
        to_proxy: Maps an absolute storage key to its gateway URL
        signed_subtitles: Absolute subtitle key to its signed URL

    Returns:
        Playlist text in which URI lines point at the gateway and subtitle
        declarations point at signed URLs. Comments and blank lines are kept.
    """
    def replace_attribute(line: str, sign: bool) -> str:
        def substitute(match: re.Match) -> str:
            reference = match.group(1)
            if _is_url(reference):
                return match.group(0)
            key = resolve_reference(base_dir, reference)
            if sign:
                return f'URI="{signed_subtitles[key]}"'
            return f'URI="{to_proxy(key)}"'
        return _URI_ATTRIBUTE.sub(substitute, line)

    lines = []
    for raw in content.splitlines():
        line = raw.strip()
        if not line:
            lines.append(raw)
        elif line.startswith("#"):
            if _is_subtitle_media(line):
                lines.append(replace_attribute(line, sign=True))
            elif 'URI="' in line:
                lines.append(replace_attribute(line, sign=False))
            else:
                lines.append(raw)
        elif _is_url(line):
            lines.append(raw)
        else:
            lines.append(to_proxy(resolve_reference(base_dir, line)))
    return "\n".join(lines) + "\n"


class StreamingGateway:
    """Serves an asset's playlists and segments to its owner."""

    def __init__(
        self,
        assets: AssetLookup,
        storage: StorageService,
        http_client: httpx.AsyncClient,
        gateway_base_url: str,
        signed_url_ttl: int = 300,
    ):
        self.assets = assets
        self.storage = storage
        self.http_client = http_client
        self.gateway_base_url = gateway_base_url
        self.signed_url_ttl = signed_url_ttl

    async def _authorize(self, user_id: str, asset_id: uuid.UUID) -> Asset:
        asset = await self.assets.get_by_id(asset_id)
        if asset is None or asset.user_id != user_id:
            raise AccessDenied()
        if asset.status != AssetStatus.READY.value or not asset.master_manifest_key:
            raise AccessDenied()
        return asset

    @staticmethod
    def _confine(asset: Asset, requested_path: str) -> str:
        """Normalize a requested path and keep it inside the asset's prefix."""
        path = unquote(requested_path).strip()
        if not path or path.startswith("/") or "\\" in path:
            raise AccessDenied()
        normalized = posixpath.normpath(path)
        if not normalized.startswith(asset.output_prefix) or ".." in normalized.split("/"):
            raise AccessDenied()
        return normalized

    async def _fetch_playlist(self, key: str) -> str:
        url = await self.storage.signed_url(key, self.signed_url_ttl)
        if urlparse(url).scheme == "file":
            # Local development storage cannot be fetched over HTTP
            try:
                return (await self.storage.get(key)).decode("utf-8")
            except StorageError as e:
                raise ManifestUnavailable() from e

        try:
            response = await self.http_client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Playlist fetch failed: {type(e).__name__}")
            raise ManifestUnavailable() from e
        return response.text

    async def _serve_playlist(self, asset: Asset, key: str) -> PlaylistContent:
        content = await self._fetch_playlist(key)
        base_dir = posixpath.dirname(key) + "/"

        signed = {}
        for subtitle_key in subtitle_references(content, base_dir):
            signed[subtitle_key] = await self.storage.signed_url(subtitle_key, self.signed_url_ttl)

        rewritten = rewrite_playlist(
            content,
            base_dir,
            lambda target: proxy_url(self.gateway_base_url, asset.id, target),
            signed,
        )
        return PlaylistContent(content=rewritten)

    async def stream(
        self,
        user_id: str,
        asset_id: uuid.UUID,
        requested_path: Optional[str] = None,
    ) -> StreamResponse:
        """Answer one playback request.

        Args:
            user_id: Authenticated requester
            asset_id: Asset being played
            requested_path: Absolute storage path inside the asset; the master
                playlist when omitted

        Raises:
            AccessDenied: If the asset is missing, not the user's, not ready,
                or the path is outside the asset
            UnsupportedResource: If the path is neither playlist nor segment
            ManifestUnavailable: If a playlist cannot be fetched
        """
        kind = "unknown"
        try:
            asset = await self._authorize(user_id, asset_id)
            key = asset.master_manifest_key if requested_path is None else self._confine(asset, requested_path)

            extension = posixpath.splitext(key)[1].lower()
            if extension in PLAYLIST_EXTENSIONS:
                kind = "playlist"
                response: StreamResponse = await self._serve_playlist(asset, key)
            elif extension in SEGMENT_EXTENSIONS:
                kind = "segment"
                response = SegmentRedirect(url=await self.storage.signed_url(key, self.signed_url_ttl))
            else:
                raise UnsupportedResource()
        except GatewayError as e:
            GATEWAY_REQUESTS_TOTAL.labels(kind=kind, outcome=type(e).__name__).inc()
            raise

        GATEWAY_REQUESTS_TOTAL.labels(kind=kind, outcome="ok").inc()
        return response
