"""Property-based tests for the pipeline orchestrator.

Collaborators are in-memory doubles; the manifest builder is the real one so
the ordering between artifact uploads and the master playlist is exercised.
"""

import asyncio
import uuid
from collections import Counter
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings, strategies as st

from conftest import InMemoryStorage
from streamvault.core.retry import RetryConfig
from streamvault.core.storage import StorageError
from streamvault.modules.captions.generator import CaptionGenerator, CaptionTrack, caption_keys
from streamvault.modules.captions.transcription import (
    Transcription,
    TranscriptionError,
    TranscriptSegment,
)
from streamvault.modules.manifest.builder import ManifestBuilder
from streamvault.modules.media.inspector import MissingDimensions, UnreadableMedia
from streamvault.modules.media.models import Resolution
from streamvault.modules.pipeline.orchestrator import (
    NoRenditionsProduced,
    PipelineOrchestrator,
    encode_batch_size,
)
from streamvault.modules.pipeline.state import AssetStatus, InvalidTransition, transition
from streamvault.modules.transcoding.encoder import EncodeFailure, rendition_prefix
from streamvault.modules.video.models import Asset
from streamvault.modules.video.repository import AssetNotFoundError, PersistenceFailure

SOURCE_KEY = "uploads/u1/video-1"


class FakeStore:
    """Relational store double applying the real transition rules."""

    def __init__(self, asset: Optional[Asset], write_failures: Optional[dict[AssetStatus, int]] = None):
        self.asset = asset
        self.write_failures = dict(write_failures or {})
        self.writes: list[tuple[AssetStatus, dict]] = []

    async def get_by_storage_key(self, storage_key: str) -> Asset:
        if self.asset is None or self.asset.storage_key != storage_key:
            raise AssetNotFoundError(storage_key)
        return self.asset

    async def update_status(self, storage_key: str, status: AssetStatus, **fields) -> None:
        if self.write_failures.get(status, 0) > 0:
            self.write_failures[status] -= 1
            raise PersistenceFailure("database unavailable")
        self.asset.status = transition(AssetStatus(self.asset.status), status).value
        for name, value in fields.items():
            setattr(self.asset, name, value)
        self.writes.append((status, fields))


class FakeGate:
    def __init__(self):
        self.released: Counter = Counter()

    async def release(self, user_id: str, resource_key: str) -> bool:
        self.released[(user_id, resource_key)] += 1
        return True


class FakeEncoder:
    """Uploads a playlist per rendition; tracks how many encodes overlap."""

    def __init__(self, storage: InMemoryStorage, failing: frozenset = frozenset()):
        self.storage = storage
        self.failing = failing
        self.in_flight = 0
        self.max_in_flight = 0
        self.encoded: list[Resolution] = []

    async def encode(self, local_path: str, resolution: Resolution, key_prefix: str) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if resolution in self.failing:
                raise EncodeFailure(resolution, "ffmpeg exited with 1")
            prefix = rendition_prefix(key_prefix, resolution)
            await self.storage.put(prefix + "seg_0.ts", b"\x47")
            await self.storage.put(prefix + "index.m3u8", b"#EXTM3U\nseg_0.ts\n")
            self.encoded.append(resolution)
            return prefix
        finally:
            self.in_flight -= 1


class FakeCaptions:
    def __init__(self, storage: InMemoryStorage, languages: tuple = ("en",)):
        self.storage = storage
        self.languages = languages

    async def generate(self, local_path: str, key_prefix: str) -> dict[str, CaptionTrack]:
        tracks = {}
        for language in self.languages:
            track = caption_keys(key_prefix, language)
            await self.storage.put(track.vtt_key, b"WEBVTT\n")
            await self.storage.put(track.srt_key, b"")
            tracks[language] = track
        return tracks


class FailingTranscriber:
    """Detects Spanish; the Spanish transcription call fails."""

    async def detect_language(self, audio_path: str) -> str:
        return "es"

    async def transcribe(self, chunk_paths, language, chunk_seconds) -> Transcription:
        if language == "es":
            raise TranscriptionError("es unavailable")
        return Transcription(language, [TranscriptSegment(0.0, 1.0, "hello")])


def make_asset() -> Asset:
    return Asset(
        id=uuid.uuid4(),
        user_id="u1",
        storage_key=SOURCE_KEY,
        mime_type="video/mp4",
        status=AssetStatus.INGESTED.value,
        renditions=[],
    )


def make_orchestrator(
    asset: Optional[Asset] = None,
    source_size: tuple = (1920, 1080),
    probe_error: Optional[Exception] = None,
    failing: frozenset = frozenset(),
    write_failures: Optional[dict] = None,
    cpu_count: int = 8,
    captions=None,
    with_source: bool = True,
):
    storage = InMemoryStorage({SOURCE_KEY: b"source-bytes"} if with_source else {})
    store = FakeStore(asset if asset is not None else make_asset(), write_failures)
    gate = FakeGate()
    inspector = AsyncMock()
    if probe_error is not None:
        inspector.probe.side_effect = probe_error
    else:
        inspector.probe.return_value = source_size
    encoder = FakeEncoder(storage, failing)
    orchestrator = PipelineOrchestrator(
        store=store,
        storage=storage,
        gate=gate,
        inspector=inspector,
        encoder=encoder,
        captions=captions(storage) if captions else FakeCaptions(storage),
        manifest_builder=ManifestBuilder(storage),
        retry_config=RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0),
        concurrency_cap=4,
        cpu_count=cpu_count,
    )
    return orchestrator, store, gate, encoder, storage


class TestBatchSize:
    @given(
        pending=st.integers(min_value=1, max_value=20),
        cap=st.integers(min_value=1, max_value=8),
        cpus=st.integers(min_value=1, max_value=64),
    )
    @settings(max_examples=100)
    def test_batch_size_is_min_of_cpus_pending_and_cap(self, pending: int, cap: int, cpus: int) -> None:
        assert encode_batch_size(pending, cap, cpus) == min(cpus, pending, cap)


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_run_reaches_ready_with_ordered_references(self) -> None:
        orchestrator, store, gate, encoder, storage = make_orchestrator(source_size=(1920, 1080))

        result = await orchestrator.run(SOURCE_KEY)

        asset = store.asset
        assert asset.status == AssetStatus.READY.value
        assert [w[0] for w in store.writes] == [AssetStatus.PROCESSING, AssetStatus.READY]
        assert [r["resolution"] for r in asset.renditions] == ["1080p", "720p", "480p", "360p", "240p", "144p"]
        assert asset.master_manifest_key == f"{asset.output_prefix}master.m3u8"
        assert asset.captions == {"en": caption_keys(asset.output_prefix, "en").to_dict()}
        assert result.failed_resolutions == []
        assert gate.released == Counter({("u1", SOURCE_KEY): 1})

    @pytest.mark.asyncio
    async def test_master_playlist_is_the_last_upload(self) -> None:
        orchestrator, store, _, _, storage = make_orchestrator(source_size=(1280, 720))

        await orchestrator.run(SOURCE_KEY)

        assert storage.uploads[-1] == store.asset.master_manifest_key

    @given(
        cpus=st.integers(min_value=1, max_value=16),
        width=st.sampled_from([3840, 2560, 1920, 1280, 854, 640]),
    )
    @settings(max_examples=30, deadline=None)
    def test_encode_concurrency_is_bounded(self, cpus: int, width: int) -> None:
        height = {3840: 2160, 2560: 1440, 1920: 1080, 1280: 720, 854: 480, 640: 360}[width]
        orchestrator, _, _, encoder, _ = make_orchestrator(source_size=(width, height), cpu_count=cpus)

        result = asyncio.run(orchestrator.run(SOURCE_KEY))

        assert encoder.max_in_flight <= min(cpus, 4)
        assert len(result.renditions) == len(encoder.encoded)

    @pytest.mark.asyncio
    async def test_partial_encode_failure_still_ready(self) -> None:
        orchestrator, store, gate, _, _ = make_orchestrator(
            source_size=(1280, 720),
            failing=frozenset({Resolution.RES_480P}),
        )

        result = await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.READY.value
        assert Resolution.RES_480P in result.failed_resolutions
        assert "480p" not in [r["resolution"] for r in store.asset.renditions]
        assert sum(gate.released.values()) == 1

    @pytest.mark.asyncio
    async def test_failed_caption_language_is_omitted_and_run_is_ready(self) -> None:
        def captions(storage):
            return CaptionGenerator(storage, FailingTranscriber(), base_language="en")

        orchestrator, store, _, _, _ = make_orchestrator(source_size=(640, 360), captions=captions)
        with patch(
            "streamvault.modules.captions.generator.extract_audio",
            AsyncMock(return_value=["/tmp/audio_000.wav"]),
        ), patch(
            "streamvault.modules.captions.generator.extract_sample",
            AsyncMock(return_value="/tmp/sample.wav"),
        ):
            await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.READY.value
        assert set(store.asset.captions) == {"en"}

    @pytest.mark.asyncio
    async def test_transient_persistence_failures_are_retried(self) -> None:
        orchestrator, store, gate, _, _ = make_orchestrator(
            source_size=(640, 360),
            write_failures={AssetStatus.READY: 2},
        )

        await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.READY.value
        assert sum(gate.released.values()) == 1


class TestFailedRun:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [UnreadableMedia("no video"), MissingDimensions("no size")])
    async def test_probe_failure_records_failed(self, error: Exception) -> None:
        orchestrator, store, gate, encoder, _ = make_orchestrator(probe_error=error)

        with pytest.raises(type(error)):
            await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.FAILED.value
        assert store.asset.error_message.startswith(type(error).__name__)
        assert encoder.encoded == []
        assert gate.released == Counter({("u1", SOURCE_KEY): 1})

    @pytest.mark.asyncio
    async def test_all_encodes_failing_is_fatal(self) -> None:
        orchestrator, store, gate, _, storage = make_orchestrator(
            source_size=(640, 360),
            failing=frozenset(Resolution),
        )

        with pytest.raises(NoRenditionsProduced):
            await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.FAILED.value
        assert not any(key.endswith("master.m3u8") for key in storage.objects)
        assert sum(gate.released.values()) == 1

    @pytest.mark.asyncio
    async def test_source_below_every_rung_is_fatal(self) -> None:
        orchestrator, store, _, _, _ = make_orchestrator(source_size=(160, 90))

        with pytest.raises(NoRenditionsProduced):
            await orchestrator.run(SOURCE_KEY)
        assert store.asset.status == AssetStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_unwritable_failed_status_is_escalated_and_entry_released(self) -> None:
        orchestrator, store, gate, _, _ = make_orchestrator(
            probe_error=UnreadableMedia("corrupt"),
            write_failures={AssetStatus.FAILED: 10},
        )

        with patch("streamvault.modules.pipeline.orchestrator.STATUS_WRITE_FAILURES_TOTAL") as metric:
            with pytest.raises(UnreadableMedia):
                await orchestrator.run(SOURCE_KEY)

        metric.labels.assert_called_with(status="failed")
        metric.labels.return_value.inc.assert_called_once()
        assert store.asset.status == AssetStatus.PROCESSING.value
        assert sum(gate.released.values()) == 1

    @pytest.mark.asyncio
    async def test_unclaimable_asset_is_left_alone(self) -> None:
        asset = make_asset()
        asset.status = AssetStatus.READY.value
        orchestrator, store, gate, encoder, _ = make_orchestrator(asset=asset)

        with pytest.raises(InvalidTransition):
            await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.READY.value
        assert store.writes == []
        assert encoder.encoded == []
        assert sum(gate.released.values()) == 1

    @pytest.mark.asyncio
    async def test_duplicate_run_keeps_live_runs_admission_entry(self) -> None:
        asset = make_asset()
        asset.status = AssetStatus.PROCESSING.value
        orchestrator, store, gate, encoder, _ = make_orchestrator(asset=asset)

        with pytest.raises(InvalidTransition):
            await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.PROCESSING.value
        assert store.writes == []
        assert encoder.encoded == []
        assert gate.released == Counter()

    @pytest.mark.asyncio
    async def test_unknown_asset_still_releases_entry(self) -> None:
        orchestrator, _, gate, _, _ = make_orchestrator()
        orchestrator.store = FakeStore(None)

        with pytest.raises(AssetNotFoundError):
            await orchestrator.run(SOURCE_KEY)

        assert gate.released == Counter({("u1", SOURCE_KEY): 1})

    @pytest.mark.asyncio
    async def test_missing_source_object_is_fatal(self) -> None:
        orchestrator, store, gate, _, _ = make_orchestrator(with_source=False)

        with pytest.raises(StorageError):
            await orchestrator.run(SOURCE_KEY)

        assert store.asset.status == AssetStatus.FAILED.value
        assert sum(gate.released.values()) == 1


class TestReleaseExactlyOnce:
    @given(
        outcome=st.sampled_from(["ok", "probe", "encode", "persist"]),
        width=st.sampled_from([1920, 1280, 640]),
    )
    @settings(max_examples=40, deadline=None)
    def test_every_finished_run_releases_once(self, outcome: str, width: int) -> None:
        height = {1920: 1080, 1280: 720, 640: 360}[width]
        orchestrator, _, gate, _, _ = make_orchestrator(
            source_size=(width, height),
            probe_error=UnreadableMedia("bad") if outcome == "probe" else None,
            failing=frozenset(Resolution) if outcome == "encode" else frozenset(),
            write_failures={AssetStatus.READY: 5} if outcome == "persist" else None,
        )

        try:
            asyncio.run(orchestrator.run(SOURCE_KEY))
        except (UnreadableMedia, NoRenditionsProduced, PersistenceFailure):
            assert outcome != "ok"

        assert gate.released == Counter({("u1", SOURCE_KEY): 1})
