"""Pipeline orchestrator driving one asset from ``ingested`` to a terminal status.

A run claims the asset (``processing``), downloads and probes the source,
encodes the filtered ladder in bounded batches while captions are generated
alongside, publishes the master playlist and records ``ready``. Any fatal
error records ``failed`` instead. Either way the admission entry is released
before the run returns or raises.
"""

import asyncio
import logging
import os
import tempfile
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar

from redis.exceptions import RedisError

from streamvault.core.logging import bind_asset, log_error
from streamvault.core.metrics import (
    ADMISSION_RELEASE_FAILURES_TOTAL,
    ENCODES_IN_PROGRESS,
    PIPELINE_DURATION_SECONDS,
    PIPELINE_RUNS_TOTAL,
    RENDITION_ENCODES_TOTAL,
    STATUS_WRITE_FAILURES_TOTAL,
)
from streamvault.core.retry import RetryConfig, retry_async
from streamvault.core.storage import StorageError, StorageService
from streamvault.core.tracing import create_span, record_exception
from streamvault.modules.admission.gate import AdmissionGate
from streamvault.modules.captions.generator import CaptionGenerator, CaptionTrack
from streamvault.modules.manifest.builder import (
    DEFAULT_BANDWIDTH_FACTOR,
    ManifestBuilder,
    RenditionRef,
)
from streamvault.modules.media.inspector import MediaInspector
from streamvault.modules.media.models import DEFAULT_LADDER, Resolution, filter_ladder
from streamvault.modules.pipeline.state import AssetStatus, InvalidTransition
from streamvault.modules.transcoding.encoder import EncodeFailure, RenditionEncoder
from streamvault.modules.video.models import Asset, user_id_from_storage_key
from streamvault.modules.video.repository import (
    AssetNotFoundError,
    AssetStore,
    PersistenceFailure,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ENCODE_CONCURRENCY_CAP = 4
MAX_ERROR_MESSAGE_LENGTH = 2000


class PipelineFailure(Exception):
    """Raised when a run cannot produce a playable asset."""


class NoRenditionsProduced(PipelineFailure):
    """Raised when the ladder is empty for the source or every encode failed."""


@dataclass
class RunResult:
    """Outcome of a successful run."""
    storage_key: str
    renditions: list[RenditionRef]
    master_manifest_key: str
    captions: dict[str, CaptionTrack]
    failed_resolutions: list[Resolution] = field(default_factory=list)


def encode_batch_size(pending: int, cap: int, cpu_count: Optional[int] = None) -> int:
    """Number of encodes to run at once: min(CPU count, pending, cap), at least 1."""
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(1, min(cpus, pending, cap))


class PipelineOrchestrator:
    """Runs the transcoding pipeline for one asset at a time.

    Every collaborator is injected; the caller owns their lifecycle.
    """

    def __init__(
        self,
        store: AssetStore,
        storage: StorageService,
        gate: AdmissionGate,
        inspector: MediaInspector,
        encoder: RenditionEncoder,
        captions: CaptionGenerator,
        manifest_builder: ManifestBuilder,
        retry_config: Optional[RetryConfig] = None,
        ladder: Sequence[Resolution] = DEFAULT_LADDER,
        concurrency_cap: int = DEFAULT_ENCODE_CONCURRENCY_CAP,
        bandwidth_factor: float = DEFAULT_BANDWIDTH_FACTOR,
        cpu_count: Optional[int] = None,
        scratch_dir: Optional[str] = None,
    ):
        self.store = store
        self.storage = storage
        self.gate = gate
        self.inspector = inspector
        self.encoder = encoder
        self.captions = captions
        self.manifest_builder = manifest_builder
        self.retry_config = retry_config or RetryConfig(max_attempts=3, initial_delay=0.5, max_delay=5.0)
        self.ladder = tuple(ladder)
        self.concurrency_cap = concurrency_cap
        self.bandwidth_factor = bandwidth_factor
        self.cpu_count = cpu_count
        self.scratch_dir = scratch_dir

    async def _persist(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_async(
            operation,
            self.retry_config,
            retry_on=(PersistenceFailure,),
            description=description,
        )

    async def run(self, storage_key: str) -> RunResult:
        """Process one admitted asset end to end.

        Raises:
            Whatever fatal error ended the run, after ``failed`` has been
            recorded (best effort) and the admission entry released. A run
            that finds the asset already ``processing`` leaves the entry to
            the run holding it.
        """
        started = time.monotonic()
        with bind_asset(storage_key), create_span("pipeline.run", {"asset.key": storage_key}):
            user_id: Optional[str] = None
            claimed = False
            try:
                asset = await self._persist(
                    lambda: self.store.get_by_storage_key(storage_key), "load asset"
                )
                user_id = asset.user_id
                await self._persist(
                    lambda: self.store.update_status(storage_key, AssetStatus.PROCESSING),
                    "claim asset",
                )
                claimed = True

                result = await self._process(asset)

                await self._persist(
                    lambda: self.store.update_status(
                        storage_key,
                        AssetStatus.READY,
                        renditions=[r.to_dict(self.bandwidth_factor) for r in result.renditions],
                        master_manifest_key=result.master_manifest_key,
                        captions={lang: t.to_dict() for lang, t in result.captions.items()},
                    ),
                    "record ready",
                )
            except Exception as exc:
                record_exception(exc)
                log_error(logger, f"Pipeline failed for {storage_key}: {exc}", exception=exc)
                PIPELINE_RUNS_TOTAL.labels(status=AssetStatus.FAILED.value).inc()
                if claimed:
                    await self._record_failure(storage_key, exc)
                elif isinstance(exc, InvalidTransition):
                    logger.warning(f"Asset {storage_key} was not claimable, leaving its status alone")
                    if exc.current == AssetStatus.PROCESSING:
                        # The admission entry belongs to the run holding the asset
                        raise
                await self._release(user_id, storage_key)
                raise
            finally:
                PIPELINE_DURATION_SECONDS.observe(time.monotonic() - started)

            PIPELINE_RUNS_TOTAL.labels(status=AssetStatus.READY.value).inc()
            await self._release(user_id, storage_key)
            logger.info(
                f"Asset {storage_key} ready with {len(result.renditions)} rendition(s) "
                f"and {len(result.captions)} caption track(s)"
            )
            return result

    async def _process(self, asset: Asset) -> RunResult:
        key_prefix = asset.output_prefix
        with tempfile.TemporaryDirectory(prefix="pipeline-", dir=self.scratch_dir) as work_dir:
            local_path = os.path.join(work_dir, "source")

            with create_span("pipeline.download"):
                if not await self.storage.download_file(asset.storage_key, local_path):
                    raise StorageError("Source object could not be downloaded")

            with create_span("pipeline.probe"):
                width, height = await self.inspector.probe(local_path)
            targets = filter_ladder(width, height, self.ladder)
            if not targets:
                raise NoRenditionsProduced(f"Source {width}x{height} is below every ladder rung")

            captions_task = asyncio.create_task(self.captions.generate(local_path, key_prefix))
            try:
                renditions, failed = await self._encode_all(local_path, targets, key_prefix)
                if not renditions:
                    raise NoRenditionsProduced(
                        f"All {len(targets)} rendition encode(s) failed"
                    )
                caption_tracks = await self._join_captions(captions_task)
            finally:
                if not captions_task.done():
                    captions_task.cancel()
                    await asyncio.gather(captions_task, return_exceptions=True)

            with create_span("pipeline.manifest"):
                manifest_key = await self.manifest_builder.build_master(
                    renditions, caption_tracks, key_prefix
                )

        return RunResult(
            storage_key=asset.storage_key,
            renditions=renditions,
            master_manifest_key=manifest_key,
            captions=caption_tracks,
            failed_resolutions=failed,
        )

    async def _encode_one(self, local_path: str, resolution: Resolution, key_prefix: str) -> RenditionRef:
        ENCODES_IN_PROGRESS.inc()
        try:
            with create_span("pipeline.encode", {"rendition.resolution": resolution.value}):
                directory_key = await self.encoder.encode(local_path, resolution, key_prefix)
        finally:
            ENCODES_IN_PROGRESS.dec()
        return RenditionRef(resolution=resolution, directory_key=directory_key)

    async def _encode_all(
        self,
        local_path: str,
        targets: list[Resolution],
        key_prefix: str,
    ) -> tuple[list[RenditionRef], list[Resolution]]:
        """Encode ``targets`` batch by batch; a failed rendition spares its siblings."""
        renditions: list[RenditionRef] = []
        failed: list[Resolution] = []
        pending = list(targets)

        while pending:
            size = encode_batch_size(len(pending), self.concurrency_cap, self.cpu_count)
            batch, pending = pending[:size], pending[size:]
            results = await asyncio.gather(
                *(self._encode_one(local_path, r, key_prefix) for r in batch),
                return_exceptions=True,
            )
            for resolution, outcome in zip(batch, results):
                if isinstance(outcome, RenditionRef):
                    renditions.append(outcome)
                    RENDITION_ENCODES_TOTAL.labels(resolution=resolution.value, outcome="success").inc()
                elif isinstance(outcome, Exception):
                    failed.append(resolution)
                    RENDITION_ENCODES_TOTAL.labels(resolution=resolution.value, outcome="failed").inc()
                    if isinstance(outcome, EncodeFailure):
                        logger.warning(str(outcome))
                    else:
                        log_error(logger, f"Encoding {resolution.value} crashed", exception=outcome)
                else:
                    raise outcome

        return renditions, failed

    async def _join_captions(self, captions_task: "asyncio.Task[dict[str, CaptionTrack]]") -> dict[str, CaptionTrack]:
        try:
            return await captions_task
        except Exception as e:
            log_error(logger, "Caption generation crashed, continuing without captions", exception=e)
            return {}

    async def _record_failure(self, storage_key: str, exc: BaseException) -> None:
        """Record ``failed``; escalate through logs and metrics if even that fails."""
        message = f"{type(exc).__name__}: {exc}"[:MAX_ERROR_MESSAGE_LENGTH]
        try:
            await self._persist(
                lambda: self.store.update_status(
                    storage_key, AssetStatus.FAILED, error_message=message
                ),
                "record failed",
            )
        except (PersistenceFailure, InvalidTransition, AssetNotFoundError) as e:
            STATUS_WRITE_FAILURES_TOTAL.labels(status=AssetStatus.FAILED.value).inc()
            log_error(
                logger,
                f"Could not record failed status for {storage_key}",
                exception=e,
                original_error=message,
            )

    async def _release(self, user_id: Optional[str], storage_key: str) -> None:
        """Release the run's admission entry, retrying transient store errors."""
        if user_id is None:
            try:
                user_id = user_id_from_storage_key(storage_key)
            except ValueError as e:
                log_error(logger, "Cannot determine owner to release admission entry", exception=e)
                ADMISSION_RELEASE_FAILURES_TOTAL.inc()
                return

        try:
            await retry_async(
                lambda: self.gate.release(user_id, storage_key),
                self.retry_config,
                retry_on=(RedisError,),
                description="release admission entry",
            )
        except RedisError as e:
            ADMISSION_RELEASE_FAILURES_TOTAL.inc()
            log_error(logger, f"Admission entry for {storage_key} left held", exception=e)


def result_summary(result: RunResult) -> dict[str, Any]:
    """JSON-friendly summary of a run, returned by the task wrappers."""
    return {
        "storage_key": result.storage_key,
        "master_manifest_key": result.master_manifest_key,
        "renditions": [r.resolution.value for r in result.renditions],
        "failed_resolutions": [r.value for r in result.failed_resolutions],
        "captions": sorted(result.captions),
    }
