"""Builds the collaborators of one pipeline run and runs it.

Every handle (database engine, Redis client, transcription client) is opened
for the run inside one ``AsyncExitStack`` and closed when the run ends,
whatever its outcome.
"""

import logging
from contextlib import AsyncExitStack

from streamvault.core.config import Settings
from streamvault.core.database import database_session_maker
from streamvault.core.logging import set_correlation_id
from streamvault.core.redis import redis_connection
from streamvault.core.retry import RetryConfig
from streamvault.core.storage import StorageService
from streamvault.modules.admission.gate import AdmissionGate
from streamvault.modules.captions.generator import CaptionGenerator
from streamvault.modules.captions.transcription import OpenAITranscriber
from streamvault.modules.manifest.builder import ManifestBuilder
from streamvault.modules.media.inspector import MediaInspector
from streamvault.modules.pipeline.orchestrator import PipelineOrchestrator, RunResult
from streamvault.modules.transcoding.encoder import EncodingProfile, RenditionEncoder
from streamvault.modules.video.repository import AssetStore

logger = logging.getLogger(__name__)


def status_retry_config(settings: Settings) -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.STATUS_RETRY_MAX_ATTEMPTS,
        initial_delay=settings.STATUS_RETRY_INITIAL_DELAY,
        max_delay=settings.STATUS_RETRY_MAX_DELAY,
    )


async def run_pipeline(storage_key: str, settings: Settings) -> RunResult:
    """Open the run's service handles, process ``storage_key``, close them."""
    set_correlation_id(storage_key)

    async with AsyncExitStack() as stack:
        session_maker = await stack.enter_async_context(
            database_session_maker(settings.DATABASE_URL)
        )
        redis_client = await stack.enter_async_context(redis_connection(settings.REDIS_URL))

        # A missing API key must not stop video processing; captions are optional
        transcriber = OpenAITranscriber.from_settings(settings) if settings.OPENAI_API_KEY else None
        if transcriber is not None:
            stack.push_async_callback(transcriber.close)
        else:
            logger.warning("No transcription credentials, captions disabled for this run")

        storage = StorageService.from_settings(settings)
        orchestrator = PipelineOrchestrator(
            store=AssetStore(session_maker),
            storage=storage,
            gate=AdmissionGate(
                redis_client,
                ceiling=settings.ADMISSION_CEILING,
                key_prefix=settings.ADMISSION_KEY_PREFIX,
            ),
            inspector=MediaInspector(settings.FFPROBE_PATH),
            encoder=RenditionEncoder(
                storage,
                EncodingProfile(
                    preset=settings.ENCODE_PRESET,
                    segment_seconds=settings.HLS_SEGMENT_SECONDS,
                ),
                ffmpeg_path=settings.FFMPEG_PATH,
                scratch_dir=settings.SCRATCH_DIR,
            ),
            captions=CaptionGenerator(
                storage,
                transcriber,
                base_language=settings.BASE_CAPTION_LANGUAGE,
                sample_seconds=settings.LANGUAGE_SAMPLE_SECONDS,
                chunk_seconds=settings.AUDIO_CHUNK_SECONDS,
                ffmpeg_path=settings.FFMPEG_PATH,
                scratch_dir=settings.SCRATCH_DIR,
            ),
            manifest_builder=ManifestBuilder(
                storage,
                base_language=settings.BASE_CAPTION_LANGUAGE,
                bandwidth_factor=settings.BANDWIDTH_FACTOR,
            ),
            retry_config=status_retry_config(settings),
            concurrency_cap=settings.ENCODE_CONCURRENCY_CAP,
            bandwidth_factor=settings.BANDWIDTH_FACTOR,
            scratch_dir=settings.SCRATCH_DIR,
        )
        return await orchestrator.run(storage_key)
