"""Celery task running the pipeline for one asset.

The task is never retried by Celery: a run is at-most-once per admitted
entry, and a failure has already been recorded on the asset by the time the
exception reaches the scheduler.
"""

import asyncio
import logging
from typing import Optional

from streamvault.core.celery_app import celery_app
from streamvault.core.config import settings
from streamvault.modules.pipeline.orchestrator import result_summary
from streamvault.modules.pipeline.runner import run_pipeline

logger = logging.getLogger(__name__)


@celery_app.task(name="streamvault.modules.pipeline.tasks.process_asset", max_retries=0)
def process_asset(storage_key: str, user_id: Optional[str] = None) -> dict:
    """Process an uploaded asset into HLS renditions, captions and a master playlist.

    Args:
        storage_key: Storage key of the uploaded source
        user_id: Owning user, for logging only; the asset row is authoritative
    """
    logger.info(f"Starting pipeline for {storage_key} (user {user_id})")
    result = asyncio.run(run_pipeline(storage_key, settings))
    return result_summary(result)
