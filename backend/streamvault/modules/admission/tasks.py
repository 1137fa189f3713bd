"""Celery tasks for admission queue reconciliation."""

import asyncio
import logging

from streamvault.core.celery_app import celery_app
from streamvault.core.config import settings
from streamvault.core.redis import redis_connection
from streamvault.modules.admission.gate import AdmissionGate

logger = logging.getLogger(__name__)


async def _sweep_async() -> int:
    async with redis_connection(settings.REDIS_URL) as client:
        gate = AdmissionGate(
            client,
            ceiling=settings.ADMISSION_CEILING,
            key_prefix=settings.ADMISSION_KEY_PREFIX,
        )
        return await gate.sweep_expired(settings.ADMISSION_ENTRY_MAX_AGE_SECONDS)


@celery_app.task
def sweep_admission_entries() -> dict:
    """Remove admission entries leaked by runs the scheduler abandoned."""
    removed = asyncio.run(_sweep_async())
    logger.info(f"Admission sweep removed {removed} entries")
    return {"removed": removed}
