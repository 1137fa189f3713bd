"""Standalone worker entry point: ``python -m streamvault.worker``.

Processes exactly one asset named by the environment (``VIDEO_KEY``) and
exits non-zero when the run fails, for schedulers that start one container
per asset.
"""

import asyncio
import logging
import os
import sys

from streamvault.core.config import settings
from streamvault.core.logging import setup_logging
from streamvault.core.tracing import setup_tracing, shutdown_tracing
from streamvault.modules.pipeline.orchestrator import result_summary
from streamvault.modules.pipeline.runner import run_pipeline

logger = logging.getLogger(__name__)


def main() -> int:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    setup_tracing(settings, component="worker")

    storage_key = os.environ.get("VIDEO_KEY")
    if not storage_key:
        logger.error("VIDEO_KEY is not set")
        return 2

    try:
        result = asyncio.run(run_pipeline(storage_key, settings))
    except Exception:
        logger.exception(f"Run for {storage_key} failed")
        return 1
    finally:
        shutdown_tracing()

    logger.info("Run finished", extra={"result": result_summary(result)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
