"""Compute-task launcher: starts one isolated pipeline run per asset."""

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class LaunchFailure(Exception):
    """Raised when the scheduler does not acknowledge a run."""


class TaskLauncher(ABC):
    """Starts a pipeline run without waiting for it."""

    @abstractmethod
    def launch(self, storage_key: str, **params: Any) -> str:
        """Start a run for ``storage_key`` and return the scheduler's run id."""


class CeleryTaskLauncher(TaskLauncher):
    """Launches runs as Celery ``process_asset`` tasks."""

    def launch(self, storage_key: str, **params: Any) -> str:
        from kombu.exceptions import KombuError

        from streamvault.modules.pipeline.tasks import process_asset

        try:
            async_result = process_asset.apply_async(args=[storage_key], kwargs=params)
        except KombuError as e:
            raise LaunchFailure(f"Could not enqueue run for {storage_key}") from e

        logger.info(f"Launched pipeline run {async_result.id} for {storage_key}")
        return async_result.id
