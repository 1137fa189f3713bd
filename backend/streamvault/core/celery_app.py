"""Celery application configuration.

Each pipeline run gets a fresh worker process (``worker_max_tasks_per_child``)
so a run never shares ffmpeg scratch space or client handles with another.
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import worker_process_init, worker_process_shutdown

from streamvault.core.config import settings
from streamvault.core.logging import setup_logging
from streamvault.core.tracing import setup_tracing, shutdown_tracing

celery_app = Celery(
    "streamvault",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.PIPELINE_TASK_TIME_LIMIT_SECONDS,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1,
    task_acks_late=False,
    task_reject_on_worker_lost=False,
    beat_schedule={
        "sweep-admission-entries": {
            "task": "streamvault.modules.admission.tasks.sweep_admission_entries",
            "schedule": 900.0,
        },
    },
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Use the structured JSON logging in workers instead of Celery's own."""
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)


@worker_process_init.connect
def init_worker_tracing(**kwargs) -> None:
    setup_tracing(settings, component="celery")


@worker_process_shutdown.connect
def flush_worker_tracing(**kwargs) -> None:
    shutdown_tracing()


celery_app.autodiscover_tasks(["streamvault.modules.pipeline", "streamvault.modules.admission"])
