"""Prometheus metrics for the transcoding pipeline and streaming gateway."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Prefork Celery children and multi-worker uvicorn write to a shared directory
if os.environ.get("PROMETHEUS_MULTIPROC_DIR") or os.environ.get("prometheus_multiproc_dir"):
    multiprocess.MultiProcessCollector(REGISTRY)


# Application Info
APP_INFO = Info(
    "streamvault_app",
    "Application information",
    registry=REGISTRY,
)


# HTTP
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# Admission Gate
ADMISSION_DECISIONS_TOTAL = Counter(
    "admission_decisions_total",
    "Admission decisions by outcome (admitted, denied, unavailable)",
    ["decision"],
    registry=REGISTRY,
)

ADMISSION_ENTRIES_SWEPT_TOTAL = Counter(
    "admission_entries_swept_total",
    "Stale admission entries removed by the reconciliation sweep",
    registry=REGISTRY,
)

ADMISSION_RELEASE_FAILURES_TOTAL = Counter(
    "admission_release_failures_total",
    "Admission entries a finished run could not release",
    registry=REGISTRY,
)


# Pipeline
PIPELINE_RUNS_TOTAL = Counter(
    "pipeline_runs_total",
    "Pipeline runs by terminal status",
    ["status"],
    registry=REGISTRY,
)

PIPELINE_DURATION_SECONDS = Histogram(
    "pipeline_duration_seconds",
    "Wall-clock duration of a pipeline run",
    buckets=[10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 3600.0, 7200.0],
    registry=REGISTRY,
)

RENDITION_ENCODES_TOTAL = Counter(
    "rendition_encodes_total",
    "Rendition encodes by resolution and outcome",
    ["resolution", "outcome"],
    registry=REGISTRY,
)

CAPTION_TRACKS_TOTAL = Counter(
    "caption_tracks_total",
    "Caption tracks by language and outcome",
    ["language", "outcome"],
    registry=REGISTRY,
)

STATUS_WRITE_FAILURES_TOTAL = Counter(
    "status_write_failures_total",
    "Asset status writes that failed after all retry attempts",
    ["status"],
    registry=REGISTRY,
)

ENCODES_IN_PROGRESS = Gauge(
    "rendition_encodes_in_progress",
    "Rendition encodes currently running in this process",
    registry=REGISTRY,
)


# Streaming Gateway
GATEWAY_REQUESTS_TOTAL = Counter(
    "gateway_requests_total",
    "Streaming gateway requests by resource kind and outcome",
    ["kind", "outcome"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})
