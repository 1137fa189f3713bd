"""Structured logging for the API and the pipeline workers.

Records are rendered as one JSON object per line. Each carries the correlation
ID of the request or run that produced it and, inside a pipeline run, the
storage key of the asset being processed (see ``bind_asset``).
"""

import json
import logging
import logging.config
import traceback
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from streamvault.core.tracing import current_ids

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
asset_key_var: ContextVar[Optional[str]] = ContextVar("asset_key", default=None)

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message", "asctime", "correlation_id", "asset_key",
}

# Third-party loggers that are only interesting at WARNING and above
_QUIET_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "httpx",
    "botocore",
    "celery.redirected",
)


def get_correlation_id() -> str:
    """Correlation ID of the current context.

    Falls back to the active trace ID, then to a fresh UUID which is stored so
    later records in the same context agree.
    """
    cid = correlation_id_var.get()
    if cid:
        return cid
    trace_id, _ = current_ids()
    if trace_id:
        return trace_id
    cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


@contextmanager
def bind_asset(storage_key: str) -> Iterator[None]:
    """Attach an asset storage key to every record logged inside the block."""
    token = asset_key_var.set(storage_key)
    try:
        yield
    finally:
        asset_key_var.reset(token)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Render records as JSON lines with run context attached."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(self._run_context(record))
        payload["source"] = f"{record.module}:{record.funcName}:{record.lineno}"

        if record.exc_info and self.include_stack_trace:
            payload["exception"] = self._exception(record.exc_info)

        extra = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        }
        if extra:
            payload["extra"] = extra

        return json.dumps(payload, default=str)

    @staticmethod
    def _run_context(record: logging.LogRecord) -> dict[str, str]:
        context = {
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        asset_key = getattr(record, "asset_key", None)
        if not asset_key or asset_key == "-":
            asset_key = asset_key_var.get()
        if asset_key:
            context["asset_key"] = asset_key

        trace_id, span_id = current_ids()
        if trace_id:
            context["trace_id"] = trace_id
            context["span_id"] = span_id
        return context

    @staticmethod
    def _exception(exc_info) -> dict[str, Any]:
        exc_type, exc, tb = exc_info
        return {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc) if exc else None,
            "stack_trace": traceback.format_exception(exc_type, exc, tb),
        }


class RunContextFilter(logging.Filter):
    """Stamp records with the correlation ID and asset key for plain-text output."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        record.asset_key = asset_key_var.get() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all logging to stdout, as JSON lines or readable text.

    Replaces any handlers already on the root logger, so Celery and uvicorn
    start-up hooks can call it again safely.
    """
    level = level.upper()
    if json_format:
        formatter: dict[str, Any] = {
            "()": StructuredFormatter,
            "include_stack_trace": include_stack_trace,
        }
    else:
        formatter = {
            "format": "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] [%(asset_key)s] %(message)s",
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"run_context": {"()": RunContextFilter}},
        "formatters": {"default": formatter},
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "level": level,
                "filters": ["run_context"],
                "formatter": "default",
            },
        },
        "root": {"level": level, "handlers": ["stdout"]},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    })


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log at ERROR with the correlation ID pinned and the exception attached."""
    extra["correlation_id"] = get_correlation_id()
    logger.error(message, exc_info=exception, extra=extra)
