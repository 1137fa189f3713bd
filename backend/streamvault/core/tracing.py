"""OpenTelemetry tracing.

The API process and every pipeline worker install one tracer provider at
start-up. Requests, Celery tasks and the stages of a pipeline run open spans
on the ``streamvault`` tracer, so a run lines up under whatever started it.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from streamvault.core.config import Settings

logger = logging.getLogger(__name__)

TRACER_NAME = "streamvault"

_provider: Optional[TracerProvider] = None


def _span_processors(otlp_endpoint: Optional[str], console: bool) -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    if otlp_endpoint:
        # The gRPC exporter ships in the optional "otlp" extra
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning(f"OTLP_ENDPOINT={otlp_endpoint} ignored: OTLP exporter not installed")
        else:
            processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    if console:
        processors.append(BatchSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_tracing(config: Settings, component: str = "api") -> None:
    """Install the process-wide tracer provider.

    ``component`` distinguishes the API from pipeline workers sharing one
    service name. Only the first call in a process has an effect.
    """
    global _provider
    if _provider is not None:
        return

    provider = TracerProvider(
        resource=Resource.create({
            SERVICE_NAME: config.PROJECT_NAME,
            SERVICE_VERSION: config.VERSION,
            "deployment.environment": config.ENVIRONMENT,
            "streamvault.component": component,
        })
    )
    for processor in _span_processors(config.OTLP_ENDPOINT, config.TRACING_CONSOLE_EXPORT):
        provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    _provider = provider
    logger.info(f"Tracing enabled for {component}")


def current_ids() -> tuple[Optional[str], Optional[str]]:
    """Hex trace and span IDs of the active span, ``(None, None)`` outside one."""
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return None, None
    return format(ctx.trace_id, "032x"), format(ctx.span_id, "016x")


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict[str, Any]] = None,
    kind: SpanKind = SpanKind.INTERNAL,
) -> Iterator[Span]:
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, kind=kind, attributes=attributes) as span:
        yield span


def record_exception(exception: BaseException, attributes: Optional[dict[str, Any]] = None) -> None:
    """Mark the active span failed and attach the exception to it."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    span.record_exception(exception, attributes=attributes)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and drop the provider."""
    global _provider
    if _provider is None:
        return
    _provider.shutdown()
    _provider = None
