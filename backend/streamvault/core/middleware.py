"""HTTP middleware: correlation IDs, server spans, request metrics and access logs."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from streamvault.core.logging import clear_correlation_id, get_correlation_id, set_correlation_id
from streamvault.core.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL
from streamvault.core.tracing import create_span, record_exception

request_logger = logging.getLogger("streamvault.requests")

_UUID = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)


def normalize_path(path: str) -> str:
    """Replace IDs in a path with placeholders to bound metric cardinality."""
    path = _UUID.sub("{id}", path)
    return re.sub(r"/\d+(?=/|$)", "/{id}", path)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Propagates ``X-Correlation-ID`` into the logging context and response."""

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(self.CORRELATION_ID_HEADER, str(uuid.uuid4()))
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
            response.headers[self.CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


class TracingMiddleware(BaseHTTPMiddleware):
    """Opens a server span per request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = normalize_path(request.url.path)
        with create_span(
            f"{request.method} {path}",
            attributes={
                "http.method": request.method,
                "http.route": path,
                "correlation_id": get_correlation_id(),
            },
            kind=trace.SpanKind.SERVER,
        ) as span:
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                raise
            span.set_attribute("http.status_code", response.status_code)
            return response


class RequestTelemetryMiddleware(BaseHTTPMiddleware):
    """Records request metrics and logs one line per request.

    Both use the normalized path: playback paths name storage objects, and
    query strings carry signatures, so neither is logged verbatim.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_path(request.url.path)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            request_logger.error(
                "Request failed",
                extra={"method": request.method, "endpoint": endpoint},
                exc_info=True,
            )
            raise
        finally:
            elapsed = time.perf_counter() - started
            HTTP_REQUEST_DURATION_SECONDS.labels(method=request.method, endpoint=endpoint).observe(elapsed)
            HTTP_REQUESTS_TOTAL.labels(
                method=request.method, endpoint=endpoint, status_code=str(status_code)
            ).inc()

        request_logger.info(
            "Request completed",
            extra={
                "method": request.method,
                "endpoint": endpoint,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000, 2),
            },
        )
        return response
