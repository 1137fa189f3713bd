"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from streamvault.core.config import settings
from streamvault.core.database import create_engine, create_session_maker
from streamvault.core.logging import setup_logging
from streamvault.core.metrics import get_content_type, get_metrics, set_app_info
from streamvault.core.middleware import (
    CorrelationIdMiddleware,
    RequestTelemetryMiddleware,
    TracingMiddleware,
)
from streamvault.core.redis import create_redis
from streamvault.core.storage import StorageService
from streamvault.core.tracing import setup_tracing, shutdown_tracing
from streamvault.modules.video.router import router as video_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the process-wide handles of the API: database, Redis, storage, HTTP."""
    engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    app.state.session_maker = create_session_maker(engine)
    app.state.redis = create_redis(settings.REDIS_URL)
    app.state.storage = StorageService.from_settings(settings)
    app.state.http_client = httpx.AsyncClient(timeout=settings.MANIFEST_FETCH_TIMEOUT_SECONDS)
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        await app.state.redis.aclose()
        await engine.dispose()
        shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## StreamVault API

Video upload intake, HLS transcoding status and secure playback.

### Authentication

All video endpoints require a JWT Bearer token (or the `access_token` cookie
for players that cannot send headers).

```
Authorization: Bearer <access_token>
```
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {"name": "health", "description": "Health check and metrics endpoints"},
        {"name": "videos", "description": "Uploads, processing status and playback"},
    ],
    lifespan=lifespan,
)

setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(settings, component="api")

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestTelemetryMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(video_router, prefix=settings.API_V1_PREFIX)


def serve() -> None:
    """Run the API under uvicorn: ``streamvault-api`` or ``python -m streamvault.main``."""
    uvicorn.run(
        "streamvault.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,
        proxy_headers=True,
    )


if __name__ == "__main__":
    serve()
