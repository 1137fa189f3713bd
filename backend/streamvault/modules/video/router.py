"""Video API router: uploads, storage events, lookups and playback."""

import hmac
import uuid
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from streamvault.core.config import settings
from streamvault.core.database import get_db
from streamvault.core.redis import get_redis
from streamvault.core.storage import StorageService
from streamvault.modules.admission.gate import AdmissionDenied, AdmissionGate
from streamvault.modules.auth.jwt import get_current_user_id
from streamvault.modules.gateway.service import (
    AccessDenied,
    ManifestUnavailable,
    PlaylistContent,
    StreamingGateway,
    UnsupportedResource,
)
from streamvault.modules.pipeline.launcher import CeleryTaskLauncher, LaunchFailure, TaskLauncher
from streamvault.modules.video.repository import AssetRepository
from streamvault.modules.video.schemas import (
    AssetListResponse,
    AssetResponse,
    StorageEvent,
    StorageEventResponse,
    UploadRequest,
    UploadTicketResponse,
)
from streamvault.modules.video.service import (
    InvalidStorageEvent,
    VideoNotFoundError,
    VideoService,
)

router = APIRouter(prefix="/videos", tags=["videos"])


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_launcher() -> TaskLauncher:
    return CeleryTaskLauncher()


def get_video_service(
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    storage: StorageService = Depends(get_storage),
    launcher: TaskLauncher = Depends(get_launcher),
) -> VideoService:
    gate = AdmissionGate(
        redis_client,
        ceiling=settings.ADMISSION_CEILING,
        key_prefix=settings.ADMISSION_KEY_PREFIX,
    )
    return VideoService(db, storage, gate, launcher, settings)


def get_gateway(
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> StreamingGateway:
    base = settings.GATEWAY_BASE_URL or str(request.base_url).rstrip("/")
    return StreamingGateway(
        AssetRepository(db),
        storage,
        http_client,
        gateway_base_url=f"{base}{settings.API_V1_PREFIX}",
        signed_url_ttl=settings.SIGNED_URL_TTL_SECONDS,
    )


@router.post("/uploads", response_model=UploadTicketResponse, status_code=status.HTTP_201_CREATED)
async def create_upload(
    request: UploadRequest,
    user_id: str = Depends(get_current_user_id),
    service: VideoService = Depends(get_video_service),
):
    """Register a video and return a presigned form for uploading it."""
    try:
        ticket = await service.create_upload(user_id, request.mime_type)
    except AdmissionDenied as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    return UploadTicketResponse(
        asset_id=ticket.asset_id,
        upload_url=ticket.upload_url,
        fields=ticket.fields,
        expires_in=ticket.expires_in,
    )


@router.post("/events/storage", response_model=StorageEventResponse, status_code=status.HTTP_202_ACCEPTED)
async def storage_event(
    event: StorageEvent,
    x_event_token: Optional[str] = Header(default=None),
    service: VideoService = Depends(get_video_service),
):
    """Object-created hook: admit the uploaded video and launch its processing."""
    if settings.STORAGE_EVENT_TOKEN and not hmac.compare_digest(
        x_event_token or "", settings.STORAGE_EVENT_TOKEN
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid event token")

    try:
        result = await service.handle_object_created(event.object_key)
    except InvalidStorageEvent as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except VideoNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AdmissionDenied as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    except LaunchFailure:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Processing could not be started",
        )

    return StorageEventResponse(
        asset_id=result.asset.id,
        status=result.asset.status,
        run_id=result.run_id,
    )


@router.get("", response_model=AssetListResponse)
async def list_videos(
    user_id: str = Depends(get_current_user_id),
    service: VideoService = Depends(get_video_service),
):
    """List the caller's videos, newest first."""
    assets = await service.list_assets(user_id)
    items = [AssetResponse.from_asset(a) for a in assets]
    return AssetListResponse(items=items, total=len(items))


@router.get("/{asset_id}", response_model=AssetResponse)
async def get_video(
    asset_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    service: VideoService = Depends(get_video_service),
):
    try:
        asset = await service.get_asset(user_id, asset_id)
    except VideoNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return AssetResponse.from_asset(asset)


@router.get("/{asset_id}/stream")
async def stream_video(
    asset_id: uuid.UUID,
    path: Optional[str] = Query(default=None, max_length=1024),
    user_id: str = Depends(get_current_user_id),
    gateway: StreamingGateway = Depends(get_gateway),
):
    """Play a video: the master playlist, or the playlist or segment at ``path``."""
    try:
        result = await gateway.stream(user_id, asset_id, path)
    except AccessDenied as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except UnsupportedResource as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ManifestUnavailable as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    if isinstance(result, PlaylistContent):
        return Response(
            content=result.content,
            media_type=result.content_type,
            headers={"Cache-Control": "no-store"},
        )
    return RedirectResponse(url=result.url, status_code=status.HTTP_302_FOUND)
