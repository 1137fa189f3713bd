"""Video service: upload intake, storage events and owner lookups."""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote_plus

from sqlalchemy.ext.asyncio import AsyncSession

from streamvault.core.config import Settings
from streamvault.core.storage import StorageService
from streamvault.modules.admission.gate import AdmissionDenied, AdmissionGate
from streamvault.modules.pipeline.launcher import LaunchFailure, TaskLauncher
from streamvault.modules.pipeline.state import AssetStatus, InvalidTransition
from streamvault.modules.video.models import (
    Asset,
    upload_storage_key,
    user_id_from_storage_key,
)
from streamvault.modules.video.repository import AssetNotFoundError, AssetRepository

logger = logging.getLogger(__name__)


class VideoServiceError(Exception):
    """Base exception for video service errors."""


class VideoNotFoundError(VideoServiceError):
    """Raised when an asset does not exist or belongs to someone else."""


class InvalidStorageEvent(VideoServiceError):
    """Raised when an object-created event does not name an upload."""


@dataclass
class UploadTicket:
    asset_id: uuid.UUID
    upload_url: str
    fields: dict[str, str]
    expires_in: int


@dataclass
class IngestResult:
    asset: Asset
    run_id: Optional[str] = None


class VideoService:
    """Service for asset intake and lookup."""

    def __init__(
        self,
        session: AsyncSession,
        storage: StorageService,
        gate: AdmissionGate,
        launcher: TaskLauncher,
        settings: Settings,
    ):
        self.session = session
        self.repository = AssetRepository(session)
        self.storage = storage
        self.gate = gate
        self.launcher = launcher
        self.settings = settings

    async def create_upload(self, user_id: str, mime_type: str) -> UploadTicket:
        """Register an asset and issue a presigned POST for its source file.

        Raises:
            AdmissionDenied: If the user already has a full transcode queue
        """
        if not await self.gate.has_capacity(user_id):
            raise AdmissionDenied("Too many videos are being processed, try again later")

        storage_key = upload_storage_key(user_id, uuid.uuid4())
        asset = await self.repository.create(user_id, storage_key, mime_type)
        form = await self.storage.presigned_post(
            storage_key,
            content_type=mime_type,
            max_bytes=self.settings.UPLOAD_MAX_BYTES,
            expires_in=self.settings.UPLOAD_URL_EXPIRE_SECONDS,
            metadata={"userId": user_id},
        )
        await self.session.commit()

        logger.info(f"Upload registered for user {user_id}: {storage_key}")
        return UploadTicket(
            asset_id=asset.id,
            upload_url=form["url"],
            fields=form["fields"],
            expires_in=self.settings.UPLOAD_URL_EXPIRE_SECONDS,
        )

    async def handle_object_created(self, object_key: str) -> IngestResult:
        """Mark an uploaded source ``ingested``, admit it and launch its run.

        A repeated event for an asset that already left ``registered`` is
        acknowledged without launching a second run.

        Raises:
            InvalidStorageEvent: If the key is not an upload key
            VideoNotFoundError: If no asset was registered for the key
            AdmissionDenied: If the user's queue is full; the asset stays ``ingested``
            LaunchFailure: If the run could not be started
        """
        storage_key = unquote_plus(object_key)
        try:
            user_id = user_id_from_storage_key(storage_key)
        except ValueError as e:
            raise InvalidStorageEvent("Event does not reference an upload") from e

        asset = await self.repository.get_by_storage_key(storage_key)
        if asset is None:
            raise VideoNotFoundError("No asset registered for this upload")
        if asset.user_id != user_id:
            raise InvalidStorageEvent("Upload key does not match the asset owner")

        try:
            await self.repository.update_status(storage_key, AssetStatus.INGESTED)
        except (AssetNotFoundError, InvalidTransition):
            logger.info(f"Duplicate object-created event for {storage_key}, ignoring")
            return IngestResult(asset=asset)
        await self.session.commit()
        await self.session.refresh(asset)

        if not await self.gate.try_admit(user_id, storage_key):
            raise AdmissionDenied("Too many videos are being processed, try again later")

        try:
            run_id = self.launcher.launch(storage_key, user_id=user_id)
        except LaunchFailure:
            # No run will ever release this entry
            await self.gate.release(user_id, storage_key)
            raise

        return IngestResult(asset=asset, run_id=run_id)

    async def list_assets(self, user_id: str) -> list[Asset]:
        return await self.repository.list_for_user(user_id)

    async def get_asset(self, user_id: str, asset_id: uuid.UUID) -> Asset:
        """Get an asset owned by ``user_id``.

        Raises:
            VideoNotFoundError: If it does not exist or is someone else's
        """
        asset = await self.repository.get_by_id(asset_id)
        if asset is None or asset.user_id != user_id:
            raise VideoNotFoundError(f"Video {asset_id} not found")
        return asset
