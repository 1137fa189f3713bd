"""Pydantic schemas for the video module."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from streamvault.modules.video.models import ALLOWED_VIDEO_MIME_TYPES


class UploadRequest(BaseModel):
    """Request schema for a new direct upload."""

    mime_type: str = Field(..., description="MIME type of the file to upload")

    @field_validator("mime_type")
    @classmethod
    def validate_mime_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ALLOWED_VIDEO_MIME_TYPES:
            raise ValueError(f"Unsupported video type. Allowed: {', '.join(ALLOWED_VIDEO_MIME_TYPES)}")
        return v


class UploadTicketResponse(BaseModel):
    """Presigned POST form the client submits the file with."""

    asset_id: uuid.UUID
    upload_url: str
    fields: dict[str, str]
    expires_in: int


class StorageObject(BaseModel):
    key: str


class StorageEntity(BaseModel):
    object: StorageObject


class StorageEventRecord(BaseModel):
    s3: StorageEntity


class StorageEvent(BaseModel):
    """Object-created notification in the S3 event shape."""

    Records: list[StorageEventRecord] = Field(..., min_length=1)

    @property
    def object_key(self) -> str:
        return self.Records[0].s3.object.key


class StorageEventResponse(BaseModel):
    asset_id: uuid.UUID
    status: str
    run_id: Optional[str] = None


class RenditionSummary(BaseModel):
    resolution: str
    width: int
    height: int
    bandwidth: int


class AssetResponse(BaseModel):
    """An asset as shown to its owner. Storage keys are never exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    status: str
    mime_type: str
    renditions: list[RenditionSummary] = []
    caption_languages: list[str] = []
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_asset(cls, asset: Any) -> "AssetResponse":
        return cls(
            id=asset.id,
            status=asset.status,
            mime_type=asset.mime_type,
            renditions=[
                RenditionSummary(
                    resolution=r["resolution"],
                    width=r["width"],
                    height=r["height"],
                    bandwidth=r["bandwidth"],
                )
                for r in (asset.renditions or [])
            ],
            caption_languages=sorted(asset.captions or {}),
            error_message=asset.error_message,
            created_at=asset.created_at,
            updated_at=asset.updated_at,
        )


class AssetListResponse(BaseModel):
    items: list[AssetResponse]
    total: int
