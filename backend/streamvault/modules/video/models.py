"""Asset model for uploaded videos and their streaming artifacts."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from streamvault.core.database import Base
from streamvault.modules.pipeline.state import AssetStatus

# Allowed upload MIME types
ALLOWED_VIDEO_MIME_TYPES = (
    "video/mp4",
    "video/mpeg",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-flv",
)


class Asset(Base):
    """An uploaded video and the references to everything derived from it.

    ``storage_key`` is the join key between the admission queue, the worker
    and this table; it never changes once the row exists.
    """

    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    storage_key: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AssetStatus.REGISTERED.value, index=True
    )

    # [{"resolution", "width", "height", "bandwidth", "playlist_key"}, ...] in ladder order
    renditions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    master_manifest_key: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    # {"en": {"vtt_key": ..., "srt_key": ...}, ...}
    captions: Mapped[Optional[dict[str, dict[str, str]]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def output_prefix(self) -> str:
        """Storage prefix every derived artifact of this asset lives under."""
        return f"users/{self.user_id}/{self.id}/"

    def __repr__(self) -> str:
        return f"<Asset {self.id} - {self.storage_key} - {self.status}>"


def upload_storage_key(user_id: str, upload_id: uuid.UUID) -> str:
    """Key a new upload is written to: ``uploads/<user_id>/video-<uuid>``."""
    return f"uploads/{user_id}/video-{upload_id}"


def user_id_from_storage_key(storage_key: str) -> str:
    """Owning user of an upload key.

    Raises:
        ValueError: If the key is not shaped like an upload key
    """
    parts = storage_key.split("/")
    if len(parts) < 3 or parts[0] != "uploads" or not parts[1]:
        raise ValueError(f"Not an upload key: {storage_key}")
    return parts[1]
