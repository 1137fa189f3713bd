"""Asset repository for database operations."""

import uuid
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from streamvault.modules.pipeline.state import (
    ALLOWED_PREDECESSORS,
    AssetStatus,
    InvalidTransition,
)
from streamvault.modules.video.models import Asset

# Columns a status update may touch besides ``status`` itself
UPDATABLE_FIELDS = frozenset({"renditions", "master_manifest_key", "captions", "error_message"})


class AssetNotFoundError(Exception):
    """Raised when no asset matches the given key or ID."""


class PersistenceFailure(Exception):
    """Raised when the relational store cannot complete an operation."""


class AssetRepository:
    """Repository for Asset CRUD operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, user_id: str, storage_key: str, mime_type: str) -> Asset:
        """Register a new asset in ``registered`` status."""
        asset = Asset(
            user_id=user_id,
            storage_key=storage_key,
            mime_type=mime_type,
            status=AssetStatus.REGISTERED.value,
            renditions=[],
        )
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def get_by_id(self, asset_id: uuid.UUID) -> Optional[Asset]:
        result = await self.session.execute(select(Asset).where(Asset.id == asset_id))
        return result.scalar_one_or_none()

    async def get_by_storage_key(self, storage_key: str) -> Optional[Asset]:
        result = await self.session.execute(
            select(Asset).where(Asset.storage_key == storage_key)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[Asset]:
        result = await self.session.execute(
            select(Asset).where(Asset.user_id == user_id).order_by(Asset.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        storage_key: str,
        status: AssetStatus,
        **fields: Any,
    ) -> None:
        """Move an asset to ``status`` and set any given fields in one UPDATE.

        The statement only matches rows whose current status may legally
        precede ``status``, so concurrent writers cannot move an asset
        backwards.

        Args:
            storage_key: Unique storage key of the asset
            status: Target status
            **fields: Subset of renditions, master_manifest_key, captions,
                error_message

        Raises:
            AssetNotFoundError: If no asset has this key
            InvalidTransition: If the asset's current status cannot precede ``status``
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable with status: {sorted(unknown)}")

        predecessors = [s.value for s in ALLOWED_PREDECESSORS[status]]
        result = await self.session.execute(
            update(Asset)
            .where(Asset.storage_key == storage_key, Asset.status.in_(predecessors))
            .values(status=status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = await self.session.execute(
            select(Asset.status).where(Asset.storage_key == storage_key)
        )
        current_status = current.scalar_one_or_none()
        if current_status is None:
            raise AssetNotFoundError(f"Asset {storage_key} not found")
        raise InvalidTransition(AssetStatus(current_status), status)


class AssetStore:
    """Relational store used by the worker: one short transaction per call.

    Database driver errors are surfaced as PersistenceFailure so callers can
    retry them without also retrying lifecycle violations.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get_by_storage_key(self, storage_key: str) -> Asset:
        try:
            async with self._session_maker() as session:
                asset = await AssetRepository(session).get_by_storage_key(storage_key)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Loading asset failed: {e}") from e
        if asset is None:
            raise AssetNotFoundError(f"Asset {storage_key} not found")
        return asset

    async def update_status(self, storage_key: str, status: AssetStatus, **fields: Any) -> None:
        try:
            async with self._session_maker() as session:
                await AssetRepository(session).update_status(storage_key, status, **fields)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Status update to {status.value} failed: {e}") from e
