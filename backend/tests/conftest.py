"""Shared test configuration and doubles.

Settings are read at import time, so required values are defaulted here
before any ``streamvault`` module is imported.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_JSON", "false")

from contextlib import asynccontextmanager  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from streamvault.core.config import settings  # noqa: E402
from streamvault.core.database import Base, create_session_maker  # noqa: E402
from streamvault.core.storage import StorageResult  # noqa: E402
from streamvault.modules.video import models  # noqa: E402,F401


class InMemoryStorage:
    """Async double of StorageService keeping objects in a dict."""

    def __init__(self, objects: Optional[dict[str, bytes]] = None):
        self.objects: dict[str, bytes] = dict(objects or {})
        self.uploads: list[str] = []
        self.fail_keys: set[str] = set()

    async def get(self, key: str) -> bytes:
        return self.objects[key]

    async def put(self, key: str, content: bytes, content_type: Optional[str] = None) -> StorageResult:
        if key in self.fail_keys:
            return StorageResult(success=False, key=key, error_message="write refused")
        self.objects[key] = content
        self.uploads.append(key)
        return StorageResult(success=True, key=key, file_size=len(content))

    async def upload_file(self, file_path: str, key: str, content_type: Optional[str] = None) -> StorageResult:
        with open(file_path, "rb") as f:
            return await self.put(key, f.read(), content_type)

    async def download_file(self, key: str, destination: str) -> bool:
        if key not in self.objects:
            return False
        with open(destination, "wb") as f:
            f.write(self.objects[key])
        return True

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def signed_url(self, key: str, expires_in: int) -> str:
        return f"https://cdn.example.com/{key}?Expires={expires_in}&Signature=sig"

    async def presigned_post(self, key, content_type, max_bytes, expires_in, metadata=None) -> dict:
        fields = {"key": key, "Content-Type": content_type}
        for name, value in (metadata or {}).items():
            fields[f"x-amz-meta-{name}"] = value
        return {"url": "https://uploads.example.com", "fields": fields}


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@asynccontextmanager
async def sqlite_session_maker():
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield create_session_maker(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_maker():
    async with sqlite_session_maker() as maker:
        yield maker


def create_access_token(
    user_id: str,
    expires_delta: timedelta = timedelta(minutes=30),
    token_type: str = "access",
) -> str:
    """Mint a token the way the account service does."""
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + expires_delta,
        "type": token_type,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
