"""Object storage supporting local filesystem, S3 and S3-compatible backends.

Backends are synchronous (boto3 is); ``StorageService`` is the async facade
the pipeline and gateway use, running each call in a worker thread.
"""

import asyncio
import io
import logging
import mimetypes
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Optional

from streamvault.core.config import Settings

logger = logging.getLogger(__name__)

# Content types for streaming artifacts; mimetypes does not know most of them
CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
    ".aac": "audio/aac",
    ".mp4": "video/mp4",
    ".vtt": "text/vtt",
    ".srt": "application/x-subrip",
}


def guess_content_type(key: str) -> str:
    """Guess the content type of an object from its key."""
    suffix = Path(key).suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    mime, _ = mimetypes.guess_type(key)
    return mime or "application/octet-stream"


class StorageError(Exception):
    """Raised when an object cannot be read from storage."""


@dataclass
class StorageResult:
    """Result of a storage write."""
    success: bool
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    cloudfront_url: Optional[str] = None
    cloudfront_key_pair_id: Optional[str] = None
    cloudfront_private_key_path: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorageConfig":
        return cls(
            backend=settings.STORAGE_BACKEND,
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=settings.LOCAL_STORAGE_PATH,
            cloudfront_url=settings.CLOUDFRONT_URL,
            cloudfront_key_pair_id=settings.CLOUDFRONT_KEY_PAIR_ID,
            cloudfront_private_key_path=settings.CLOUDFRONT_PRIVATE_KEY_PATH,
        )


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        """Upload a local file."""

    @abstractmethod
    def upload_fileobj(self, fileobj: BinaryIO, key: str, content_type: str) -> StorageResult:
        """Upload a file object."""

    @abstractmethod
    def read(self, key: str) -> bytes:
        """Read a whole object, raising StorageError when it cannot be read."""

    @abstractmethod
    def download(self, key: str, destination: str) -> bool:
        """Download an object to a local path."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def signed_url(self, key: str, expires_in: int) -> str:
        """Get a time-limited URL for an object."""

    @abstractmethod
    def presigned_post(
        self,
        key: str,
        content_type: str,
        max_bytes: int,
        expires_in: int,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict:
        """Get a presigned POST form for a direct browser upload."""


class LocalStorage(StorageBackend):
    """Local filesystem storage backend for development."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(file_path, dest_path)
            return StorageResult(success=True, key=key, file_size=dest_path.stat().st_size)
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def upload_fileobj(self, fileobj: BinaryIO, key: str, content_type: str) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with open(dest_path, "wb") as f:
                shutil.copyfileobj(fileobj, f)
            return StorageResult(success=True, key=key, file_size=dest_path.stat().st_size)
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def read(self, key: str) -> bytes:
        try:
            return self._get_full_path(key).read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read object {key}") from e

    def download(self, key: str, destination: str) -> bool:
        src_path = self._get_full_path(key)
        if not src_path.exists():
            return False
        shutil.copy2(src_path, destination)
        return True

    def exists(self, key: str) -> bool:
        return self._get_full_path(key).exists()

    def signed_url(self, key: str, expires_in: int) -> str:
        return self._get_full_path(key).absolute().as_uri()

    def presigned_post(
        self,
        key: str,
        content_type: str,
        max_bytes: int,
        expires_in: int,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict:
        fields = {"key": key, "Content-Type": content_type}
        for name, value in (metadata or {}).items():
            fields[f"x-amz-meta-{name}"] = value
        return {"url": self.base_path.absolute().as_uri(), "fields": fields}


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None
        self._cloudfront_signer = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
                "config": BotoConfig(signature_version="s3v4"),
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def _get_cloudfront_signer(self):
        """CloudFront signer, when a key pair is configured."""
        if self._cloudfront_signer is None and self.config.cloudfront_key_pair_id:
            from botocore.signers import CloudFrontSigner
            from cryptography.hazmat.primitives import hashes, serialization
            from cryptography.hazmat.primitives.asymmetric import padding

            key_bytes = Path(self.config.cloudfront_private_key_path or "").read_bytes()
            private_key = serialization.load_pem_private_key(key_bytes, password=None)

            def rsa_signer(message: bytes) -> bytes:
                return private_key.sign(message, padding.PKCS1v15(), hashes.SHA1())

            self._cloudfront_signer = CloudFrontSigner(
                self.config.cloudfront_key_pair_id, rsa_signer
            )
        return self._cloudfront_signer

    def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()
            file_size = Path(file_path).stat().st_size
            with open(file_path, "rb") as f:
                response = client.put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    ContentType=content_type,
                )
            return StorageResult(
                success=True,
                key=key,
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def upload_fileobj(self, fileobj: BinaryIO, key: str, content_type: str) -> StorageResult:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()
            fileobj.seek(0, 2)
            file_size = fileobj.tell()
            fileobj.seek(0)
            response = client.put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=fileobj,
                ContentType=content_type,
            )
            return StorageResult(
                success=True,
                key=key,
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def read(self, key: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._get_client().get_object(Bucket=self.config.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot read object {key}") from e

    def download(self, key: str, destination: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().download_file(self.config.bucket, key, destination)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Download of {key} failed: {e}")
            return False

    def exists(self, key: str) -> bool:
        """Raises StorageError when the answer is unknown (denied, throttled)."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Cannot check {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Cannot check {key}: {e}") from e

    def signed_url(self, key: str, expires_in: int) -> str:
        signer = self._get_cloudfront_signer()
        if signer is not None and self.config.cloudfront_url:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
            return signer.generate_presigned_url(
                f"{self.config.cloudfront_url.rstrip('/')}/{key}",
                date_less_than=expires_at,
            )

        return self._get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def presigned_post(
        self,
        key: str,
        content_type: str,
        max_bytes: int,
        expires_in: int,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict:
        fields = {"Content-Type": content_type}
        conditions: list = [
            ["content-length-range", 0, max_bytes],
            {"Content-Type": content_type},
        ]
        for name, value in (metadata or {}).items():
            fields[f"x-amz-meta-{name}"] = value
            conditions.append({f"x-amz-meta-{name}": value})

        return self._get_client().generate_presigned_post(
            Bucket=self.config.bucket,
            Key=key,
            Fields=fields,
            Conditions=conditions,
            ExpiresIn=expires_in,
        )


def create_backend(config: StorageConfig) -> StorageBackend:
    """Create the storage backend named by the configuration."""
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


class StorageService:
    """Async storage facade over a synchronous backend."""

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorageService":
        return cls(create_backend(StorageConfig.from_settings(settings)))

    async def get(self, key: str) -> bytes:
        """Read a whole object."""
        return await asyncio.to_thread(self._backend.read, key)

    async def put(self, key: str, content: bytes, content_type: Optional[str] = None) -> StorageResult:
        """Write a whole object from memory."""
        return await asyncio.to_thread(
            self._backend.upload_fileobj,
            io.BytesIO(content),
            key,
            content_type or guess_content_type(key),
        )

    async def upload_file(self, file_path: str, key: str, content_type: Optional[str] = None) -> StorageResult:
        """Upload a local file."""
        return await asyncio.to_thread(
            self._backend.upload,
            file_path,
            key,
            content_type or guess_content_type(key),
        )

    async def download_file(self, key: str, destination: str) -> bool:
        """Download an object to a local path."""
        return await asyncio.to_thread(self._backend.download, key, destination)

    async def exists(self, key: str) -> bool:
        """Check if an object exists."""
        return await asyncio.to_thread(self._backend.exists, key)

    async def signed_url(self, key: str, expires_in: int) -> str:
        """Get a freshly signed, time-limited URL for an object."""
        return await asyncio.to_thread(self._backend.signed_url, key, expires_in)

    async def presigned_post(
        self,
        key: str,
        content_type: str,
        max_bytes: int,
        expires_in: int,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict:
        """Get a presigned POST form for a direct upload."""
        return await asyncio.to_thread(
            self._backend.presigned_post, key, content_type, max_bytes, expires_in, metadata
        )
