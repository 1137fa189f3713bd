"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "StreamVault API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Observability
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    OTLP_ENDPOINT: Optional[str] = None
    TRACING_CONSOLE_EXPORT: bool = False

    # Database - REQUIRED
    DATABASE_URL: str

    # Redis - REQUIRED (admission queue and Celery broker)
    REDIS_URL: str

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # CORS
    CORS_ORIGINS: list[str] = []

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True

    # CloudFront signed URLs (optional, replaces S3 presigned GETs when set)
    CLOUDFRONT_URL: Optional[str] = None
    CLOUDFRONT_KEY_PAIR_ID: Optional[str] = None
    CLOUDFRONT_PRIVATE_KEY_PATH: Optional[str] = None

    # Upload intake
    UPLOAD_URL_EXPIRE_SECONDS: int = 3600
    UPLOAD_MAX_BYTES: int = 5 * 1024 * 1024 * 1024  # 5 GiB
    STORAGE_EVENT_TOKEN: Optional[str] = None  # shared secret sent by the object-created hook

    # Admission queue
    ADMISSION_CEILING: int = 5
    ADMISSION_KEY_PREFIX: str = "admission"
    ADMISSION_ENTRY_MAX_AGE_SECONDS: int = 6 * 3600

    # Transcoding
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    HLS_SEGMENT_SECONDS: int = 6
    ENCODE_PRESET: str = "veryfast"
    ENCODE_CONCURRENCY_CAP: int = 4
    BANDWIDTH_FACTOR: float = 0.07
    SCRATCH_DIR: Optional[str] = None

    # Persistence retry (status writes from the worker)
    STATUS_RETRY_MAX_ATTEMPTS: int = 3
    STATUS_RETRY_INITIAL_DELAY: float = 0.5
    STATUS_RETRY_MAX_DELAY: float = 5.0

    # Captions / transcription
    OPENAI_API_KEY: str = ""
    TRANSCRIPTION_MODEL: str = "whisper-1"
    BASE_CAPTION_LANGUAGE: str = "en"
    LANGUAGE_SAMPLE_SECONDS: int = 30
    AUDIO_CHUNK_SECONDS: int = 600  # keeps each upload under the API file limit

    # Streaming gateway
    GATEWAY_BASE_URL: str = ""
    SIGNED_URL_TTL_SECONDS: int = 300
    MANIFEST_FETCH_TIMEOUT_SECONDS: float = 10.0

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    PIPELINE_TASK_TIME_LIMIT_SECONDS: int = 3 * 3600

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
