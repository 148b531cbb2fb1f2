from typing import Optional
from pathlib import Path
from pydantic import validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Lightbox"
    APP_VERSION: str = "0.4.0"

    # Root directory for all Lightbox data
    # Can be overridden with LIGHTBOX_ROOT_DIR environment variable
    ROOT_DIR: Path = Path.home() / ".lightbox"
    # Full SQLAlchemy URL; defaults to the SQLite file under meta/
    DATABASE_URL: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    # Uploads
    ENABLE_URL_UPLOAD: bool = False
    URL_UPLOAD_TIMEOUT_S: float = 30.0
    MAX_UPLOAD_BYTES: int = 200 * 1024 * 1024

    # Job bus / worker pool
    # Total handler attempts per job, first retry after the initial interval
    JOB_MAX_ATTEMPTS: int = 3
    JOB_RETRY_INITIAL_INTERVAL_S: float = 2.0
    JOB_RETRY_MULTIPLIER: float = 2.0
    JOB_DEFAULT_CONCURRENCY: int = 2
    JOB_WORKER_THREADS: int = 16
    JOB_RECOVER_ON_START: bool = True

    # Transform cache garbage collection
    TRANSFORM_CACHE_GC_ENABLED: bool = True
    TRANSFORM_CACHE_MAX_SIZE_BYTES: int = 10 * 1024 * 1024 * 1024
    TRANSFORM_CACHE_MAX_AGE_DAYS: int = 30
    TRANSFORM_CACHE_GC_INTERVAL_MINUTES: int = 1440
    TRANSFORM_CACHE_CLEAR_PERMANENT: bool = False

    # Event fanout
    EVENT_HISTORY_SIZE: int = 512
    EVENT_CLIENT_BUFFER: int = 256
    EVENT_PING_INTERVAL_S: float = 30.0

    # Download tokens
    DOWNLOAD_TOKEN_DEFAULT_TTL_S: int = 15 * 60
    DOWNLOAD_REDIRECT_TTL_S: int = 5 * 60
    DOWNLOAD_TOKEN_QUOTA: int = 500

    # Image library
    IMAGE_MAX_PIXELS: Optional[int] = 178956970
    IMAGE_LIBRARY_LOG_LEVEL: str = "WARNING"

    # Principal headers forwarded by the upstream auth layer
    TRUSTED_PRINCIPAL_HEADERS: bool = True

    @validator("LOG_LEVEL", "IMAGE_LIBRARY_LOG_LEVEL", pre=True)
    def normalize_level(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip().upper()
        raise ValueError(v)

    @validator("JOB_DEFAULT_CONCURRENCY")
    def check_concurrency(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("JOB_DEFAULT_CONCURRENCY must be between 1 and 100")
        return v

    class Config:
        case_sensitive = True
        env_prefix = "LIGHTBOX_"

    @property
    def library_dir(self) -> Path:
        """Directory holding one folder per live image."""
        return self.ROOT_DIR / "library"

    @property
    def trash_dir(self) -> Path:
        """Mirror of the library layout for soft-deleted images."""
        return self.ROOT_DIR / "trash"

    @property
    def meta_dir(self) -> Path:
        """Directory for metadata files (database)."""
        return self.ROOT_DIR / "meta"

    @property
    def database_path(self) -> Path:
        return self.meta_dir / "lightbox.db"

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL or f"sqlite:///{self.database_path}"

    def ensure_dirs(self) -> None:
        """Create all required directories if they don't exist."""
        self.ROOT_DIR.mkdir(parents=True, exist_ok=True)
        self.meta_dir.mkdir(exist_ok=True)
        self.library_dir.mkdir(exist_ok=True)
        self.trash_dir.mkdir(exist_ok=True)


settings = Settings()
