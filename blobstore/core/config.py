"""
Storage configuration using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Storage settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Backend Selection
    # -------------------------------------------------------------------------
    # Validated by the factory so that a bad name fails driver construction
    # with a descriptive error rather than a settings parse error.
    storage_backend: str = Field(
        default="local", description="Storage backend type (local or s3)"
    )

    # -------------------------------------------------------------------------
    # Local Storage
    # -------------------------------------------------------------------------
    storage_local_base_path: str = Field(
        default="/var/lib/blobstore", description="Local storage base path"
    )
    storage_local_write_buffer_size: int = Field(
        default=16 * 1024, description="Write buffer size in bytes"
    )

    # -------------------------------------------------------------------------
    # S3/MinIO Storage
    # -------------------------------------------------------------------------
    storage_s3_endpoint: str | None = Field(
        default=None, description="S3 endpoint (host[:port] or full URL)"
    )
    storage_s3_access_key: str | None = Field(default=None, description="S3 access key")
    storage_s3_secret_key: str | None = Field(default=None, description="S3 secret key")
    storage_s3_use_ssl: bool = Field(default=True, description="Use TLS for S3")
    storage_s3_bucket_name: str | None = Field(default=None, description="S3 bucket name")
    storage_s3_region: str = Field(default="us-east-1", description="S3 region")
    storage_s3_proxy: bool = Field(
        default=False,
        description="Serve objects through the application instead of presigned URLs",
    )
    storage_s3_max_attempts: int = Field(
        default=3, description="Max attempts for the S3 transport"
    )

    # -------------------------------------------------------------------------
    # Presigned URL Cache
    # -------------------------------------------------------------------------
    storage_s3_url_validity_seconds: int = Field(
        default=24 * 60 * 60, description="Presigned URL validity in seconds"
    )
    storage_s3_url_cache_sweep_seconds: int = Field(
        default=5 * 60, description="Presigned URL cache sweep period in seconds"
    )
    storage_s3_url_cache_capacity: int = Field(
        default=1000, description="Max cached presigned URLs"
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log format"
    )

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("storage_backend", mode="before")
    @classmethod
    def normalize_storage_backend(cls, v: str) -> str:
        """Lowercase and trim the backend name."""
        if isinstance(v, str):
            v = v.strip().lower()
        return v

    @property
    def storage_s3_url_cache_ttl(self) -> int:
        """Cache TTL, kept below the signature validity window."""
        return self.storage_s3_url_validity_seconds - self.storage_s3_url_cache_sweep_seconds


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
