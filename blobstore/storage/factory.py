"""
Storage driver factory.

Creates the appropriate backend store and driver based on configuration.
The caller owns the returned driver and must close it at shutdown.
"""

from blobstore.core.config import Settings, get_settings
from blobstore.core.exceptions import ConfigurationError
from blobstore.core.logging import get_logger
from blobstore.storage.driver import Driver
from blobstore.storage.local import DiskStore
from blobstore.storage.presigned import PresignedURLCache
from blobstore.storage.s3 import S3Store

logger = get_logger(__name__)

SUPPORTED_BACKENDS = ("local", "s3")


async def open_driver(settings: Settings | None = None) -> Driver:
    """
    Open the configured storage driver.

    Args:
        settings: Application settings. Uses default if None.

    Returns:
        Configured Driver instance.

    Raises:
        ConfigurationError: If the storage backend is unknown or misconfigured.
        StorageError: If the backend can't be opened.
    """
    if settings is None:
        settings = get_settings()

    backend = settings.storage_backend
    if backend == "s3":
        return await open_s3_driver(settings)
    if backend == "local":
        return await open_local_driver(settings)

    raise ConfigurationError(
        message=f"Invalid storage backend: {backend}",
        details={"backend": backend, "supported": list(SUPPORTED_BACKENDS)},
    )


async def open_local_driver(settings: Settings) -> Driver:
    """Open a driver over a local disk store."""
    # The lock file lives in the storage dir itself. Callers never choose
    # the reserved key, so it can't be overwritten by a stored value.
    disk = await DiskStore.open(
        settings.storage_local_base_path,
        write_buffer_size=settings.storage_local_write_buffer_size,
    )

    logger.info(
        "storage_driver_opened",
        backend="local",
        base_path=str(disk.base_path),
    )
    return Driver(storage=disk)


async def open_s3_driver(settings: Settings) -> Driver:
    """Open a driver over an S3 store with a started presigned URL cache."""
    if not settings.storage_s3_bucket_name:
        raise ConfigurationError(
            message="S3 storage requires STORAGE_S3_BUCKET_NAME to be set",
            details={"backend": "s3"},
        )
    if not settings.storage_s3_access_key or not settings.storage_s3_secret_key:
        raise ConfigurationError(
            message="S3 storage requires STORAGE_S3_ACCESS_KEY and STORAGE_S3_SECRET_KEY to be set",
            details={"backend": "s3"},
        )

    # ttl should be lower than the expiry used by S3 to avoid serving invalid URLs
    ttl = settings.storage_s3_url_cache_ttl
    sweep = settings.storage_s3_url_cache_sweep_seconds
    if not 0 < sweep < ttl:
        raise ConfigurationError(
            message="Presigned URL cache sweep period must be positive and shorter than the cache TTL",
            details={
                "url_validity_seconds": settings.storage_s3_url_validity_seconds,
                "sweep_seconds": sweep,
                "cache_ttl_seconds": ttl,
            },
        )
    if settings.storage_s3_url_cache_capacity <= 0:
        raise ConfigurationError(
            message="Presigned URL cache capacity must be positive",
            details={"capacity": settings.storage_s3_url_cache_capacity},
        )

    s3 = await S3Store.open(
        endpoint=settings.storage_s3_endpoint,
        bucket_name=settings.storage_s3_bucket_name,
        access_key=settings.storage_s3_access_key,
        secret_key=settings.storage_s3_secret_key,
        secure=settings.storage_s3_use_ssl,
        region=settings.storage_s3_region,
        max_attempts=settings.storage_s3_max_attempts,
    )

    presigned_cache = PresignedURLCache(
        ttl=ttl,
        capacity=settings.storage_s3_url_cache_capacity,
    )
    presigned_cache.start(sweep)

    logger.info(
        "storage_driver_opened",
        backend="s3",
        bucket=settings.storage_s3_bucket_name,
        proxy=settings.storage_s3_proxy,
    )
    return Driver(
        storage=s3,
        proxy=settings.storage_s3_proxy,
        bucket=settings.storage_s3_bucket_name,
        presigned_cache=presigned_cache,
        url_validity=settings.storage_s3_url_validity_seconds,
    )
