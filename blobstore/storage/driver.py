"""
Storage driver.

The Driver is the single entry point the rest of the application uses for
blob storage. Generic operations are delegated to the backend store. When the
backend can sign URLs and proxying is disabled, the Driver also hands out
cached presigned GET URLs and can probe the public origin of those URLs for a
content-security-policy.
"""

import mimetypes
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from blobstore.core.exceptions import CSPProbeError, StorageError
from blobstore.core.logging import get_logger
from blobstore.storage.base import LOCK_KEY, BackendStore, ReadStream, StreamSource
from blobstore.storage.presigned import PresignedURL, PresignedURLCache, strip_to_origin

logger = get_logger(__name__)

# Validity of presigned GET URLs handed to clients
URL_VALIDITY_SECONDS = 24 * 60 * 60

# Well-known key of the temporary object written by probe_csp_uri()
CSP_PROBE_KEY = "gotosocial-csp-probe"

# Only the scheme and host of the probe URL are used, never the link itself
CSP_PROBE_VALIDITY_SECONDS = 1


class Driver:
    """Backend-agnostic blob storage with S3 presigned URL support."""

    def __init__(
        self,
        storage: BackendStore,
        proxy: bool = False,
        bucket: str | None = None,
        presigned_cache: PresignedURLCache | None = None,
        url_validity: int = URL_VALIDITY_SECONDS,
    ) -> None:
        """
        Initialize the driver.

        Args:
            storage: Underlying backend store. Owned by the driver.
            proxy: Never issue presigned URLs, always serve bytes directly.
            bucket: S3 bucket name (S3 only).
            presigned_cache: Cache for presigned URLs (S3 only).
            url_validity: Validity of issued presigned URLs in seconds.
        """
        self.storage = storage
        self.proxy = proxy
        self.bucket = bucket
        self.presigned_cache = presigned_cache
        self.url_validity = url_validity

    async def __aenter__(self) -> "Driver":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def get(self, key: str) -> bytes:
        """Return the value bytes stored at key."""
        return await self.storage.read_bytes(key)

    async def get_stream(self, key: str) -> ReadStream:
        """Return a stream over the value at key. The caller must close it."""
        return await self.storage.read_stream(key)

    async def put(self, key: str, value: bytes) -> int:
        """Write value bytes at key. Raises AlreadyExistsError if key is taken."""
        return await self.storage.write_bytes(key, value)

    async def put_stream(self, key: str, source: StreamSource) -> int:
        """Write the bytes read from source at key."""
        return await self.storage.write_stream(key, source)

    async def delete(self, key: str) -> None:
        """Remove key and its value from storage."""
        await self.storage.remove(key)

    async def has(self, key: str) -> bool:
        """Check if key is in storage."""
        return await self.storage.stat(key)

    async def walk_keys(self, visitor: Callable[[str], Awaitable[None]]) -> None:
        """
        Call visitor for every stored key, skipping the store lock file.

        An exception raised by visitor stops the walk and propagates.
        """

        async def walk(key: str) -> None:
            if key == LOCK_KEY:
                return
            await visitor(key)

        await self.storage.walk_keys(walk)

    async def close(self) -> None:
        """Stop the URL cache sweeper and close the storage, releasing any file locks."""
        if self.presigned_cache is not None:
            await self.presigned_cache.stop()
        await self.storage.close()
        logger.info("storage_driver_closed", backend=type(self.storage).__name__)

    @property
    def presigning_enabled(self) -> bool:
        """Whether the driver issues presigned URLs (S3 without proxying)."""
        return not self.proxy and self.storage.supports_presigned_urls()

    async def url(self, key: str) -> PresignedURL | None:
        """
        Return a presigned GET URL for key.

        Returns None unless running on S3 storage with proxying disabled, or
        if signing fails. Callers fall back to fetching the bytes.
        """
        if not self.presigning_enabled:
            return None

        if self.presigned_cache is None:
            return await self._sign(key, time.time)

        cache = self.presigned_cache
        return await cache.get_or_sign(key, lambda: self._sign(key, cache.clock))

    async def _sign(self, key: str, clock: Callable[[], float]) -> PresignedURL | None:
        content_type, _ = mimetypes.guess_type(key)
        issued_at = clock()

        try:
            url = await self.storage.presigned_get_object(
                key,
                self.url_validity,
                response_content_type=content_type,
            )
        except Exception as e:
            # Fallback is to fetch the file, so the error is not returned.
            logger.debug("presigned_url_signing_failed", key=key, error=str(e))
            return None

        return PresignedURL(
            url=url,
            expiry=datetime.fromtimestamp(issued_at + self.url_validity, tz=timezone.utc),
        )

    async def probe_csp_uri(self) -> str:
        """
        Return a URI string that can be added to a content-security-policy
        to allow requests to endpoints served by this driver.

        If the driver is not backed by non-proxying S3, this returns an
        empty string. Otherwise it probes for the URI:

          1. Create an empty object in the bucket.
          2. Generate a presigned URL for that object.
          3. Extract '[scheme]://[host]' from the URL.
          4. Remove the object, logging a warning if that fails.
          5. Return the '[scheme]://[host]' string.

        Raises:
            CSPProbeError: If the probe object can't be created.
            PresignError: If the probe URL can't be signed.
        """
        if not self.presigning_enabled:
            return ""

        try:
            await self.put(CSP_PROBE_KEY, b"")
        except StorageError as e:
            raise CSPProbeError(
                message=f"Error putting file in bucket at key {CSP_PROBE_KEY}: {e}",
                details={"key": CSP_PROBE_KEY, "bucket": self.bucket},
            ) from e

        try:
            url = await self.storage.presigned_get_object(
                CSP_PROBE_KEY, CSP_PROBE_VALIDITY_SECONDS
            )
        finally:
            try:
                await self.delete(CSP_PROBE_KEY)
            except Exception as e:
                logger.warning(
                    "csp_probe_cleanup_failed",
                    key=CSP_PROBE_KEY,
                    bucket=self.bucket,
                    error=str(e),
                    hint="you may want to remove this file manually from your S3 bucket",
                )

        origin = strip_to_origin(url)
        logger.info("csp_probe_completed", origin=origin)
        return origin
