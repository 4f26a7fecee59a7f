"""
Custom exceptions for blobstore.

All exceptions inherit from BlobStoreError and carry a stable error code
and structured details for logging.
"""

from typing import Any


class BlobStoreError(Exception):
    """Base exception for all blobstore errors."""

    error_code: str = "INTERNAL_ERROR"
    message: str = "An internal error occurred"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> None:
        self.message = message or self.message
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(BlobStoreError):
    """Raised when the storage driver cannot be built from configuration."""

    error_code = "CONFIGURATION_ERROR"
    message = "Invalid storage configuration"


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(BlobStoreError):
    """Raised when a storage operation fails."""

    error_code = "STORAGE_ERROR"
    message = "Storage operation failed"


class NotFoundError(StorageError):
    """Raised when a key is not found in storage."""

    error_code = "NOT_FOUND"
    message = "Key not found in storage"

    def __init__(self, key: str) -> None:
        super().__init__(
            message=f"Key not found: {key}",
            details={"key": key},
        )
        self.key = key


class AlreadyExistsError(StorageError):
    """Raised when writing to a key that already exists."""

    error_code = "ALREADY_EXISTS"
    message = "Key already exists in storage"

    def __init__(self, key: str) -> None:
        super().__init__(
            message=f"Key already exists: {key}",
            details={"key": key},
        )
        self.key = key


class PresignError(StorageError):
    """Raised when a presigned URL cannot be generated."""

    error_code = "PRESIGN_ERROR"
    message = "Failed to generate presigned URL"


class CSPProbeError(StorageError):
    """Raised when the CSP probe object cannot be created."""

    error_code = "CSP_PROBE_ERROR"
    message = "Failed to probe storage for CSP origin"
