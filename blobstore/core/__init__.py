"""Core module - Configuration, logging, and exceptions."""

from blobstore.core.config import Settings, get_settings
from blobstore.core.exceptions import (
    AlreadyExistsError,
    BlobStoreError,
    ConfigurationError,
    CSPProbeError,
    NotFoundError,
    PresignError,
    StorageError,
)

__all__ = [
    "Settings",
    "get_settings",
    "BlobStoreError",
    "ConfigurationError",
    "StorageError",
    "NotFoundError",
    "AlreadyExistsError",
    "PresignError",
    "CSPProbeError",
]
