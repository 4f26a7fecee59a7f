"""Storage driver over local filesystem and S3 backends."""

from blobstore.storage.base import LOCK_KEY, BackendStore, ReadStream
from blobstore.storage.driver import Driver
from blobstore.storage.factory import open_driver, open_local_driver, open_s3_driver
from blobstore.storage.local import DiskStore
from blobstore.storage.presigned import PresignedURL, PresignedURLCache
from blobstore.storage.s3 import S3Store

__all__ = [
    "LOCK_KEY",
    "BackendStore",
    "ReadStream",
    "Driver",
    "DiskStore",
    "S3Store",
    "PresignedURL",
    "PresignedURLCache",
    "open_driver",
    "open_local_driver",
    "open_s3_driver",
]
