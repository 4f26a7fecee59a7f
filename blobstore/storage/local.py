"""
Local filesystem backend store.

Implements BackendStore on top of a directory tree. The directory is guarded
by an exclusive lock file so only one process serves it at a time.
"""

import asyncio
import fcntl
import os
from pathlib import Path

import aiofiles
import aiofiles.os

from blobstore.core.exceptions import AlreadyExistsError, NotFoundError, StorageError
from blobstore.storage.base import (
    LOCK_KEY,
    BackendStore,
    ReadStream,
    StreamSource,
    WalkFn,
    iter_source,
)

DEFAULT_WRITE_BUFFER_SIZE = 16 * 1024


class DiskStore(BackendStore):
    """Local filesystem storage implementation."""

    def __init__(
        self,
        base_path: Path,
        lock_fd: int,
        write_buffer_size: int = DEFAULT_WRITE_BUFFER_SIZE,
    ) -> None:
        """
        Initialize disk store. Use DiskStore.open() instead.

        Args:
            base_path: Resolved root directory for stored values.
            lock_fd: File descriptor holding the directory lock.
            write_buffer_size: Chunk size for streamed writes.
        """
        self.base_path = base_path
        self.write_buffer_size = write_buffer_size
        self._lock_fd = lock_fd

    @classmethod
    async def open(
        cls,
        base_path: str | Path,
        lock_file: str | Path | None = None,
        write_buffer_size: int = DEFAULT_WRITE_BUFFER_SIZE,
    ) -> "DiskStore":
        """
        Open (creating if needed) a disk store rooted at base_path.

        Args:
            base_path: Root directory for file storage.
            lock_file: Lock file path. Defaults to LOCK_KEY inside base_path.
            write_buffer_size: Chunk size for streamed writes.

        Raises:
            StorageError: If the directory can't be created or is locked.
        """
        base = Path(base_path).resolve()
        lock_path = Path(lock_file) if lock_file else base / LOCK_KEY

        try:
            await aiofiles.os.makedirs(base, exist_ok=True)
            lock_fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StorageError(
                message=f"Failed to open disk storage: {e}",
                details={"base_path": str(base)},
            ) from e

        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(lock_fd)
            raise StorageError(
                message="Disk storage is locked by another process",
                details={"base_path": str(base), "lock_file": str(lock_path)},
            ) from e

        return cls(base, lock_fd, write_buffer_size=write_buffer_size)

    def _get_full_path(self, key: str) -> Path:
        """Get full filesystem path for a key."""
        # Prevent directory traversal attacks
        clean_key = key.lstrip("/").lstrip("\\")
        full_path = (self.base_path / clean_key).resolve()

        if full_path == self.base_path or not full_path.is_relative_to(self.base_path):
            raise StorageError(
                message="Invalid storage key",
                details={"key": key, "reason": "Path traversal detected"},
            )

        return full_path

    async def _create_file(self, key: str, full_path: Path):
        """Exclusively create the value file, making parent directories as needed."""
        try:
            await aiofiles.os.makedirs(full_path.parent, exist_ok=True)
        except (FileExistsError, NotADirectoryError) as e:
            # A parent component is itself a stored value
            raise StorageError(
                message="Invalid storage key",
                details={"key": key, "reason": "Parent path is a stored value"},
            ) from e
        except OSError as e:
            raise StorageError(
                message=f"Failed to write file: {e}",
                details={"key": key},
            ) from e

        try:
            return await aiofiles.open(full_path, "xb")
        except FileExistsError as e:
            if await aiofiles.os.path.isdir(full_path):
                raise StorageError(
                    message="Invalid storage key",
                    details={"key": key, "reason": "Path is a directory"},
                ) from e
            raise AlreadyExistsError(key) from e
        except OSError as e:
            raise StorageError(
                message=f"Failed to write file: {e}",
                details={"key": key},
            ) from e

    async def read_bytes(self, key: str) -> bytes:
        """Read value from local storage."""
        full_path = self._get_full_path(key)

        try:
            async with aiofiles.open(full_path, "rb") as f:
                return await f.read()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise NotFoundError(key) from e
        except OSError as e:
            raise StorageError(
                message=f"Failed to read file: {e}",
                details={"key": key},
            ) from e

    async def read_stream(self, key: str) -> ReadStream:
        """Open value file for streaming."""
        full_path = self._get_full_path(key)

        try:
            f = await aiofiles.open(full_path, "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise NotFoundError(key) from e
        except OSError as e:
            raise StorageError(
                message=f"Failed to open file: {e}",
                details={"key": key},
            ) from e

        return ReadStream(key, f)

    async def write_bytes(self, key: str, value: bytes) -> int:
        """Write value to a new file."""
        full_path = self._get_full_path(key)

        f = await self._create_file(key, full_path)
        try:
            return await f.write(value)
        except OSError as e:
            raise StorageError(
                message=f"Failed to write file: {e}",
                details={"key": key},
            ) from e
        finally:
            await f.close()

    async def write_stream(self, key: str, source: StreamSource) -> int:
        """Write value to a new file in write_buffer_size chunks."""
        full_path = self._get_full_path(key)

        f = await self._create_file(key, full_path)

        written = 0
        try:
            try:
                async for chunk in iter_source(source, self.write_buffer_size):
                    written += await f.write(chunk)
            finally:
                await f.close()
        except BaseException as e:
            # Don't leave a truncated value behind
            try:
                await aiofiles.os.remove(full_path)
            except OSError:
                pass
            if isinstance(e, OSError):
                raise StorageError(
                    message=f"Failed to write file: {e}",
                    details={"key": key},
                ) from e
            raise

        return written

    async def remove(self, key: str) -> None:
        """Delete file and prune empty parent directories."""
        full_path = self._get_full_path(key)

        if not await aiofiles.os.path.isfile(full_path):
            raise NotFoundError(key)

        try:
            await aiofiles.os.remove(full_path)
        except FileNotFoundError as e:
            raise NotFoundError(key) from e
        except OSError as e:
            raise StorageError(
                message=f"Failed to delete file: {e}",
                details={"key": key},
            ) from e

        # Clean up empty parent directories
        parent = full_path.parent
        while parent != self.base_path:
            try:
                if await aiofiles.os.listdir(parent):
                    break
                await aiofiles.os.rmdir(parent)
                parent = parent.parent
            except OSError:
                break

    async def stat(self, key: str) -> bool:
        """Check if file exists."""
        full_path = self._get_full_path(key)
        return await aiofiles.os.path.isfile(full_path)

    async def walk_keys(self, walk_fn: WalkFn) -> None:
        """Walk every file under the base path."""
        keys = await asyncio.to_thread(self._list_keys)
        for key in keys:
            await walk_fn(key)

    def _list_keys(self) -> list[str]:
        return [
            (Path(dirpath) / name).relative_to(self.base_path).as_posix()
            for dirpath, _dirnames, filenames in os.walk(
                self.base_path, onerror=self._walk_error
            )
            for name in filenames
        ]

    def _walk_error(self, e: OSError) -> None:
        raise StorageError(
            message=f"Failed to walk storage: {e}",
            details={"base_path": str(self.base_path)},
        ) from e

    async def close(self) -> None:
        """Release the directory lock."""
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
