"""
Abstract base class for backend stores.

Provides a consistent key/value interface for both local filesystem and S3
storage. The Driver only ever talks to a BackendStore through this contract.
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, BinaryIO, Callable

from blobstore.core.exceptions import PresignError

# Reserved key used by the disk store for its lock file.
LOCK_KEY = "store.lock"

# Chunk size used when iterating over a ReadStream.
READ_CHUNK_SIZE = 64 * 1024

WalkFn = Callable[[str], Awaitable[None]]

# Sync or async binary file-like object, or an async iterable of byte chunks.
StreamSource = BinaryIO | AsyncIterable[bytes]


class ReadStream:
    """
    Readable stream over a stored value.

    The caller owns the stream and must close it, either explicitly with
    ``await stream.close()`` or by using it as an async context manager.
    """

    def __init__(self, key: str, body: Any) -> None:
        self.key = key
        self._body = body
        self._closed = False

    async def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes, or everything that is left if negative."""
        if size < 0:
            return await self._body.read()
        return await self._body.read(size)

    async def close(self) -> None:
        """Release the underlying file handle or HTTP response."""
        if self._closed:
            return
        self._closed = True
        result = self._body.close()
        if inspect.isawaitable(result):
            await result

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "ReadStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        while chunk := await self.read(READ_CHUNK_SIZE):
            yield chunk


async def iter_source(source: StreamSource, chunk_size: int) -> AsyncIterator[bytes]:
    """
    Iterate over a stream source in chunks.

    Args:
        source: File-like object (sync or async ``read``) or async iterable.
        chunk_size: Read size for file-like sources.

    Yields:
        Non-empty chunks of bytes.
    """
    if hasattr(source, "read"):
        while True:
            chunk = source.read(chunk_size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                break
            yield chunk
    else:
        async for chunk in source:
            if chunk:
                yield chunk


class BackendStore(ABC):
    """Abstract base class for key/value backend stores."""

    @abstractmethod
    async def read_bytes(self, key: str) -> bytes:
        """
        Read the full value stored at key.

        Args:
            key: Storage key.

        Returns:
            Value bytes.

        Raises:
            NotFoundError: If key doesn't exist.
            StorageError: If the read fails.
        """
        ...

    @abstractmethod
    async def read_stream(self, key: str) -> ReadStream:
        """
        Open a readable stream over the value at key.

        Args:
            key: Storage key.

        Returns:
            ReadStream owned by the caller.

        Raises:
            NotFoundError: If key doesn't exist.
        """
        ...

    @abstractmethod
    async def write_bytes(self, key: str, value: bytes) -> int:
        """
        Write value at key. Existing keys are never overwritten.

        Args:
            key: Storage key.
            value: Value bytes.

        Returns:
            Number of bytes written.

        Raises:
            AlreadyExistsError: If key already exists.
            StorageError: If the write fails.
        """
        ...

    @abstractmethod
    async def write_stream(self, key: str, source: StreamSource) -> int:
        """
        Write a value read from source at key, without buffering it whole.

        Args:
            key: Storage key.
            source: File-like object or async iterable of bytes.

        Returns:
            Number of bytes written.

        Raises:
            AlreadyExistsError: If key already exists.
            StorageError: If the write fails.
        """
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """
        Remove key and its value.

        Raises:
            NotFoundError: If key doesn't exist.
        """
        ...

    @abstractmethod
    async def stat(self, key: str) -> bool:
        """Check whether key exists."""
        ...

    @abstractmethod
    async def walk_keys(self, walk_fn: WalkFn) -> None:
        """
        Call walk_fn for every stored key in backend enumeration order.

        An exception raised by walk_fn stops the walk and propagates.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources (file locks, client connections)."""
        ...

    def supports_presigned_urls(self) -> bool:
        """Whether this backend can issue presigned GET URLs."""
        return False

    async def presigned_get_object(
        self,
        key: str,
        expires_in: int,
        response_content_type: str | None = None,
    ) -> str:
        """
        Generate a presigned GET URL for key.

        Backends that support presigned URLs override this together with
        supports_presigned_urls().

        Raises:
            PresignError: If the URL cannot be generated.
        """
        raise PresignError(
            message=f"{type(self).__name__} does not support presigned URLs",
            details={"key": key},
        )
