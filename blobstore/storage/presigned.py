"""
Presigned URL value type and TTL cache.

Presigned URLs have a fixed validity window set when they are signed, so the
cache never extends an entry's lifetime on access. Entries are evicted by a
periodic sweep, and the cache TTL is kept below the signature validity so an
entry is gone before its signature lapses.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

from blobstore.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CAPACITY = 1000


def strip_to_origin(url: str) -> str:
    """Reduce a URL to its '[scheme]://[host]' origin."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, "", "", ""))


@dataclass(frozen=True)
class PresignedURL:
    """A presigned S3 URL with the time its signature expires."""

    url: str
    expiry: datetime  # link expires at this time

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme

    @property
    def host(self) -> str:
        return urlsplit(self.url).netloc

    @property
    def origin(self) -> str:
        return strip_to_origin(self.url)

    def __str__(self) -> str:
        return self.url


class PresignedURLCache:
    """
    Non-refreshing TTL cache of presigned URLs keyed by storage key.

    Reads peek at the map without touching entries. When full, the
    earliest-inserted entry is evicted first. Concurrent misses for the same
    key share a single in-flight signing call.
    """

    def __init__(
        self,
        ttl: float,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the cache.

        Args:
            ttl: Seconds an entry stays valid after insertion.
            capacity: Maximum number of entries.
            clock: Wall clock in seconds, used for insertion times and expiry.
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self.ttl = ttl
        self.capacity = capacity
        self.clock = clock
        self._entries: OrderedDict[str, tuple[PresignedURL, float]] = OrderedDict()
        self._pending: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: str, now: float) -> PresignedURL | None:
        """Read an entry without refreshing it. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, inserted_at = entry
        if now - inserted_at >= self.ttl:
            return None
        return value

    async def peek(self, key: str) -> PresignedURL | None:
        """Get a live entry for key, leaving its TTL untouched."""
        async with self._lock:
            return self._lookup(key, self.clock())

    async def set(self, key: str, value: PresignedURL) -> None:
        """Insert value for key, evicting the oldest entries when full."""
        async with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.capacity:
                self._entries.popitem(last=False)
            self._entries[key] = (value, self.clock())

    async def get_or_sign(
        self,
        key: str,
        sign: Callable[[], Awaitable[PresignedURL | None]],
    ) -> PresignedURL | None:
        """
        Return the cached URL for key, or sign and cache a new one.

        Signing runs in its own task, outside the lock. Callers that miss
        while that task is in flight share its result instead of signing
        again, and a cancelled caller doesn't cancel it for the others. A
        None result is not cached. An exception from sign() reaches every
        caller waiting on it.

        Args:
            key: Storage key.
            sign: Coroutine factory producing a fresh URL, or None on failure.

        Returns:
            PresignedURL, or None if signing failed.
        """
        async with self._lock:
            value = self._lookup(key, self.clock())
            if value is not None:
                return value

            pending = self._pending.get(key)
            if pending is None:
                pending = asyncio.ensure_future(self._sign_and_store(key, sign))
                self._pending[key] = pending

        return await asyncio.shield(pending)

    async def _sign_and_store(
        self,
        key: str,
        sign: Callable[[], Awaitable[PresignedURL | None]],
    ) -> PresignedURL | None:
        try:
            value = await sign()
            if value is not None:
                await self.set(key, value)
            return value
        finally:
            async with self._lock:
                self._pending.pop(key, None)

    async def sweep(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            now = self.clock()
            expired = [
                key
                for key, (_, inserted_at) in self._entries.items()
                if now - inserted_at >= self.ttl
            ]
            for key in expired:
                del self._entries[key]

        return len(expired)

    def start(self, frequency: float) -> None:
        """
        Start the background sweep task.

        Args:
            frequency: Seconds between sweeps. Must be shorter than the TTL.
        """
        if not 0 < frequency < self.ttl:
            raise ValueError("sweep frequency must be positive and shorter than ttl")
        if self._sweeper is not None:
            return

        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(frequency),
            name="presigned-url-cache-sweeper",
        )

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._sweeper is None:
            return

        sweeper, self._sweeper = self._sweeper, None
        sweeper.cancel()
        # wait() leaves a cancellation of the calling task to propagate
        await asyncio.wait([sweeper])
        if not sweeper.cancelled():
            sweeper.result()

    @property
    def running(self) -> bool:
        return self._sweeper is not None

    async def _sweep_forever(self, frequency: float) -> None:
        while True:
            await asyncio.sleep(frequency)
            removed = await self.sweep()
            if removed:
                logger.debug(
                    "presigned_url_cache_swept",
                    removed=removed,
                    remaining=len(self._entries),
                )
