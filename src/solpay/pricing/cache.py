"""TTL cache with single-flight loading.

Concurrent callers asking for the same missing key share one in-flight
fetch instead of each hitting the upstream source. Failed fetches are not
cached, so the next caller retries.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A cached value and the time it was stored."""

    value: T
    stored_at: float

    def is_fresh(self, ttl: float, now: float) -> bool:
        return now - self.stored_at < ttl


class SingleFlightCache(Generic[T]):
    """Keyed TTL cache where each key has at most one fetch in flight."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[T]] = {}
        self._inflight: dict[Hashable, asyncio.Task] = {}

    def peek(self, key: Hashable) -> Optional[CacheEntry[T]]:
        """Return the entry for a key without fetching (may be stale)."""
        return self._entries.get(key)

    async def get(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[T]],
        force: bool = False,
    ) -> T:
        """Get a value, loading it if missing, stale or ``force`` is set.

        Args:
            key: Cache key
            loader: Coroutine factory producing a fresh value
            force: Bypass a fresh entry (still joins an in-flight fetch)

        Returns:
            Cached or freshly loaded value

        Raises:
            Whatever the loader raises
        """
        entry = self._entries.get(key)
        if not force and entry is not None and entry.is_fresh(self.ttl, self._clock()):
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, loader))
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await loader()
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
            return value
        finally:
            self._inflight.pop(key, None)

    def set(self, key: Hashable, value: T) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when no key is given."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def stats(self) -> dict[str, Any]:
        return {"entries": len(self._entries), "inflight": len(self._inflight)}
