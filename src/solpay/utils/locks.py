"""Concurrency control utilities.

Provides keyed locking so check-then-act sequences against one resource
(a deposit, a sponsor wallet, a quote) run as a single critical section.
Different keys never block each other.
"""

import asyncio
import logging
from collections.abc import Hashable
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyedLock:
    """Registry of asyncio locks, one per key.

    Example:
        sweep_locks = KeyedLock("sweep")
        async with sweep_locks.hold(deposit_id, operation="sweep"):
            ...
    """

    def __init__(self, name: str, timeout: Optional[float] = 30.0):
        """Initialize the registry.

        Args:
            name: Namespace used in log messages
            timeout: Default maximum wait per acquisition (None = wait forever)
        """
        self.name = name
        self.timeout = timeout
        self._locks: dict[Hashable, asyncio.Lock] = {}
        # Holders plus waiters per key; an entry is dropped when this reaches zero
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, key: Hashable) -> asyncio.Lock:
        """Get or create the lock for a key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: Hashable) -> bool:
        """Check whether the lock for a key is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self,
        key: Hashable,
        timeout: Optional[float] = None,
        operation: str = "operation",
    ) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired in time
        """
        lock = self.get(key)
        wait = timeout if timeout is not None else self.timeout
        self._users[key] = self._users.get(key, 0) + 1

        try:
            try:
                if wait:
                    await asyncio.wait_for(lock.acquire(), timeout=wait)
                else:
                    await lock.acquire()
            except asyncio.TimeoutError:
                logger.warning(f"Lock timeout for {self.name}:{key} after {wait}s: {operation}")
                raise LockTimeoutError(
                    f"Could not acquire {self.name} lock for {key} within {wait}s"
                )

            logger.debug(f"Lock acquired for {self.name}:{key}: {operation}")
            try:
                yield
            finally:
                lock.release()
                logger.debug(f"Lock released for {self.name}:{key}: {operation}")
        finally:
            self._forget(key, lock)

    def _forget(self, key: Hashable, lock: asyncio.Lock) -> None:
        """Drop the entry for a key once nobody holds or waits on it."""
        remaining = self._users.get(key, 1) - 1
        if remaining > 0:
            self._users[key] = remaining
            return
        self._users.pop(key, None)
        if not lock.locked() and self._locks.get(key) is lock:
            del self._locks[key]
