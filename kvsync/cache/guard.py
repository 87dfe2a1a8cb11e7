"""
Cache Guard Module

Cache-aside reads with single-flight recomputation.

On a miss, the caller takes the distributed lock for the key before
computing, and checks the cache again once it holds the lock: whoever got
the lock first has usually filled it. Among callers that obtain the lock,
compute() therefore runs once per key per contention window.
"""

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from ..cluster.lock import DistributedLock
from ..errors import LockTimeout
from .store import KVStore

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Union[Any, Awaitable[Any]]]


class CacheGuard:
    """
    Read-through cache over the shared store.

    Values are stored JSON-encoded so every caller, hit or miss, gets the
    same Python value back. A stored value that is not JSON is returned as
    the raw string.

    Usage:
        guard = CacheGuard(store, locks)
        report = await guard.get_or_compute("report.daily", 60000, 5000, build_report)
    """

    def __init__(self, store: KVStore, locks: DistributedLock):
        self.store = store
        self.locks = locks

    async def _read(self, key: str) -> Optional[Any]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Written by a plain set(), not by this guard
            return raw

    async def get_or_compute(
            self,
            key: str,
            ttl_ms: int,
            lock_wait_ms: int,
            compute: ComputeFn,
    ) -> Optional[Any]:
        """
        Get a cached value, computing and storing it on a miss.

        Args:
            key: Cache key (the lock is "<key>.lock")
            ttl_ms: Time-to-live of the cached value
            lock_wait_ms: How long to wait for the lock
            compute: Sync or async function producing the value; a None
                     result is returned but not cached

        Returns:
            The cached or computed value, or None if the lock wait timed out
        """
        value = await self._read(key)
        if value is not None:
            return value

        try:
            async with self.locks.hold(
                    key,
                    wait=True,
                    timeout_ms=lock_wait_ms,
                    retry_sleep_ms=lock_wait_ms / 100,
            ):
                value = await self._read(key)
                if value is not None:
                    return value

                value = compute()
                if inspect.isawaitable(value):
                    value = await value
                if value is None:
                    return None

                await self.store.set(key, json.dumps(value), ttl_ms=ttl_ms)
                return value
        except LockTimeout as exc:
            logger.warning(f"Cache lock wait for {key} timed out: {exc}")
            return None
