"""
Fixed-Window Rate Limiter Module

Counts requests per base key in disjoint time buckets of resolution_ms.
The counter is incremented and given its expiry in one transaction, and
the request is rejected when the incremented count exceeds the limit.

Windows do not slide: a burst straddling a boundary can be admitted up to
2 x limit times across the two windows.
"""

import logging
import time
from typing import Callable

from ..cache.store import KVStore
from ..errors import RateLimitExceeded

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class RateLimiter:
    """
    Fleet-wide fixed-window rate limiter.

    Usage:
        limiter = RateLimiter(store)
        await limiter.allow("api.user.42", limit=10, resolution_ms=1000)

    Attributes:
        store: KVStore holding the counters
        clock: Returns the current time in milliseconds
    """

    def __init__(self, store: KVStore, clock: Callable[[], float] = None):
        self.store = store
        self.clock = clock if clock is not None else _now_ms

    def bucket_key(self, base_key: str, resolution_ms: int) -> str:
        """Counter key for the window containing now."""
        bucket = int(self.clock() // resolution_ms)
        return f"rate.limit.{base_key}.{bucket}"

    async def allow(self, base_key: str, limit: int, resolution_ms: int = 1000) -> int:
        """
        Count one request against base_key.

        Args:
            base_key: What is being limited (user, route, ...)
            limit: Requests allowed per window
            resolution_ms: Window length in milliseconds

        Returns:
            The request's position in the current window

        Raises:
            RateLimitExceeded: If the window already admitted limit requests
        """
        key = self.bucket_key(base_key, resolution_ms)
        count = await self.store.incr(key, expire_ms=resolution_ms)
        if count is None:
            # Store unavailable; the pool has logged the failure.
            logger.warning(f"Rate limit for {base_key} not checked, store unavailable")
            return 0
        if count > limit:
            raise RateLimitExceeded(limit, resolution_ms)
        return count
