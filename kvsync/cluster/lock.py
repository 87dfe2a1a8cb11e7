"""
Distributed Lock Module

Poll-based, advisory mutual exclusion shared by every process that talks
to the same store.

A lock is the key "<name>.lock" set with NX and a PX expiry; its value is
a token unique to the acquisition. Only the holder whose token is still
stored deletes the key on release.

Limitation: the expiry is the only way a lock ends besides release().
There is no renewal, so if the protected work outlives timeout_ms a
second caller can acquire the lock while the first is still working.
"""

import asyncio
import itertools
import logging
import os
import socket
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from ..cache.store import KVStore
from ..config.settings import settings
from ..errors import LockTimeout

logger = logging.getLogger(__name__)


def short_hostname() -> str:
    """Hostname up to the first dot."""
    hostname = socket.gethostname() or "unknown"
    return hostname.split(".")[0]


@dataclass(frozen=True)
class Lock:
    """
    Handle for a held lock.

    Attributes:
        key: The store key of the lock ("<name>.lock")
        token: The value this acquisition stored under key
    """
    key: str
    token: str


class DistributedLock:
    """
    Lock manager issuing fleet-wide advisory locks.

    Usage:
        locks = DistributedLock(store)
        lock = await locks.acquire("report", wait=False)
        if lock:
            try:
                ...
            finally:
                await locks.release(lock)
    """

    def __init__(self, store: KVStore, hostname: str = None):
        self.store = store
        self.hostname = hostname if hostname is not None else short_hostname()
        self._lock_ids = itertools.count(1)

    def new_token(self) -> str:
        """Build a token unique to this host, process and acquisition."""
        return f"{self.hostname}.{os.getpid()}.{int(time.time() * 1000)}.{next(self._lock_ids)}"

    async def acquire(
            self,
            name: str,
            wait: bool = True,
            timeout_ms: int = None,
            retry_sleep_ms: int = None,
    ) -> Optional[Lock]:
        """
        Try to obtain the lock for name.

        Args:
            name: Lock name; the store key is "<name>.lock"
            wait: Keep retrying until the deadline instead of giving up
            timeout_ms: Lock expiry, and the wait budget (default from settings)
            retry_sleep_ms: Sleep between attempts (default from settings)

        Returns:
            The Lock, or None if wait is False and the lock is held

        Raises:
            LockTimeout: If waiting and the lock was not obtained within
                         timeout_ms + retry_sleep_ms of the first attempt
        """
        timeout_ms = timeout_ms if timeout_ms is not None else settings.LOCK_TIMEOUT_MS
        retry_sleep_ms = retry_sleep_ms if retry_sleep_ms is not None else settings.LOCK_RETRY_SLEEP_MS

        key = f"{name}.lock"
        token = self.new_token()
        deadline = time.monotonic() + (timeout_ms + retry_sleep_ms) / 1000

        while True:
            if await self.store.set(key, token, ttl_ms=timeout_ms, exclusive=True):
                logger.debug(f"Lock obtained: {key}")
                return Lock(key=key, token=token)
            if not wait:
                return None

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeout(name, timeout_ms)
            await asyncio.sleep(min(retry_sleep_ms / 1000, remaining))

    async def release(self, lock: Lock) -> None:
        """
        Release a lock obtained from acquire().

        A lock that already expired, or that now belongs to a later holder,
        is left alone and only logged. The token check and the delete are
        one atomic store operation.
        """
        result = await self.store.delete_if_equal(lock.key, lock.token)
        if result == -1:
            logger.warning(f"could not unlock {lock.key}, doesn't exist")
        elif result == 0:
            logger.warning(f"could not unlock {lock.key}, mismatch lock value")
        elif result:
            logger.debug(f"Lock released: {lock.key}")

    @asynccontextmanager
    async def hold(
            self,
            name: str,
            wait: bool = True,
            timeout_ms: int = None,
            retry_sleep_ms: int = None,
    ) -> AsyncIterator[Optional[Lock]]:
        """
        Hold a lock for the duration of an async with block.

        Yields None when wait is False and the lock is taken.
        """
        lock = await self.acquire(name, wait=wait, timeout_ms=timeout_ms, retry_sleep_ms=retry_sleep_ms)
        try:
            yield lock
        finally:
            if lock is not None:
                await self.release(lock)
