"""
Store Connection Pool Module

This module lends bounded, reusable connections to the shared key-value
store (Redis).

Each pooled connection wraps its own single-connection client, so only one
operation is ever in flight on a connection at a time. Concurrency across
operations comes from holding several connections, bounded by the pool size.

Key behaviors:
- acquire(): reuse a free connection or connect a new one below max size
- release(): hand the connection back for reuse
- with_resource(): scoped acquisition that always releases and logs
  store errors instead of leaking the connection
- shutdown(): disconnect every pooled connection (idempotent)
"""

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from ..config.settings import Settings, settings as default_settings
from ..errors import PoolExhausted

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Redis]


class LoggingBackoff(ExponentialBackoff):
    """
    Exponential backoff (base * 2^attempt, capped) that logs each reconnect.

    The retry policy of the store client calls compute() once per failed
    attempt; the attempt count is abandoned by the client after the
    configured maximum, after which the ConnectionError reaches the caller.
    """

    def compute(self, failures: int) -> float:
        delay = super().compute(failures)
        logger.warning(f"Store reconnect attempt {failures}, sleeping {delay:.3f}s")
        return delay


def create_client(config: Settings = None) -> Redis:
    """
    Create an unconnected store client from settings.

    Args:
        config: Settings to read host/port/retry policy from (default: global)

    Returns:
        A single-connection Redis client with exponential reconnect backoff
    """
    config = config if config is not None else default_settings
    retry = Retry(
        LoggingBackoff(
            cap=config.retry_max_sleep_seconds,
            base=config.retry_base_sleep_seconds,
        ),
        retries=config.RETRY_MAX_ATTEMPTS,
    )
    logger.debug(f"Store configured for {config.REDIS_HOST}:{config.REDIS_PORT}")
    return Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        password=config.REDIS_PASSWORD,
        db=config.REDIS_DB,
        encoding="utf-8",
        decode_responses=True,
        single_connection_client=True,
        socket_timeout=config.SOCKET_TIMEOUT,
        socket_connect_timeout=config.SOCKET_TIMEOUT,
        health_check_interval=config.HEALTH_CHECK_INTERVAL,
        retry=retry,
        retry_on_error=[ConnectionError, TimeoutError],
    )


@contextmanager
def _read_timeout(client: Redis, block_ms: int) -> Iterator[None]:
    """Widen the socket read timeout of a single-connection client."""
    connection = getattr(client, "connection", None)
    if connection is None:
        yield
        return

    previous = connection.socket_timeout
    if block_ms == 0:
        connection.socket_timeout = None
    else:
        connection.socket_timeout = block_ms / 1000 + (previous or 0)
    try:
        yield
    finally:
        connection.socket_timeout = previous


@dataclass
class PooledConnection:
    """
    A store connection owned by the pool.

    Attributes:
        id: Pool-unique identifier
        in_use: True while lent out
        client: The underlying store client (None while connecting)
    """
    id: int
    in_use: bool = True
    client: Optional[Redis] = None


class ConnectionPool:
    """
    Bounded pool of store connections.

    By default a request beyond the maximum fails immediately with
    PoolExhausted. Passing a timeout to acquire() makes the caller queue
    for a released connection instead.

    Usage:
        pool = ConnectionPool(max_size=4)
        value = await pool.with_resource(lambda client: client.get("key"))
        await pool.shutdown()

    Attributes:
        max_size: Maximum number of connections
        client_factory: Callable producing a new unconnected client
    """

    def __init__(self, max_size: int = None, client_factory: ClientFactory = None):
        """
        Initialize the pool.

        Args:
            max_size: Maximum connections (default from settings.POOL_SIZE)
            client_factory: Creates new clients (default: create_client)
        """
        self.max_size = max_size if max_size is not None else default_settings.POOL_SIZE
        if self.max_size <= 0:
            raise ValueError("max_size must be positive")
        self.client_factory = client_factory if client_factory is not None else create_client

        self._connections: List[PooledConnection] = []
        self._waiters: List[asyncio.Future] = []
        self._next_id = 0

    async def acquire(self, timeout: float = 0) -> PooledConnection:
        """
        Acquire a connection, creating one if allowed.

        Args:
            timeout: Seconds to wait for a release when the pool is at
                     capacity (0 = fail immediately)

        Returns:
            A PooledConnection marked as in use

        Raises:
            PoolExhausted: If no connection is available in time
        """
        conn = await self._try_acquire()
        if conn is not None:
            return conn
        if timeout <= 0:
            raise PoolExhausted(self.max_size)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PoolExhausted(self.max_size)

            waiter = loop.create_future()
            self._waiters.append(waiter)
            try:
                await asyncio.wait_for(waiter, remaining)
            except asyncio.TimeoutError:
                raise PoolExhausted(self.max_size) from None
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

            conn = await self._try_acquire()
            if conn is not None:
                return conn

    async def _try_acquire(self) -> Optional[PooledConnection]:
        for conn in self._connections:
            if not conn.in_use:
                conn.in_use = True
                return conn

        if len(self._connections) >= self.max_size:
            return None

        # Reserve the slot before connecting so concurrent acquirers
        # cannot push the pool past max_size.
        conn = PooledConnection(id=self._next_id)
        self._next_id += 1
        self._connections.append(conn)
        try:
            client = self.client_factory()
            await client.initialize()
        except BaseException:
            self._connections.remove(conn)
            self._wake_waiter()
            raise

        conn.client = client
        logger.debug(f"Pool connection {conn.id} created ({len(self._connections)}/{self.max_size})")
        return conn

    def release(self, conn: PooledConnection) -> None:
        """
        Return a connection to the pool.

        The connection is looked up by id, so a copy of the handle works.
        """
        pooled = next((c for c in self._connections if c.id == conn.id), None)
        if pooled is None:
            logger.warning(f"Release of unknown pool connection {conn.id}")
            return

        pooled.in_use = False
        self._wake_waiter()

    def _wake_waiter(self) -> None:
        while self._waiters:
            waiter = self._waiters.pop(0)
            if not waiter.done():
                waiter.set_result(None)
                return

    @asynccontextmanager
    async def connection(self, timeout: float = 0) -> AsyncIterator[Redis]:
        """Scoped acquisition yielding the underlying client."""
        conn = await self.acquire(timeout=timeout)
        try:
            yield conn.client
        finally:
            self.release(conn)

    async def with_resource(self, fn: Callable[[Redis], Awaitable[Any]], block_ms: int = None) -> Any:
        """
        Run fn with a pooled client, always releasing it.

        Store-level errors, including failures to connect a new pooled
        client, are logged and swallowed so that one failed operation never
        leaks a connection.

        Args:
            fn: Coroutine function receiving the client
            block_ms: For blocking commands, how long the server may hold
                      the reply (0 = forever); the socket read timeout is
                      widened to cover it for this call only

        Returns:
            The result of fn, or None if the store operation failed

        Raises:
            PoolExhausted: If no connection could be acquired
        """
        try:
            async with self.connection() as client:
                if block_ms is None:
                    return await fn(client)
                with _read_timeout(client, block_ms):
                    return await fn(client)
        except RedisError as exc:
            logger.error(f"Store operation failed: {exc}")
            return None

    async def shutdown(self) -> None:
        """Disconnect every pooled connection. Safe to call repeatedly."""
        connections, self._connections = self._connections, []
        for conn in connections:
            if conn.client is None:
                continue
            try:
                await conn.client.aclose()
            except RedisError as exc:
                logger.warning(f"Error closing pool connection {conn.id}: {exc}")

        for waiter in self._waiters:
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()

    @property
    def size(self) -> int:
        """Number of connections currently owned by the pool."""
        return len(self._connections)

    def get_stats(self) -> Dict[str, int]:
        """
        Get statistics about the pool.

        Returns:
            Dictionary with size, in_use, free and max_size
        """
        in_use = sum(1 for conn in self._connections if conn.in_use)
        return {
            "size": len(self._connections),
            "in_use": in_use,
            "free": len(self._connections) - in_use,
            "max_size": self.max_size,
        }
