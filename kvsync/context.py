"""
Coordination Context Module

Holds the process-wide state of the coordination primitives: the
connection pool, the pub/sub registry and subscriber connection, the lock
counter and the cached hostname. Components receive the context's members
by reference instead of reaching for globals, so separate contexts (as in
tests) never share state.
"""

import logging
from typing import Optional

from .cache.guard import CacheGuard
from .cache.store import KVStore
from .cluster.lock import DistributedLock
from .cluster.rate_limit import RateLimiter
from .config.settings import Settings, settings as default_settings
from .network.connection_pool import ClientFactory, ConnectionPool, create_client
from .pubsub.hub import PubSubHub

logger = logging.getLogger(__name__)


class CoordinationContext:
    """
    Everything one process needs to coordinate with the fleet.

    Usage:
        async with CoordinationContext() as ctx:
            async with ctx.locks.hold("nightly-report"):
                ...

    Attributes:
        pool: ConnectionPool for store commands
        store: KVStore command facade
        locks: DistributedLock manager
        cache: CacheGuard
        limiter: RateLimiter
        hub: PubSubHub with its own subscriber connection
    """

    def __init__(
            self,
            config: Settings = None,
            client_factory: ClientFactory = None,
            pool_size: int = None,
            hostname: str = None,
    ):
        """
        Create the context. No connection is opened until first use.

        Args:
            config: Settings (default: global settings)
            client_factory: Creates store clients (default: built from config)
            pool_size: Maximum pooled connections (default: config.POOL_SIZE)
            hostname: Host part of lock tokens (default: short hostname)
        """
        self.config = config if config is not None else default_settings
        if client_factory is None:
            config = self.config
            client_factory = lambda: create_client(config)

        self.pool = ConnectionPool(
            max_size=pool_size if pool_size is not None else self.config.POOL_SIZE,
            client_factory=client_factory,
        )
        self.store = KVStore(self.pool)
        self.locks = DistributedLock(self.store, hostname=hostname)
        self.cache = CacheGuard(self.store, self.locks)
        self.limiter = RateLimiter(self.store)
        self.hub = PubSubHub(self.pool)
        self._closed = False

    @property
    def hostname(self) -> str:
        return self.locks.hostname

    @property
    def closed(self) -> bool:
        return self._closed

    async def shutdown(self) -> None:
        """Close the subscriber connection and every pooled connection."""
        if self._closed:
            return
        self._closed = True
        logger.debug("Disconnecting subscriber client")
        await self.hub.shutdown()
        await self.pool.shutdown()

    async def __aenter__(self) -> "CoordinationContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> Optional[bool]:
        await self.shutdown()
        return None
