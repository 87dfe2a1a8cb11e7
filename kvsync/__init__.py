"""
kvsync: Distributed Coordination Primitives

Locks, single-flight caching, rate limiting, connection pooling,
publish/subscribe fan-out and lock-guarded cron jobs for a fleet of
processes sharing one Redis store, built on asyncio.
"""

from .context import CoordinationContext
from .errors import (
    KVSyncError,
    LockTimeout,
    MalformedCronExpression,
    PoolExhausted,
    RateLimitExceeded,
)

__version__ = "1.0.0"

__all__ = [
    "CoordinationContext",
    "KVSyncError",
    "LockTimeout",
    "MalformedCronExpression",
    "PoolExhausted",
    "RateLimitExceeded",
]
