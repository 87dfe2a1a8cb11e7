"""Exceptions raised by the coordination primitives."""


class KVSyncError(Exception):
    """Base class for all kvsync errors."""


class LockTimeout(KVSyncError):
    """A lock could not be obtained before its deadline."""

    def __init__(self, name: str, timeout_ms: int):
        super().__init__(f"could not obtain lock for {name} within {timeout_ms}ms")
        self.name = name
        self.timeout_ms = timeout_ms


class PoolExhausted(KVSyncError):
    """Every pooled connection is in use and the pool is at capacity."""

    def __init__(self, max_size: int):
        super().__init__(f"Pool size exceeded ({max_size} connections in use)")
        self.max_size = max_size


class RateLimitExceeded(KVSyncError):
    """The current rate limit window is over its limit."""

    def __init__(self, limit: int, resolution_ms: int):
        super().__init__(f"rate limit exceeded: {limit} per {resolution_ms}ms")
        self.limit = limit
        self.resolution_ms = resolution_ms


class MalformedCronExpression(KVSyncError, ValueError):
    """A cron string could not be parsed."""

    def __init__(self, token: str, reason: str = "unexpected value"):
        super().__init__(f"{reason}: '{token}'")
        self.token = token
