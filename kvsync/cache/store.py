"""
Key-Value Store Module

This module wraps the commands of the shared store behind the connection
pool. Every call borrows a pooled connection for exactly one command (or
one MULTI/EXEC transaction) and hands it back.

Values that are dicts or lists are JSON-encoded before being written;
everything else is written as-is. Reads return the raw string values.

If the store fails (connection lost, retries exhausted), the pool logs
the error and the call returns None.
"""

import json
from enum import IntEnum
from typing import Any, List, Optional

from redis.asyncio import Redis

from ..network.connection_pool import ConnectionPool

_DELETE_IF_EQUAL_LUA = """
local value = redis.call('GET', KEYS[1])
if not value then
  return -1
end
if value == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class Priority(IntEnum):
    """Scores for sorted-set backed priority queues."""
    LOW = 1
    NORMAL = 5
    HIGH = 10


def encode_value(value: Any) -> Any:
    """JSON-encode dicts and lists; pass everything else through."""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class KVStore:
    """
    Command facade over a ConnectionPool.

    Usage:
        store = KVStore(pool)
        await store.set("key", {"a": 1}, ttl_ms=5000)
        raw = await store.get("key")   # '{"a": 1}'

    Attributes:
        pool: The ConnectionPool lending connections for each command
    """

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    # ------------------------------------------------------------------
    # Strings and keys
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        """Get the value for a key, or None."""
        return await self.pool.with_resource(lambda client: client.get(key))

    async def set(self, key: str, value: Any, ttl_ms: int = 0, exclusive: bool = False) -> Optional[bool]:
        """
        Set the value for a key.

        Args:
            key: The key to store
            value: The value (dicts/lists are JSON-encoded)
            ttl_ms: Expiry in milliseconds (0 = no expiration)
            exclusive: Only set if the key does not already exist

        Returns:
            True if the key was set, None if it was not (NX miss or store error)
        """
        value = encode_value(value)
        px = int(ttl_ms) if ttl_ms else None
        return await self.pool.with_resource(
            lambda client: client.set(key, value, px=px, nx=exclusive)
        )

    async def delete(self, key: str) -> Optional[int]:
        """Delete a key. Returns the number of keys removed."""
        return await self.pool.with_resource(lambda client: client.delete(key))

    async def exists(self, key: str) -> bool:
        """Check whether a key exists."""
        result = await self.pool.with_resource(lambda client: client.exists(key))
        return bool(result)

    async def ttl(self, key: str) -> Optional[int]:
        """
        Get the remaining time-to-live of a key in seconds.

        Returns:
            Seconds remaining, -1 if the key has no TTL, -2 if not found
        """
        return await self.pool.with_resource(lambda client: client.ttl(key))

    async def keys(self, pattern: str) -> List[str]:
        """Get keys matching a glob-style pattern."""
        result = await self.pool.with_resource(lambda client: client.keys(pattern))
        return result or []

    async def incr(self, key: str, expire_ms: int = 0) -> Optional[int]:
        """
        Atomically increment a counter and (re)set its expiry.

        Both commands run in one MULTI/EXEC transaction.

        Returns:
            The counter value after incrementing, or None on store error
        """
        async def _incr(client: Redis) -> int:
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                if expire_ms:
                    pipe.pexpire(key, int(expire_ms))
                results = await pipe.execute()
            return results[0]

        return await self.pool.with_resource(_incr)

    async def delete_if_equal(self, key: str, expected: str) -> Optional[int]:
        """
        Delete a key only if it still holds the expected value.

        The comparison and the delete run as one server-side script.

        Returns:
            1 if deleted, 0 if the value differs, -1 if the key is absent,
            None on store error
        """
        return await self.pool.with_resource(
            lambda client: client.eval(_DELETE_IF_EQUAL_LUA, 1, key, expected)
        )

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def lpush(self, key: str, value: Any) -> Optional[int]:
        """Push a value onto the head of a list. Returns the new length."""
        value = encode_value(value)
        return await self.pool.with_resource(lambda client: client.lpush(key, value))

    async def lrem(self, key: str, count: int, value: Any) -> Optional[int]:
        """Remove up to count matching elements from a list."""
        value = encode_value(value)
        return await self.pool.with_resource(lambda client: client.lrem(key, count, value))

    async def lpos(self, key: str, value: Any) -> Optional[int]:
        """Get the index of the first matching element, or None."""
        value = encode_value(value)
        return await self.pool.with_resource(lambda client: client.lpos(key, value))

    async def rpop(self, key: str, count: int = None) -> Any:
        """
        Pop value(s) off the tail of a list.

        Returns:
            A single value, or a list of values when count is given
        """
        if count:
            return await self.pool.with_resource(lambda client: client.rpop(key, count))
        return await self.pool.with_resource(lambda client: client.rpop(key))

    async def brpop(self, key: str, timeout_ms: int = 0) -> Optional[str]:
        """
        Blocking pop from the tail of a list.

        Holds a pooled connection for up to timeout_ms (0 = forever).
        """
        result = await self.pool.with_resource(
            lambda client: client.brpop([key], timeout=timeout_ms / 1000),
            block_ms=timeout_ms,
        )
        return result[1] if result else None

    async def llen(self, key: str) -> Optional[int]:
        """Get the length of a list."""
        return await self.pool.with_resource(lambda client: client.llen(key))

    async def ltrim(self, key: str, start: int, end: int) -> Optional[bool]:
        """Trim a list to the inclusive range [start, end]."""
        return await self.pool.with_resource(lambda client: client.ltrim(key, start, end))

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def sadd(self, key: str, value: Any) -> Optional[int]:
        """Add a value to a set."""
        value = encode_value(value)
        return await self.pool.with_resource(lambda client: client.sadd(key, value))

    async def spop(self, key: str) -> Optional[str]:
        """Remove and return a random member of a set."""
        return await self.pool.with_resource(lambda client: client.spop(key))

    async def srem(self, key: str, value: Any) -> Optional[int]:
        """Remove a value from a set."""
        value = encode_value(value)
        return await self.pool.with_resource(lambda client: client.srem(key, value))

    async def smembers(self, key: str) -> set:
        """Get all members of a set."""
        result = await self.pool.with_resource(lambda client: client.smembers(key))
        return set(result) if result else set()

    async def scard(self, key: str) -> Optional[int]:
        """Get the number of members in a set."""
        return await self.pool.with_resource(lambda client: client.scard(key))

    # ------------------------------------------------------------------
    # Sorted sets (priority queues)
    # ------------------------------------------------------------------

    async def zadd(self, key: str, value: Any, priority: float = Priority.NORMAL) -> Optional[int]:
        """
        Add a value with a priority score.

        An existing member's score is only ever raised (GT).
        """
        value = encode_value(value)
        return await self.pool.with_resource(
            lambda client: client.zadd(key, {value: float(priority)}, gt=True)
        )

    async def zpop(self, key: str) -> Optional[str]:
        """Pop the member with the highest score, or None if empty."""
        result = await self.pool.with_resource(lambda client: client.zpopmax(key))
        return result[0][0] if result else None

    async def zrangebyscore(self, key: str, priority: float = Priority.NORMAL) -> List[str]:
        """Get members with a score up to and including priority."""
        result = await self.pool.with_resource(
            lambda client: client.zrangebyscore(key, "-inf", float(priority))
        )
        return result or []

    async def zrem(self, key: str, value: Any) -> Optional[int]:
        """Remove a member from a sorted set."""
        value = encode_value(value)
        return await self.pool.with_resource(lambda client: client.zrem(key, value))

    async def bzpop(self, key: str, timeout_ms: int = 0) -> Optional[str]:
        """Blocking pop of the highest-scored member."""
        result = await self.pool.with_resource(
            lambda client: client.bzpopmax([key], timeout=timeout_ms / 1000),
            block_ms=timeout_ms,
        )
        return result[1] if result else None

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    async def publish(self, topic: str, message: Any) -> Optional[int]:
        """
        Publish a message on a topic.

        Returns:
            Number of subscribers that received it
        """
        message = encode_value(message)
        return await self.pool.with_resource(lambda client: client.publish(topic, message))
