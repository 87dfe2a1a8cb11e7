"""Network module for kvsync: pooled connections to the shared store."""

from .connection_pool import ConnectionPool, PooledConnection, create_client

__all__ = ["ConnectionPool", "PooledConnection", "create_client"]
