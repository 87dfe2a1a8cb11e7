"""Cache module for kvsync."""

from .store import KVStore, Priority

__all__ = ["KVStore", "Priority"]
