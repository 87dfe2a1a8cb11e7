"""
Cluster module for kvsync.

Primitives that coordinate every process sharing one store:
- Advisory distributed locks
- Fixed-window rate limiting
"""

from .lock import DistributedLock, Lock
from .rate_limit import RateLimiter

__all__ = ['DistributedLock', 'Lock', 'RateLimiter']
