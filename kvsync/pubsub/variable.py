"""
Shared Variable Module

A process-local mirror of one store key, kept current through pub/sub.

Writers store the new value and then publish on a topic named after the
key. Every process holding a SharedVariable for that key re-reads the key
on notification and calls its change listeners when the value differs.
"""

import inspect
import logging
from typing import Any, Callable, List, Optional

from ..cache.store import KVStore
from .hub import PubSubHub, Subscription

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Any, Any], Any]


class SharedVariable:
    """
    A value shared by every process using the same key.

    Usage:
        mode = SharedVariable(store, hub, "service.mode")
        mode.add_listener(lambda value, previous: print(previous, "->", value))
        await mode.start()
        await mode.set("maintenance")

    Attributes:
        key: Store key and pub/sub topic
        ttl_ms: Expiry applied on every set (0 = none)
    """

    def __init__(self, store: KVStore, hub: PubSubHub, key: str, ttl_ms: int = 0):
        self.store = store
        self.hub = hub
        self.key = key
        self.ttl_ms = ttl_ms
        self._value: Optional[str] = None
        self._listeners: List[ChangeListener] = []
        self._subscription: Optional[Subscription] = None

    @property
    def value(self) -> Optional[str]:
        """The last value read from the store."""
        return self._value

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback receiving (value, previous) on change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> None:
        """Subscribe to change notifications and load the current value."""
        if self._subscription is None:
            self._subscription = await self.hub.subscribe(self.key, self._on_notify)
        await self.refresh()

    async def stop(self) -> None:
        """Stop following changes."""
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await self.hub.unsubscribe(subscription)

    async def set(self, value: Any) -> None:
        """Store a new value and notify every follower."""
        await self.store.set(self.key, value, ttl_ms=self.ttl_ms)
        await self.hub.publish(self.key, value)

    async def _on_notify(self, message: Any, topic: str) -> None:
        await self.refresh()

    async def refresh(self) -> None:
        """Re-read the key and notify listeners if it changed."""
        value = await self.store.get(self.key)
        if value == self._value:
            return

        previous, self._value = self._value, value
        logger.debug(f"value change for \"{self.key}\": {previous!r} => {value!r}")
        for listener in list(self._listeners):
            result = listener(value, previous)
            if inspect.isawaitable(result):
                await result
