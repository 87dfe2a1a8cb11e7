"""
Pub/Sub Hub Module

Topic-multiplexed subscriptions over one subscriber connection per process.

The hub keeps a registry mapping each topic to the ordered list of local
subscriptions. The store only ever sees one SUBSCRIBE per topic, issued when
the first local callback registers, and one UNSUBSCRIBE, issued when the last
one leaves. When no topics remain the subscriber connection is closed and
recreated on next use.

Messages are received by a single listener task. Callbacks run on that
task, so a slow callback delays every later message.
"""

import asyncio
import inspect
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from ..network.connection_pool import ConnectionPool

logger = logging.getLogger(__name__)

SubscriptionCallback = Callable[[Any, str], Union[None, Awaitable[None]]]

LISTEN_TIMEOUT = 1.0  # Seconds to wait for a message per poll


@dataclass(frozen=True)
class Subscription:
    """
    Handle for a registered callback.

    Attributes:
        id: Hub-unique identifier
        topic: The topic subscribed to
        callback: Called with (message, topic) for every delivered message
    """
    id: int
    topic: str
    callback: SubscriptionCallback = field(compare=False)


class PubSubHub:
    """
    Process-wide publish/subscribe registry.

    Usage:
        hub = PubSubHub(pool)
        sub = await hub.subscribe("orders", lambda message, topic: print(message))
        await hub.publish("orders", {"id": 1})
        await hub.unsubscribe(sub)

    Attributes:
        pool: ConnectionPool used for publishing; its client factory also
              creates the dedicated subscriber connection
    """

    def __init__(self, pool: ConnectionPool):
        self.pool = pool
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._subscription_ids = itertools.count()
        self._subscriber: Optional[Redis] = None
        self._pubsub: Optional[PubSub] = None
        self._listener: Optional[asyncio.Task] = None

    @property
    def topics(self) -> List[str]:
        """Topics with at least one local subscription."""
        return list(self._subscriptions)

    @property
    def connected(self) -> bool:
        """True while the shared subscriber connection exists."""
        return self._pubsub is not None

    def subscriptions_for(self, topic: str) -> List[Subscription]:
        return list(self._subscriptions.get(topic, []))

    def _ensure_subscriber(self) -> PubSub:
        if self._pubsub is None:
            self._subscriber = self.pool.client_factory()
            self._pubsub = self._subscriber.pubsub(ignore_subscribe_messages=True)
            logger.debug("Subscriber connection created")
        return self._pubsub

    async def subscribe(self, topic: str, callback: SubscriptionCallback) -> Subscription:
        """
        Register a callback for a topic.

        Args:
            topic: Topic (store channel) name
            callback: Sync or async function called with (message, topic)

        Returns:
            The Subscription handle, needed to unsubscribe
        """
        # Callers for a topic whose SUBSCRIBE is in flight wait for it and
        # share its outcome, so no handle is registered on a failed topic.
        while topic in self._pending:
            await asyncio.shield(self._pending[topic])

        subscription = Subscription(id=next(self._subscription_ids), topic=topic, callback=callback)
        if topic in self._subscriptions:
            self._subscriptions[topic].append(subscription)
            return subscription

        pubsub = self._ensure_subscriber()
        self._subscriptions[topic] = [subscription]
        pending = asyncio.get_running_loop().create_future()
        self._pending[topic] = pending
        try:
            await pubsub.subscribe(**{topic: self._on_message})
        except BaseException as exc:
            del self._pending[topic]
            self._subscriptions.pop(topic, None)
            if isinstance(exc, Exception):
                pending.set_exception(exc)
                pending.exception()  # Retrieved here when nobody is waiting
            else:
                # Cancelled; waiters retry the SUBSCRIBE themselves
                pending.set_result(None)
            if not self._subscriptions:
                await self._close_subscriber()
            raise
        del self._pending[topic]
        pending.set_result(None)

        if self._listener is None and self._pubsub is pubsub:
            self._listener = asyncio.create_task(self._listen(pubsub))
        logger.debug(f"Subscribed to topic {topic}")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """
        Remove a subscription.

        The topic is unsubscribed from the store when its last callback is
        removed, and the subscriber connection is closed when no topics remain.
        """
        subscriptions = self._subscriptions.get(subscription.topic)
        if subscriptions is None:
            logger.warning(f"Subscriptions not found for topic \"{subscription.topic}\"")
            return

        remaining = [s for s in subscriptions if s.id != subscription.id]
        if remaining:
            self._subscriptions[subscription.topic] = remaining
            return

        del self._subscriptions[subscription.topic]
        pubsub = self._pubsub
        if pubsub is not None:
            await pubsub.unsubscribe(subscription.topic)
            logger.debug(f"Unsubscribed from topic {subscription.topic}")

        if not self._subscriptions:
            await self._close_subscriber()

    async def publish(self, topic: str, message: Any) -> Optional[int]:
        """
        Publish a message to a topic through a pooled connection.

        Non-string messages are JSON-encoded.

        Returns:
            Number of store-side subscribers that received it
        """
        if not isinstance(message, str):
            message = json.dumps(message)
        return await self.pool.with_resource(lambda client: client.publish(topic, message))

    async def _on_message(self, message: Dict[str, Any]) -> None:
        """Dispatch one store message to the topic's current callbacks."""
        topic = message["channel"]
        data = message["data"]

        subscriptions = self._subscriptions.get(topic)
        if not subscriptions:
            logger.warning(f"Received message for topic \"{topic}\", but no subscribers")
            return

        for subscription in list(subscriptions):
            try:
                result = subscription.callback(data, topic)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Subscriber {subscription.id} for topic \"{topic}\" failed")

    async def _listen(self, pubsub: PubSub) -> None:
        """Receive loop; handlers registered on subscribe do the dispatch."""
        while self._pubsub is pubsub:
            try:
                await pubsub.get_message(ignore_subscribe_messages=True, timeout=LISTEN_TIMEOUT)
            except asyncio.CancelledError:
                raise
            except RedisError as exc:
                logger.error(f"Subscriber connection error: {exc}")
                await asyncio.sleep(LISTEN_TIMEOUT)
            except Exception as exc:  # Log unexpected errors but keep listening
                logger.exception(f"Error receiving message: {exc}")
                await asyncio.sleep(LISTEN_TIMEOUT)

    async def _close_subscriber(self) -> None:
        listener, self._listener = self._listener, None
        pubsub, self._pubsub = self._pubsub, None
        subscriber, self._subscriber = self._subscriber, None

        # A callback may unsubscribe from inside the listener task; that
        # task then exits on its own once the handler returns.
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

        try:
            if pubsub is not None:
                await pubsub.aclose()
            if subscriber is not None:
                await subscriber.aclose()
        except RedisError as exc:
            logger.warning(f"Error closing subscriber connection: {exc}")
        logger.debug("Subscriber connection closed")

    async def shutdown(self) -> None:
        """Drop every subscription and close the subscriber connection."""
        self._subscriptions.clear()
        await self._close_subscriber()
