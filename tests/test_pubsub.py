"""
Tests for the Pub/Sub Hub and Shared Variable

These tests verify:
- publish() reaches every current subscriber exactly once
- One store SUBSCRIBE per topic, one UNSUBSCRIBE when the last callback leaves
- The subscriber connection is closed when no topics remain
- A failing callback does not stop delivery to the others
- SharedVariable follows writes from other processes

Run with: python -m pytest tests/test_pubsub.py -v
"""

import asyncio
import logging
from collections import defaultdict
from typing import List
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError

from kvsync.pubsub.hub import Subscription
from kvsync.pubsub.variable import SharedVariable


@pytest.fixture
def pubsub_spies() -> List:
    """PubSub objects created by spy_factory, with subscribe/unsubscribe wrapped."""
    return []


@pytest.fixture
def spy_factory(client_factory, pubsub_spies):
    """Client factory whose pubsub() objects record SUBSCRIBE/UNSUBSCRIBE calls."""
    def factory():
        client = client_factory()
        real_pubsub = client.pubsub

        def pubsub(**kwargs):
            ps = real_pubsub(**kwargs)
            ps.subscribe = AsyncMock(wraps=ps.subscribe)
            ps.unsubscribe = AsyncMock(wraps=ps.unsubscribe)
            pubsub_spies.append(ps)
            return ps

        client.pubsub = pubsub
        return client
    return factory


@pytest.mark.asyncio
class TestDelivery:
    """Test message delivery."""

    async def test_every_subscriber_receives_once(self, context, wait_until):
        """Test each callback of each topic gets its message exactly once."""
        messages = defaultdict(list)
        topic_count, listener_count = 5, 3

        for i in range(topic_count):
            for _ in range(listener_count):
                await context.hub.subscribe(
                    f"test.topic.{i}",
                    lambda message, topic: messages[topic].append(message),
                )

        for i in range(topic_count):
            await context.hub.publish(f"test.topic.{i}", f"message.{i}")

        assert await wait_until(
            lambda: sum(len(m) for m in messages.values()) == topic_count * listener_count
        )
        assert len(messages) == topic_count
        for i in range(topic_count):
            assert messages[f"test.topic.{i}"] == [f"message.{i}"] * listener_count

    async def test_delivery_across_processes(self, context_factory, wait_until):
        """Test a message published by one context reaches another."""
        publisher, subscriber = context_factory(), context_factory()
        received = []
        await subscriber.hub.subscribe("orders", lambda message, topic: received.append(message))

        await publisher.hub.publish("orders", "order.1")

        assert await wait_until(lambda: received == ["order.1"])

    async def test_non_string_message_is_json(self, context, wait_until):
        """Test dict messages arrive JSON-encoded."""
        received = []
        await context.hub.subscribe("orders", lambda message, topic: received.append(message))

        await context.hub.publish("orders", {"id": 1})

        assert await wait_until(lambda: received == ['{"id": 1}'])

    async def test_async_callback(self, context, wait_until):
        """Test coroutine callbacks are awaited."""
        received = []

        async def callback(message, topic):
            received.append((topic, message))

        await context.hub.subscribe("orders", callback)
        await context.hub.publish("orders", "order.1")

        assert await wait_until(lambda: received == [("orders", "order.1")])

    async def test_publish_returns_receiver_count(self, context):
        """Test publish reports how many store subscribers got the message."""
        await context.hub.subscribe("orders", lambda message, topic: None)
        await context.hub.subscribe("orders", lambda message, topic: None)

        # One store-level subscriber regardless of local callbacks
        assert await context.hub.publish("orders", "x") == 1

    async def test_failing_callback_does_not_block_others(self, context, caplog, wait_until):
        """Test one subscriber's exception is isolated."""
        received = []

        def broken(message, topic):
            raise RuntimeError("subscriber bug")

        await context.hub.subscribe("orders", broken)
        await context.hub.subscribe("orders", lambda message, topic: received.append(message))

        with caplog.at_level(logging.ERROR):
            await context.hub.publish("orders", "order.1")
            assert await wait_until(lambda: received == ["order.1"])

        assert "subscriber bug" in caplog.text


@pytest.mark.asyncio
class TestSubscriptionRegistry:
    """Test subscribe/unsubscribe bookkeeping."""

    async def test_subscribe_returns_handle(self, context):
        """Test the handle records id, topic and callback."""
        def callback(message, topic):
            pass

        first = await context.hub.subscribe("orders", callback)
        second = await context.hub.subscribe("orders", callback)

        assert isinstance(first, Subscription)
        assert first.topic == "orders"
        assert first.callback is callback
        assert first.id != second.id
        assert context.hub.subscriptions_for("orders") == [first, second]

    async def test_one_store_subscribe_per_topic(self, context_factory, spy_factory, pubsub_spies):
        """Test zero-to-one callbacks issues exactly one SUBSCRIBE."""
        ctx = context_factory(client_factory=spy_factory)

        for _ in range(3):
            await ctx.hub.subscribe("orders", lambda message, topic: None)
        await ctx.hub.subscribe("invoices", lambda message, topic: None)

        assert len(pubsub_spies) == 1
        assert pubsub_spies[0].subscribe.await_count == 2

    async def test_one_store_unsubscribe_per_topic(self, context_factory, spy_factory, pubsub_spies):
        """Test one-to-zero callbacks issues exactly one UNSUBSCRIBE."""
        ctx = context_factory(client_factory=spy_factory)
        keep = await ctx.hub.subscribe("invoices", lambda message, topic: None)
        subs = [await ctx.hub.subscribe("orders", lambda message, topic: None) for _ in range(3)]

        for sub in subs[:-1]:
            await ctx.hub.unsubscribe(sub)
        assert pubsub_spies[0].unsubscribe.await_count == 0

        await ctx.hub.unsubscribe(subs[-1])

        pubsub_spies[0].unsubscribe.assert_awaited_once_with("orders")
        assert ctx.hub.topics == ["invoices"]
        assert ctx.hub.connected is True
        assert keep in ctx.hub.subscriptions_for("invoices")

    async def test_unsubscribed_callback_gets_nothing(self, context, wait_until):
        """Test a removed callback receives no further messages."""
        removed, kept = [], []
        sub = await context.hub.subscribe("orders", lambda message, topic: removed.append(message))
        await context.hub.subscribe("orders", lambda message, topic: kept.append(message))

        await context.hub.unsubscribe(sub)
        await context.hub.publish("orders", "after")

        assert await wait_until(lambda: kept == ["after"])
        assert removed == []

    async def test_last_topic_closes_connection(self, context_factory, spy_factory, pubsub_spies, wait_until):
        """Test the subscriber connection is closed and recreated on demand."""
        ctx = context_factory(client_factory=spy_factory)
        sub = await ctx.hub.subscribe("orders", lambda message, topic: None)

        await ctx.hub.unsubscribe(sub)
        assert ctx.hub.connected is False
        assert ctx.hub.topics == []

        received = []
        await ctx.hub.subscribe("orders", lambda message, topic: received.append(message))
        await ctx.hub.publish("orders", "again")

        assert len(pubsub_spies) == 2
        assert await wait_until(lambda: received == ["again"])

    async def test_unsubscribe_unknown_topic_logs(self, context, caplog):
        """Test unsubscribing from an unknown topic only warns."""
        stray = Subscription(id=99, topic="nowhere", callback=lambda message, topic: None)

        with caplog.at_level(logging.WARNING):
            await context.hub.unsubscribe(stray)

        assert "nowhere" in caplog.text

    async def test_shutdown_drops_everything(self, context):
        """Test shutdown clears the registry and the connection."""
        await context.hub.subscribe("orders", lambda message, topic: None)

        await context.hub.shutdown()

        assert context.hub.topics == []
        assert context.hub.connected is False


def gated_factory(client_factory, gate: asyncio.Event, error: Exception = None):
    """Client factory whose store SUBSCRIBE waits for gate, then fails with error if given."""
    def factory():
        client = client_factory()
        real_pubsub = client.pubsub

        def pubsub(**kwargs):
            ps = real_pubsub(**kwargs)
            real_subscribe = ps.subscribe

            async def subscribe(*args, **kw):
                await gate.wait()
                if error is not None:
                    raise error
                return await real_subscribe(*args, **kw)

            ps.subscribe = AsyncMock(side_effect=subscribe)
            return ps

        client.pubsub = pubsub
        return client
    return factory


@pytest.mark.asyncio
class TestConcurrentSubscribe:
    """Test callers racing to be the first subscriber of a topic."""

    async def test_failed_subscribe_leaves_no_handles(self, context_factory, client_factory):
        """Test a failing SUBSCRIBE fails every caller waiting on it."""
        gate = asyncio.Event()
        ctx = context_factory(client_factory=gated_factory(client_factory, gate, ConnectionError("refused")))

        first = asyncio.create_task(ctx.hub.subscribe("orders", lambda message, topic: None))
        await asyncio.sleep(0)
        second = asyncio.create_task(ctx.hub.subscribe("orders", lambda message, topic: None))
        await asyncio.sleep(0)
        gate.set()

        results = await asyncio.gather(first, second, return_exceptions=True)

        assert all(isinstance(result, ConnectionError) for result in results)
        assert ctx.hub.subscriptions_for("orders") == []
        assert ctx.hub.topics == []
        assert ctx.hub.connected is False

    async def test_concurrent_subscribers_share_one_subscribe(self, context_factory, client_factory, wait_until):
        """Test a caller waiting on an in-flight SUBSCRIBE is registered once it succeeds."""
        gate = asyncio.Event()
        ctx = context_factory(client_factory=gated_factory(client_factory, gate))
        received = []

        first = asyncio.create_task(
            ctx.hub.subscribe("orders", lambda message, topic: received.append("first"))
        )
        await asyncio.sleep(0)
        second = asyncio.create_task(
            ctx.hub.subscribe("orders", lambda message, topic: received.append("second"))
        )
        await asyncio.sleep(0)
        gate.set()

        handles = await asyncio.gather(first, second)
        await ctx.hub.publish("orders", "order.1")

        assert ctx.hub.subscriptions_for("orders") == handles
        assert ctx.hub._pubsub.subscribe.await_count == 1
        assert await wait_until(lambda: received == ["first", "second"])


@pytest.mark.asyncio
class TestSharedVariable:
    """Test the pub/sub backed shared variable."""

    async def test_start_loads_current_value(self, context):
        """Test start() reads the stored value."""
        await context.store.set("service.mode", "normal")
        variable = SharedVariable(context.store, context.hub, "service.mode")

        await variable.start()

        assert variable.value == "normal"
        await variable.stop()

    async def test_follows_other_process(self, context_factory, wait_until):
        """Test a write in one context updates the variable in another."""
        writer_ctx, reader_ctx = context_factory(), context_factory()
        writer = SharedVariable(writer_ctx.store, writer_ctx.hub, "service.mode")
        reader = SharedVariable(reader_ctx.store, reader_ctx.hub, "service.mode")
        changes = []
        reader.add_listener(lambda value, previous: changes.append((previous, value)))
        await reader.start()

        await writer.set("maintenance")

        assert await wait_until(lambda: reader.value == "maintenance")
        assert changes == [(None, "maintenance")]
        await reader.stop()

    async def test_stop_unsubscribes(self, context):
        """Test stop() removes the subscription."""
        variable = SharedVariable(context.store, context.hub, "service.mode")
        await variable.start()

        await variable.stop()

        assert context.hub.topics == []

    async def test_set_applies_ttl(self, context):
        """Test the TTL is applied to every write."""
        variable = SharedVariable(context.store, context.hub, "service.mode", ttl_ms=60000)

        await variable.set("normal")

        assert 0 < await context.store.ttl("service.mode") <= 60
