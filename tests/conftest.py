"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.

Every store client created here is a fakeredis client attached to one
FakeServer per test, so several pools or contexts behave like several
processes sharing one Redis.
"""

import asyncio
import time
from typing import AsyncGenerator, Callable, List

import fakeredis
import pytest
import pytest_asyncio

from kvsync.cache.store import KVStore
from kvsync.context import CoordinationContext
from kvsync.network.connection_pool import ConnectionPool


async def poll_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or timeout seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    """Async polling helper for results delivered by background tasks."""
    return poll_until


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def fake_server() -> fakeredis.FakeServer:
    """A fresh in-memory Redis server shared by all clients of one test."""
    return fakeredis.FakeServer()


@pytest.fixture
def client_factory(fake_server: fakeredis.FakeServer):
    """Factory creating fakeredis clients bound to the test's server."""
    def factory() -> fakeredis.FakeAsyncRedis:
        return fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)
    return factory


# ============================================================================
# Pool Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def pool(client_factory) -> AsyncGenerator[ConnectionPool, None]:
    """Create a pool with default capacity (10 connections)."""
    pool = ConnectionPool(max_size=10, client_factory=client_factory)
    yield pool
    await pool.shutdown()


@pytest_asyncio.fixture
async def small_pool(client_factory) -> AsyncGenerator[ConnectionPool, None]:
    """Create a pool with capacity 2 for exhaustion testing."""
    pool = ConnectionPool(max_size=2, client_factory=client_factory)
    yield pool
    await pool.shutdown()


@pytest.fixture
def store(pool: ConnectionPool) -> KVStore:
    """Create a KVStore over the default pool."""
    return KVStore(pool)


# ============================================================================
# Context Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def context_factory(client_factory) -> AsyncGenerator[Callable[..., CoordinationContext], None]:
    """
    Factory fixture creating coordination contexts on the same store.

    Each context stands in for a separate process in the fleet.

    Usage:
        async def test_something(context_factory):
            first, second = context_factory(), context_factory()
    """
    contexts: List[CoordinationContext] = []

    def factory(**kwargs) -> CoordinationContext:
        kwargs.setdefault("client_factory", client_factory)
        kwargs.setdefault("hostname", f"host{len(contexts)}")
        ctx = CoordinationContext(**kwargs)
        contexts.append(ctx)
        return ctx

    yield factory

    for ctx in contexts:
        await ctx.shutdown()


@pytest.fixture
def context(context_factory) -> CoordinationContext:
    """Create a single coordination context."""
    return context_factory()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
