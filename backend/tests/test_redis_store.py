"""
Redis stores.

Failure-mode tests point at a closed port. Tests against a live server run
only when TEST_REDIS_URL is set, e.g. TEST_REDIS_URL=redis://localhost:6379/15.
"""

import os
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as redis

from booking_lifecycle.core.errors import IntegrationError
from booking_lifecycle.repositories.interfaces import IdempotencyState
from booking_lifecycle.repositories.redis_store import RedisIdempotencyStore, RedisRateLimitStore

from conftest import NOW

TEST_REDIS_URL = os.environ.get("TEST_REDIS_URL")
requires_redis = pytest.mark.skipif(not TEST_REDIS_URL, reason="TEST_REDIS_URL not set")


@pytest_asyncio.fixture
async def unreachable():
    client = redis.from_url("redis://127.0.0.1:1/0", decode_responses=True, socket_connect_timeout=0.2)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def live():
    client = redis.from_url(TEST_REDIS_URL, decode_responses=True)
    yield client
    await client.aclose()


@pytest.mark.asyncio
async def test_rate_limit_fails_open(unreachable):
    store = RedisRateLimitStore(unreachable)
    decision = await store.hit("edit:cust_1", 5, 3600, NOW)
    assert decision.allowed
    assert decision.retry_after_seconds == 0
    assert (await store.peek("edit:cust_1", 5, 3600, NOW)).allowed


@pytest.mark.asyncio
async def test_idempotency_fails_closed(unreachable):
    store = RedisIdempotencyStore(unreachable)
    with pytest.raises(IntegrationError) as exc_info:
        await store.claim("key-1", "fp", 60)
    assert exc_info.value.retryable


@requires_redis
@pytest.mark.asyncio
async def test_fixed_window_counter(live):
    store = RedisRateLimitStore(live, namespace=f"test-{uuid.uuid4().hex[:8]}")
    decisions = [await store.hit("edit:cust_1", 2, 60, NOW) for _ in range(3)]
    assert [d.allowed for d in decisions] == [True, True, False]
    assert 0 < decisions[-1].retry_after_seconds <= 60
    assert (await store.peek("edit:cust_1", 2, 60, NOW)).count == 2


@requires_redis
@pytest.mark.asyncio
async def test_idempotency_claim_complete_release(live):
    store = RedisIdempotencyStore(live, namespace=f"test-{uuid.uuid4().hex[:8]}")

    assert await store.claim("key-1", "fp-1", 60) is None
    in_flight = await store.claim("key-1", "fp-1", 60)
    assert in_flight.state == IdempotencyState.IN_PROGRESS

    await store.complete("key-1", "fp-1", {"result": {"ok": True}}, 60)
    done = await store.claim("key-1", "fp-1", 60)
    assert done.state == IdempotencyState.COMPLETED
    assert done.result == {"result": {"ok": True}}

    # Completed records survive release; in-flight ones do not
    await store.release("key-1")
    assert (await store.claim("key-1", "fp-1", 60)).state == IdempotencyState.COMPLETED
    assert await store.claim("key-2", "fp-2", 60) is None
    await store.release("key-2")
    assert await store.claim("key-2", "fp-2", 60) is None
