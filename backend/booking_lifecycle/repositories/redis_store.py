"""
Redis-backed rate limiting and idempotency.

Rate limiting runs a Lua script so check-and-increment is one atomic step on
the server, which keeps per-actor counters correct when several API workers
serve the same actor at once. Window expiry uses Redis' own clock (PEXPIRE);
the `now` argument only anchors the reported reset time.

Circuit Breaker Pattern:
  Rate limiting fails open: if Redis errors, the edit is admitted and the
  failure is counted. Idempotency does NOT fail open, because admitting a
  duplicate there could double-charge; it raises a retryable IntegrationError.
"""

import hashlib
import json
from datetime import datetime, timedelta
from typing import Any, Optional

import redis.asyncio as redis

from booking_lifecycle.core.errors import IntegrationError
from booking_lifecycle.core.logging import get_logger
from booking_lifecycle.repositories.interfaces import (
    IdempotencyRecord,
    IdempotencyState,
    IdempotencyStore,
    RateLimitDecision,
    RateLimitStore,
)

logger = get_logger(__name__)

# KEYS[1] counter key; ARGV[1] limit; ARGV[2] window ms.
# Returns {allowed, count, pttl}.
FIXED_WINDOW_HIT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return {0, current, redis.call('PTTL', KEYS[1])}
end
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, count, redis.call('PTTL', KEYS[1])}
"""


class RedisRateLimitStore(RateLimitStore):
    def __init__(self, client: redis.Redis, namespace: str = "booking"):
        self.redis = client
        self.namespace = namespace
        self.script = self.redis.register_script(FIXED_WINDOW_HIT)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:rl:{key}"

    @staticmethod
    def _decision(allowed: bool, count: int, limit: int, pttl_ms: int, window_seconds: int, now: datetime) -> RateLimitDecision:
        ttl_ms = pttl_ms if pttl_ms and pttl_ms > 0 else window_seconds * 1000
        reset_at = now + timedelta(milliseconds=ttl_ms)
        retry_after = 0 if allowed else max(1, -(-ttl_ms // 1000))
        return RateLimitDecision(allowed, count, limit, reset_at, retry_after)

    def _fail_open(self, key: str, limit: int, window_seconds: int, now: datetime, error: Exception) -> RateLimitDecision:
        logger.warning("rate_limit_store_unavailable", key=key, error=str(error))
        return RateLimitDecision(True, 0, limit, now + timedelta(seconds=window_seconds), 0)

    async def hit(self, key: str, limit: int, window_seconds: int, now: datetime) -> RateLimitDecision:
        try:
            allowed, count, pttl = await self.script(
                keys=[self._key(key)], args=[limit, window_seconds * 1000]
            )
        except redis.RedisError as e:
            return self._fail_open(key, limit, window_seconds, now, e)
        return self._decision(bool(allowed), int(count), limit, int(pttl), window_seconds, now)

    async def peek(self, key: str, limit: int, window_seconds: int, now: datetime) -> RateLimitDecision:
        try:
            pipe = self.redis.pipeline()
            pipe.get(self._key(key))
            pipe.pttl(self._key(key))
            raw_count, pttl = await pipe.execute()
        except redis.RedisError as e:
            return self._fail_open(key, limit, window_seconds, now, e)
        count = int(raw_count or 0)
        return self._decision(count < limit, count, limit, int(pttl), window_seconds, now)


class RedisIdempotencyStore(IdempotencyStore):
    def __init__(self, client: redis.Redis, namespace: str = "booking"):
        self.redis = client
        self.namespace = namespace

    def _key(self, raw: str) -> str:
        digest = hashlib.sha256(raw.encode()).hexdigest()
        return f"{self.namespace}:idem:{digest}"

    @staticmethod
    def _encode(record: IdempotencyRecord) -> str:
        return json.dumps({
            "key": record.key,
            "fingerprint": record.fingerprint,
            "state": record.state.value,
            "result": record.result,
        })

    @staticmethod
    def _decode(raw: str) -> IdempotencyRecord:
        data = json.loads(raw)
        return IdempotencyRecord(
            key=data["key"],
            fingerprint=data["fingerprint"],
            state=IdempotencyState(data["state"]),
            result=data.get("result"),
        )

    async def claim(self, key: str, fingerprint: str, ttl_seconds: int) -> Optional[IdempotencyRecord]:
        pending = IdempotencyRecord(key, fingerprint, IdempotencyState.IN_PROGRESS)
        try:
            claimed = await self.redis.set(self._key(key), self._encode(pending), nx=True, ex=ttl_seconds)
            if claimed:
                return None
            raw = await self.redis.get(self._key(key))
        except redis.RedisError as e:
            raise IntegrationError("Idempotency store unavailable") from e
        if raw is None:
            # Expired between SET and GET; try once more
            return await self.claim(key, fingerprint, ttl_seconds)
        return self._decode(raw)

    async def complete(self, key: str, fingerprint: str, result: dict[str, Any], ttl_seconds: int) -> None:
        record = IdempotencyRecord(key, fingerprint, IdempotencyState.COMPLETED, result)
        try:
            await self.redis.setex(self._key(key), ttl_seconds, self._encode(record))
        except redis.RedisError as e:
            raise IntegrationError("Idempotency store unavailable") from e

    async def release(self, key: str) -> None:
        try:
            raw = await self.redis.get(self._key(key))
            if raw is not None and self._decode(raw).state == IdempotencyState.IN_PROGRESS:
                await self.redis.delete(self._key(key))
        except redis.RedisError as e:
            raise IntegrationError("Idempotency store unavailable") from e
