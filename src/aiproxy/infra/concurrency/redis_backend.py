"""Shared token buckets backed by a Redis Lua script.

Every instance pointing at the same Redis sees the same per-client
limits.  Refill and consume run inside one script, so two instances can
never both spend the last token.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from datetime import timedelta

from redis.asyncio import Redis
from redis.exceptions import NoScriptError

from .base import BucketStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lua script
# ---------------------------------------------------------------------------

# Refill a bucket, then take ARGV[4] tokens if at least one is available.
# KEYS[1] = bucket hash.
# ARGV[1] = capacity, ARGV[2] = refill/sec, ARGV[3] = now (seconds),
# ARGV[4] = cost (0 or 1), ARGV[5] = TTL seconds.
# Returns {taken (0/1), tokens-after as string}; Lua numbers would be
# truncated to integers on the way out.
_LUA_TAKE = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
    tokens = capacity
    ts = now
end
local elapsed = now - ts
if elapsed > 0 then
    tokens = math.min(capacity, tokens + elapsed * rate)
    ts = now
end
local taken = 0
if cost > 0 and tokens >= 1 then
    tokens = tokens - cost
    taken = 1
end
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(ts))
redis.call('EXPIRE', key, ttl)
return {taken, tostring(tokens)}
"""


class RedisBucketStore(BucketStore):
    """Distributed bucket map; idle buckets expire through the key TTL."""

    def __init__(
        self,
        redis: Redis,
        key_prefix: str,
        capacity: int,
        refill_per_second: float,
        idle_ttl: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._key_prefix = key_prefix
        self._capacity = capacity
        self._rate = refill_per_second
        self._ttl_seconds = max(1, math.ceil(idle_ttl.total_seconds()))
        self._clock = clock

        self._take_sha: str | None = None

    async def _ensure_script(self) -> str:
        if self._take_sha is None:
            self._take_sha = await self._redis.script_load(_LUA_TAKE)
        return self._take_sha

    async def _take(self, key: str, cost: int) -> tuple[bool, float]:
        args = (
            f"{self._key_prefix}:{key}",
            str(self._capacity),
            repr(self._rate),
            repr(self._clock()),
            str(cost),
            str(self._ttl_seconds),
        )
        sha = await self._ensure_script()
        try:
            taken, tokens = await self._redis.evalsha(sha, 1, *args)
        except NoScriptError:
            # Scripts are gone after a restart, failover or SCRIPT FLUSH.
            logger.warning("Bucket script %s missing from Redis; reloading", sha)
            self._take_sha = None
            sha = await self._ensure_script()
            taken, tokens = await self._redis.evalsha(sha, 1, *args)
        return int(taken) == 1, float(tokens)

    async def refill(self, key: str) -> float:
        _, tokens = await self._take(key, cost=0)
        return tokens

    async def consume(self, key: str) -> tuple[bool, float]:
        return await self._take(key, cost=1)

    async def aclose(self) -> None:
        # Redis client lifecycle is managed externally (infra/redis.py).
        pass
