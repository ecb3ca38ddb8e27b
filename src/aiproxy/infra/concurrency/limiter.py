"""Per-client token bucket checks."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated, NoReturn

from fastapi import Depends, FastAPI
from redis.asyncio import Redis

from aiproxy.configs.config import AppConfig, get_app_config
from aiproxy.core.metrics import RATE_LIMIT_REJECTIONS_TOTAL
from aiproxy.infra.lifespan import get_app
from aiproxy.infra.redis import build_redis

from .base import BucketStore, RateLimited
from .bucket import retry_after_seconds
from .local_backend import LocalBucketStore
from .redis_backend import RedisBucketStore

logger = logging.getLogger(__name__)

_KEY_PREFIX = "aiproxy:bucket"

STAGE_ADMISSION = "admission"
STAGE_RECHECK = "recheck"


class RateLimiter:
    """Token-bucket rate limiter keyed by client identity.

    Usage::

        await limiter.check(client_id)     # RateLimited → 429
        async with gate.slot():
            await limiter.consume(client_id)   # RateLimited → 429
            ...

    ``check`` never spends a token; ``consume`` re-checks and spends
    exactly one.
    """

    def __init__(self, store: BucketStore, refill_per_second: float) -> None:
        self._store = store
        self._rate = refill_per_second

    async def check(self, client_id: str) -> float:
        """Refill and verify at least one token is available.

        Returns the current token count.

        Raises:
            RateLimited: when the bucket holds less than one token.
        """
        tokens = await self._store.refill(client_id)
        if tokens < 1:
            self._reject(client_id, tokens, STAGE_ADMISSION)
        return tokens

    async def consume(self, client_id: str) -> float:
        """Refill and spend one token.  Returns the tokens left.

        Raises:
            RateLimited: when the bucket was drained in the meantime.
        """
        taken, tokens = await self._store.consume(client_id)
        if not taken:
            self._reject(client_id, tokens, STAGE_RECHECK)
        return tokens

    def _reject(self, client_id: str, tokens: float, stage: str) -> NoReturn:
        retry_after = retry_after_seconds(tokens, self._rate)
        RATE_LIMIT_REJECTIONS_TOTAL.labels(stage=stage).inc()
        logger.info(
            "Rate limit exceeded for %s at %s (tokens=%.3f, retry_after=%ds)",
            client_id,
            stage,
            tokens,
            retry_after,
            extra={
                "client_id": client_id,
                "stage": stage,
                "retry_after_s": retry_after,
            },
        )
        raise RateLimited(
            "Rate limit exceeded. Try again later.",
            retry_after=retry_after,
            stage=stage,
        )

    async def aclose(self) -> None:
        await self._store.aclose()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


def build_bucket_store(config: AppConfig, redis_client: Redis | None) -> BucketStore:
    """Choose and construct the bucket store."""
    rl = config.rate_limit
    idle_ttl = timedelta(seconds=rl.idle_ttl_seconds)

    if redis_client is not None:
        logger.info(
            "RateLimiter: Redis backend (capacity=%d, refill=%.3f/s, prefix=%s)",
            rl.capacity,
            rl.refill_per_second,
            _KEY_PREFIX,
        )
        return RedisBucketStore(
            redis=redis_client,
            key_prefix=_KEY_PREFIX,
            capacity=rl.capacity,
            refill_per_second=rl.refill_per_second,
            idle_ttl=idle_ttl,
        )

    logger.info(
        "RateLimiter: local backend (capacity=%d, refill=%.3f/s)",
        rl.capacity,
        rl.refill_per_second,
    )
    return LocalBucketStore(
        capacity=rl.capacity,
        refill_per_second=rl.refill_per_second,
        idle_ttl=idle_ttl,
        sweep_interval=timedelta(seconds=rl.sweep_interval_seconds),
    )


async def build_rate_limiter(
    app: Annotated[FastAPI, Depends(get_app)],
    redis_client: Annotated[Redis | None, Depends(build_redis)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    """Create a ``RateLimiter``, attach to ``app.state``; close on shutdown."""
    limiter = RateLimiter(
        build_bucket_store(config, redis_client),
        refill_per_second=config.rate_limit.refill_per_second,
    )
    app.state.rate_limiter = limiter
    yield
    await limiter.aclose()
