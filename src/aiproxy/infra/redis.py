"""Async Redis client lifespan dependency.

``build_redis`` creates a Redis client when ``third_party.redis_uri`` is
set, verifies the connection, and falls back to ``None`` when Redis is
not configured or unreachable.  The bucket-store builder declares
``Depends(build_redis)`` to receive the shared client.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis
from redis.exceptions import RedisError

from aiproxy.configs.config import AppConfig, get_app_config

logger = logging.getLogger(__name__)


async def build_redis(
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[Redis | None, None]:
    """Create a Redis client; yield ``None`` if unset or unreachable."""
    uri = config.third_party.redis_uri
    if not uri:
        logger.info("Redis not configured -- rate-limit buckets stay local.")
        yield None
        return

    client = Redis.from_url(uri, decode_responses=True)
    verified: Redis | None = None
    try:
        await client.ping()
        verified = client
    except (RedisError, OSError):
        logger.warning(
            "Redis unavailable at %s -- falling back to local buckets.", uri
        )
        await client.aclose()

    yield verified

    if verified is not None:
        await client.aclose()
