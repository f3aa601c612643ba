"""Redis connection management."""

import redis.asyncio as aioredis

from marketplace.logging_config import get_logger

logger = get_logger(__name__)


async def open_redis(url: str) -> aioredis.Redis:
    """Open a Redis connection and verify it answers."""
    client = aioredis.from_url(url, decode_responses=True)
    await client.ping()
    logger.info("redis_connected")
    return client


async def close_redis(client: aioredis.Redis | None) -> None:
    """Close a Redis connection opened by ``open_redis``."""
    if client is not None:
        await client.aclose()
        logger.info("redis_closed")
