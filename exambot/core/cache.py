import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def create_redis(url: str, socket_timeout: int = 5) -> redis.Redis:
    """Build the shared Redis client used by the session store."""
    return redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=socket_timeout,
    )


async def close_redis(client: redis.Redis) -> None:
    """Close Redis connection."""
    await client.aclose()
    logger.info("Redis connection closed")
