"""
Shared async Redis client.

Holds the queue pause flag and the intake spool. Connects lazily on first
use from REDIS_URL.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """redis://:secret@host -> redis://:****@host for log lines"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Return the process-wide client, connecting on first call."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info(
            "Redis client initialized",
            extra_data={"url": _mask_redis_url(settings.REDIS_URL)},
        )
    return _redis_client


async def close_redis() -> None:
    """Close the client; called on app shutdown and at the end of each Celery run."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
