"""
Health checks - liveness is trivial, readiness checks every dependency.

Readiness covers the database, Redis (pause flag and intake spool), the
Celery broker, and reports the webhook queue backlog.
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core import redis_client
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal
from app.workers.queue import JobQueue, QueueOptions

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitized: no infrastructure details in the response
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await redis_client.get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """Ping the broker; workers themselves are not reachable from here."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def _queue_summary() -> dict[str, Any] | None:
    try:
        async with AsyncSessionLocal() as session:
            return await JobQueue(session, QueueOptions.from_settings(settings)).get_metrics()
    except Exception as e:
        logger.warning("Queue metrics unavailable", extra_data={"error": str(e)})
        return None


async def check_readiness() -> dict[str, Any]:
    """
    Returns ``status`` ("healthy" / "degraded") plus one entry per
    dependency ("ok" or "error: ...") and the queue counts when available.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    result: dict[str, Any] = {"status": overall_status, **checks}
    if checks["db"] == _CHECK_OK and checks["redis"] == _CHECK_OK:
        result["queue"] = await _queue_summary()
    return result
