"""
Celery tasks driving the webhook queue.

Celery workers are synchronous, so every task runs its coroutine in a fresh
event loop (``run_async``) with a database engine of its own
(``task_session_factory``) and builds its own webhook runtime.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import delete

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.db.database import task_session_factory, utcnow
from app.db.models.raw_webhook_event import RAW_EVENT_MODELS, RawEventStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.webhooks.runtime import build_webhook_runtime
from app.workers.queue import JobQueue

logger = get_logger(__name__)

# Batches per process_webhook_jobs run while the queue keeps returning full batches
_MAX_BATCHES_PER_RUN = 5


@contextmanager
def get_event_loop():
    """
    New event loop for one task run, torn down completely afterwards.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # the Redis singleton is bound to this loop; the next run needs a new one
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at end of task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Run a coroutine from a sync Celery task, with its own correlation id"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.process_webhook_jobs")
def process_webhook_jobs() -> dict:
    """
    Claim and run due webhook jobs.

    Scheduled every WEBHOOK_POLL_INTERVAL_SECONDS by beat; keeps claiming
    while batches come back full, up to a few batches per run.
    """

    async def _process():
        totals = {"claimed": 0, "completed": 0, "retried": 0, "failed": 0, "lock_lost": 0}
        async with task_session_factory() as session_factory:
            runtime = build_webhook_runtime(settings)
            pool = runtime.worker_pool(session_factory)
            try:
                for _ in range(_MAX_BATCHES_PER_RUN):
                    result = await pool.run_batch()
                    for key, value in result.as_dict().items():
                        totals[key] += value
                    if result.claimed < settings.WEBHOOK_WORKER_BATCH_SIZE:
                        break
            finally:
                await pool.close(settings.WEBHOOK_CLOSE_TIMEOUT_SECONDS)

        if totals["claimed"]:
            logger.info("Processed webhook jobs", extra_data=totals)
        return totals

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.recover_stalled_webhook_jobs")
def recover_stalled_webhook_jobs() -> dict:
    """Put jobs whose worker died back in line (or fail them past the stall limit)"""

    async def _recover():
        async with task_session_factory() as session_factory:
            runtime = build_webhook_runtime(settings)
            async with session_factory() as db:
                return await JobQueue(db, runtime.queue_options).recover_stalled()

    return run_async(_recover())


@celery_app.task(name="app.workers.tasks.prune_webhook_jobs")
def prune_webhook_jobs() -> dict:
    async def _prune():
        async with task_session_factory() as session_factory:
            runtime = build_webhook_runtime(settings)
            async with session_factory() as db:
                removed = await JobQueue(db, runtime.queue_options).prune()
        logger.info("Pruned finished webhook jobs", extra_data=removed)
        return removed

    return run_async(_prune())


@celery_app.task(name="app.workers.tasks.replay_spooled_webhooks")
def replay_spooled_webhooks() -> dict:
    """Re-ingest deliveries spooled to Redis while the database was unavailable"""

    async def _replay():
        async with task_session_factory() as session_factory:
            runtime = build_webhook_runtime(settings)
            return await runtime.spool.replay(runtime.receiver, session_factory)

    return run_async(_replay())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = 30) -> dict:
    """Delete processed raw and unified events older than ``days``"""

    async def _cleanup():
        cutoff = utcnow() - timedelta(days=days)
        deleted = {}
        async with task_session_factory() as session_factory:
            async with session_factory() as db:
                for provider, model in RAW_EVENT_MODELS.items():
                    result = await db.execute(
                        delete(model).where(
                            model.status == RawEventStatus.PROCESSED,
                            model.received_at < cutoff,
                        )
                    )
                    deleted[provider] = result.rowcount
                result = await db.execute(
                    delete(WebhookEvent).where(
                        WebhookEvent.status == WebhookEventStatus.PROCESSED,
                        WebhookEvent.created_at < cutoff,
                    )
                )
                deleted["unified"] = result.rowcount
                await db.commit()

        logger.info(
            "Cleaned up old webhook events",
            extra_data={"deleted": deleted, "cutoff_days": days},
        )
        return deleted

    return run_async(_cleanup())
