"""
Worker-side dispatch of one webhook job to its handler.
"""
from __future__ import annotations

import enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.raw_webhook_event import RawEventStatus
from app.webhooks.ledger import IdempotencyLedger
from app.workers.queue import ClaimedJob
from app.workers.registry import HandlerContext, HandlerRegistry

logger = get_logger(__name__)


class DispatchResult(str, enum.Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    UNHANDLED = "unhandled"


class EventDispatcher:
    """
    Applies a job's event exactly once at the ledger level.

    1. Fresh read of the raw event status: ``processed`` short-circuits.
    2. ``processing`` is committed before the handler runs.
    3. The handler's mutations and ``processed`` commit together.
    4. On failure the mutations roll back, the attempt is recorded and the
       exception propagates so the queue applies its retry policy.
    """

    def __init__(self, registry: HandlerRegistry, services: dict[str, Any] | None = None):
        self.registry = registry
        self.services = services or {}

    async def dispatch(self, db: AsyncSession, job: ClaimedJob) -> DispatchResult:
        ledger = IdempotencyLedger(db)

        status = await ledger.status_of(job.provider, job.event_id)
        if status == RawEventStatus.PROCESSED:
            logger.info(
                "Event already processed, skipping handler",
                extra_data={"job_id": job.id, "event_id": job.event_id},
            )
            return DispatchResult.ALREADY_PROCESSED

        handler = self.registry.resolve(job.provider, job.event_type)
        if handler is None:
            logger.info(
                "No handler for event type, acknowledging",
                extra_data={"provider": job.provider, "event_type": job.event_type},
            )
            await ledger.mark_processed(job.provider, job.event_id)
            await db.commit()
            return DispatchResult.UNHANDLED

        await ledger.mark_processing(job.provider, job.event_id)
        await db.commit()

        context = HandlerContext(
            db=db,
            provider=job.provider,
            event_id=job.event_id,
            event_type=job.event_type,
            payload=job.payload,
            attempt=job.attempt,
            services=self.services,
        )
        try:
            summary = await handler(context)
            await ledger.mark_processed(job.provider, job.event_id)
            await db.commit()
        except Exception as exc:
            await db.rollback()
            await ledger.record_failure(job.provider, job.event_id, f"{type(exc).__name__}: {exc}")
            await db.commit()
            logger.warning(
                "Webhook handler failed",
                extra_data={
                    "job_id": job.id,
                    "event_type": job.event_type,
                    "attempt": job.attempt,
                    "max_attempts": job.max_attempts,
                    "error": str(exc),
                },
            )
            raise

        logger.info(
            "Webhook event processed",
            extra_data={"job_id": job.id, "event_type": job.event_type, "result": summary},
        )
        return DispatchResult.PROCESSED
