"""
Durable webhook job queue on top of the ``webhook_jobs`` table.

At-least-once semantics: a job is claimed with a compare-and-set from
``waiting`` to ``active`` plus a fresh lock token, and only the holder of the
current token can complete or fail it. A worker that dies leaves an expired
lock behind; ``recover_stalled`` puts such jobs back in line, up to
``max_stalled_count`` times.

Retry is driven only by the handler outcome: ``fail`` reschedules with
exponential backoff until ``max_attempts`` attempts were made, then the job
and its raw event become terminally failed.
"""
from __future__ import annotations

import enum
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import redis_client
from app.core.config import Settings
from app.core.logging import get_logger, log_async_operation
from app.db.database import utcnow
from app.db.models.webhook_job import JobState, WebhookJob
from app.webhooks.ledger import IdempotencyLedger

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 1000
# 2**63 seconds is beyond any sane cap; stop doubling well before that
_MAX_BACKOFF_EXPONENT = 62


def calculate_backoff_seconds(
    attempts_made: int,
    *,
    base_seconds: float,
    max_backoff_seconds: float,
) -> float:
    """
    Delay before the next attempt after ``attempts_made`` failed attempts.

        backoff = base_seconds * 2 ** (attempts_made - 1)

    so with a 2s base: 2s, 4s, 8s, ... capped at max_backoff_seconds. Large
    attempt counts never compute a huge power.
    """
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0
    if base_seconds >= max_backoff_seconds:
        return float(max_backoff_seconds)

    exponent = max(attempts_made - 1, 0)
    if exponent >= _MAX_BACKOFF_EXPONENT:
        return float(max_backoff_seconds)
    return float(min(base_seconds * (2 ** exponent), max_backoff_seconds))


@dataclass(frozen=True)
class QueueOptions:
    max_attempts: int = 10
    backoff_base_seconds: float = 2.0
    max_backoff_seconds: float = 3600.0
    job_timeout_seconds: float = 30.0
    stalled_check_interval_seconds: int = 60
    max_stalled_count: int = 2
    lock_duration_seconds: float = 30.0
    lock_renew_seconds: float = 15.0
    keep_completed: int = 100
    keep_failed: int = 500
    paused_key: str = "webhooks:queue:paused"

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueOptions":
        return cls(
            max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
            backoff_base_seconds=settings.WEBHOOK_BACKOFF_BASE_SECONDS,
            max_backoff_seconds=settings.WEBHOOK_MAX_BACKOFF_SECONDS,
            job_timeout_seconds=settings.WEBHOOK_JOB_TIMEOUT_SECONDS,
            stalled_check_interval_seconds=settings.WEBHOOK_STALLED_CHECK_INTERVAL_SECONDS,
            max_stalled_count=settings.WEBHOOK_MAX_STALLED_COUNT,
            lock_duration_seconds=settings.WEBHOOK_LOCK_DURATION_SECONDS,
            lock_renew_seconds=settings.WEBHOOK_LOCK_RENEW_SECONDS,
            keep_completed=settings.WEBHOOK_KEEP_COMPLETED,
            keep_failed=settings.WEBHOOK_KEEP_FAILED,
            paused_key=settings.WEBHOOK_QUEUE_PAUSED_KEY,
        )


@dataclass(frozen=True)
class ClaimedJob:
    """Detached snapshot of an active job, safe to pass between sessions"""

    id: int
    lock_token: str
    provider: str
    raw_event_id: int
    event_id: str
    event_type: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int

    @property
    def attempt(self) -> int:
        """1-based number of the attempt now running"""
        return self.attempts_made + 1


class FailOutcome(str, enum.Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    LOCK_LOST = "lock_lost"


def _truncate(error: str) -> str:
    return error[:_MAX_ERROR_LENGTH]


class JobQueue:
    """
    Queue operations bound to one session.

    ``enqueue`` only flushes, so the receiver commits it together with the
    raw event. Every other operation commits its own transition.
    """

    def __init__(self, db: AsyncSession, options: QueueOptions):
        self.db = db
        self.options = options

    async def enqueue(
        self,
        *,
        provider: str,
        raw_event_id: int,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        delay_seconds: float = 0,
    ) -> WebhookJob:
        """Add a waiting job; returns it with ``id`` populated."""
        job = WebhookJob(
            provider=provider,
            raw_event_id=raw_event_id,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            state=JobState.WAITING,
            attempts_made=0,
            max_attempts=self.options.max_attempts,
            run_at=utcnow() + timedelta(seconds=delay_seconds),
            stalled_count=0,
        )
        self.db.add(job)
        await self.db.flush()
        logger.debug(
            "Webhook job enqueued",
            extra_data={"job_id": job.id, "provider": provider, "event_id": event_id},
        )
        return job

    async def find_open_job(self, provider: str, event_id: str) -> WebhookJob | None:
        """A waiting or active job for the event, if one exists."""
        result = await self.db.execute(
            select(WebhookJob)
            .where(
                WebhookJob.provider == provider,
                WebhookJob.event_id == event_id,
                WebhookJob.state.in_((JobState.WAITING, JobState.ACTIVE)),
            )
            .order_by(WebhookJob.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get(self, job_id: int) -> WebhookJob | None:
        result = await self.db.execute(
            select(WebhookJob)
            .where(WebhookJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Pause / resume (shared by every process through Redis)
    # ------------------------------------------------------------------

    async def is_paused(self) -> bool:
        client = await redis_client.get_redis()
        return bool(await client.get(self.options.paused_key))

    async def pause(self) -> None:
        client = await redis_client.get_redis()
        await client.set(self.options.paused_key, "1")
        logger.warning("Webhook queue paused")

    async def resume(self) -> None:
        client = await redis_client.get_redis()
        await client.delete(self.options.paused_key)
        logger.info("Webhook queue resumed")

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim(self, limit: int) -> list[ClaimedJob]:
        """
        Claim up to ``limit`` due jobs, oldest first.

        Each candidate is taken with a CAS UPDATE; a job another worker
        claimed in between is skipped.
        """
        if limit <= 0 or await self.is_paused():
            return []

        now = utcnow()
        result = await self.db.execute(
            select(WebhookJob.id)
            .where(WebhookJob.state == JobState.WAITING, WebhookJob.run_at <= now)
            .order_by(WebhookJob.run_at, WebhookJob.id)
            .limit(limit)
        )
        candidate_ids = list(result.scalars().all())

        claimed_ids: list[tuple[int, str]] = []
        locked_until = now + timedelta(seconds=self.options.lock_duration_seconds)
        for job_id in candidate_ids:
            token = secrets.token_hex(16)
            update_result = await self.db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id, WebhookJob.state == JobState.WAITING)
                .values(state=JobState.ACTIVE, lock_token=token, locked_until=locked_until)
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount > 0:
                claimed_ids.append((job_id, token))
        await self.db.commit()

        if not claimed_ids:
            return []

        tokens = dict(claimed_ids)
        rows = await self.db.execute(
            select(WebhookJob).where(WebhookJob.id.in_(tokens.keys())).order_by(WebhookJob.id)
            .execution_options(populate_existing=True)
        )
        claimed = [
            ClaimedJob(
                id=job.id,
                lock_token=tokens[job.id],
                provider=job.provider,
                raw_event_id=job.raw_event_id,
                event_id=job.event_id,
                event_type=job.event_type,
                payload=job.payload,
                attempts_made=job.attempts_made,
                max_attempts=job.max_attempts,
            )
            for job in rows.scalars().all()
        ]
        logger.debug("Claimed webhook jobs", extra_data={"count": len(claimed)})
        return claimed

    async def renew_lock(self, job_id: int, lock_token: str) -> bool:
        """Extend the lock; False if the job was taken away from this worker."""
        result = await self.db.execute(
            update(WebhookJob)
            .where(
                WebhookJob.id == job_id,
                WebhookJob.lock_token == lock_token,
                WebhookJob.state == JobState.ACTIVE,
            )
            .values(locked_until=utcnow() + timedelta(seconds=self.options.lock_duration_seconds))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def complete(self, job_id: int, lock_token: str) -> bool:
        now = utcnow()
        result = await self.db.execute(
            update(WebhookJob)
            .where(
                WebhookJob.id == job_id,
                WebhookJob.lock_token == lock_token,
                WebhookJob.state == JobState.ACTIVE,
            )
            .values(
                state=JobState.COMPLETED,
                attempts_made=WebhookJob.attempts_made + 1,
                lock_token=None,
                locked_until=None,
                finished_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 0:
            logger.warning("Lost lock before completing job", extra_data={"job_id": job_id})
            return False
        return True

    async def fail(self, job: ClaimedJob, error: str) -> FailOutcome:
        """
        Record a failed attempt.

        Reschedules with backoff while attempts remain; otherwise the job is
        failed and its raw event is marked failed in the same transaction.
        """
        attempts_made = job.attempts_made + 1
        error = _truncate(error)
        conditions = (
            WebhookJob.id == job.id,
            WebhookJob.lock_token == job.lock_token,
            WebhookJob.state == JobState.ACTIVE,
        )

        if attempts_made >= job.max_attempts:
            result = await self.db.execute(
                update(WebhookJob)
                .where(*conditions)
                .values(
                    state=JobState.FAILED,
                    attempts_made=attempts_made,
                    last_error=error,
                    lock_token=None,
                    locked_until=None,
                    finished_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.db.rollback()
                return FailOutcome.LOCK_LOST
            await IdempotencyLedger(self.db).mark_failed(job.provider, job.event_id, error)
            await self.db.commit()
            logger.error(
                "Webhook job failed permanently",
                extra_data={"job_id": job.id, "attempts_made": attempts_made, "error": error},
            )
            return FailOutcome.FAILED

        delay = calculate_backoff_seconds(
            attempts_made,
            base_seconds=self.options.backoff_base_seconds,
            max_backoff_seconds=self.options.max_backoff_seconds,
        )
        result = await self.db.execute(
            update(WebhookJob)
            .where(*conditions)
            .values(
                state=JobState.WAITING,
                attempts_made=attempts_made,
                last_error=error,
                lock_token=None,
                locked_until=None,
                run_at=utcnow() + timedelta(seconds=delay),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 0:
            return FailOutcome.LOCK_LOST
        logger.warning(
            "Webhook job retry scheduled",
            extra_data={
                "job_id": job.id,
                "attempts_made": attempts_made,
                "max_attempts": job.max_attempts,
                "retry_in_seconds": delay,
            },
        )
        return FailOutcome.RETRY_SCHEDULED

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    @log_async_operation("recover_stalled_webhook_jobs")
    async def recover_stalled(self) -> dict[str, int]:
        """
        Re-queue active jobs whose lock expired.

        A job that already stalled ``max_stalled_count`` times is failed
        instead, together with its raw event.
        """
        now = utcnow()
        result = await self.db.execute(
            select(WebhookJob).where(
                WebhookJob.state == JobState.ACTIVE,
                WebhookJob.locked_until < now,
            )
            # CAS updates bypass the identity map
            .execution_options(populate_existing=True)
        )
        stalled = list(result.scalars().all())
        requeued = 0
        failed = 0
        ledger = IdempotencyLedger(self.db)

        for job in stalled:
            conditions = (
                WebhookJob.id == job.id,
                WebhookJob.state == JobState.ACTIVE,
                WebhookJob.lock_token == job.lock_token,
            )
            if job.stalled_count >= self.options.max_stalled_count:
                error = "job stalled more than allowable limit"
                update_result = await self.db.execute(
                    update(WebhookJob)
                    .where(*conditions)
                    .values(
                        state=JobState.FAILED,
                        stalled_count=job.stalled_count + 1,
                        last_error=error,
                        lock_token=None,
                        locked_until=None,
                        finished_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if update_result.rowcount > 0:
                    await ledger.mark_failed(job.provider, job.event_id, error)
                    failed += 1
            else:
                update_result = await self.db.execute(
                    update(WebhookJob)
                    .where(*conditions)
                    .values(
                        state=JobState.WAITING,
                        stalled_count=job.stalled_count + 1,
                        lock_token=None,
                        locked_until=None,
                        run_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if update_result.rowcount > 0:
                    requeued += 1

        await self.db.commit()
        if requeued or failed:
            logger.warning(
                "Recovered stalled webhook jobs",
                extra_data={"requeued": requeued, "failed": failed},
            )
        return {"requeued": requeued, "failed": failed}

    @log_async_operation("prune_webhook_jobs")
    async def prune(self) -> dict[str, int]:
        """Keep only the newest completed / failed jobs per retention settings."""
        removed = {}
        for state, keep in (
            (JobState.COMPLETED, self.options.keep_completed),
            (JobState.FAILED, self.options.keep_failed),
        ):
            keep_ids = (
                select(WebhookJob.id)
                .where(WebhookJob.state == state)
                .order_by(WebhookJob.finished_at.desc(), WebhookJob.id.desc())
                .limit(keep)
            )
            result = await self.db.execute(
                delete(WebhookJob)
                .where(WebhookJob.state == state, WebhookJob.id.not_in(keep_ids))
                .execution_options(synchronize_session=False)
            )
            removed[state.value] = result.rowcount
        await self.db.commit()
        return removed

    async def get_metrics(self) -> dict[str, Any]:
        """Job counts per state; ``waiting`` excludes ``delayed`` jobs."""
        now = utcnow()
        result = await self.db.execute(
            select(WebhookJob.state, func.count()).group_by(WebhookJob.state)
        )
        counts = {state: count for state, count in result.all()}

        delayed_result = await self.db.execute(
            select(func.count())
            .select_from(WebhookJob)
            .where(WebhookJob.state == JobState.WAITING, WebhookJob.run_at > now)
        )
        delayed = delayed_result.scalar_one()

        return {
            "waiting": counts.get(JobState.WAITING, 0) - delayed,
            "delayed": delayed,
            "active": counts.get(JobState.ACTIVE, 0),
            "completed": counts.get(JobState.COMPLETED, 0),
            "failed": counts.get(JobState.FAILED, 0),
            "paused": await self.is_paused(),
        }
