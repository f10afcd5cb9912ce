"""
Worker pool: claims due webhook jobs and runs them concurrently.

Each job gets its own session and a hard timeout, and its lock is renewed
from the moment it is claimed, including while it waits for a free slot. A
timed-out handler is cancelled and counted as a failed attempt. ``close``
stops claiming and drains in-flight jobs within a bounded time; jobs still
running after that are cancelled and later picked up by the stalled sweep.
"""
from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import JobTimeoutError
from app.core.logging import get_logger, webhook_context
from app.webhooks.ledger import IdempotencyLedger
from app.workers.dispatch import EventDispatcher
from app.workers.queue import ClaimedJob, FailOutcome, JobQueue, QueueOptions

logger = get_logger(__name__)


@dataclass
class BatchResult:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    lock_lost: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "lock_lost": self.lock_lost,
        }


class WorkerPool:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: EventDispatcher,
        options: QueueOptions,
        *,
        concurrency: int = 5,
        batch_size: int = 20,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._options = options
        self._concurrency = max(concurrency, 1)
        self._batch_size = batch_size
        self._closing = False
        self._in_flight: set[asyncio.Task] = set()

    @property
    def closing(self) -> bool:
        return self._closing

    async def run_batch(self) -> BatchResult:
        """Claim one batch of due jobs and process it to completion."""
        result = BatchResult()
        if self._closing:
            return result

        async with self._session_factory() as db:
            jobs = await JobQueue(db, self._options).claim(self._batch_size)
        result.claimed = len(jobs)
        if not jobs:
            return result

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _guarded(job: ClaimedJob) -> None:
            # renew from the moment of the claim; a job waiting for a slot
            # is still owned by this worker
            renewer = asyncio.create_task(self._renew_lock_periodically(job))
            try:
                async with semaphore:
                    await self._run_job(job, result, renewer)
            finally:
                await _stop(renewer)

        tasks = [asyncio.create_task(_guarded(job)) for job in jobs]
        self._in_flight.update(tasks)
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._in_flight.difference_update(tasks)
        return result

    async def _run_job(self, job: ClaimedJob, result: BatchResult, renewer: asyncio.Task) -> None:
        with webhook_context(provider=job.provider, event_id=job.event_id, job_id=job.id):
            try:
                error = await self._execute(job)
            finally:
                await _stop(renewer)

            async with self._session_factory() as db:
                queue = JobQueue(db, self._options)
                if error is None:
                    if await queue.complete(job.id, job.lock_token):
                        result.completed += 1
                    else:
                        result.lock_lost += 1
                    return

                result.errors.append(error)
                outcome = await queue.fail(job, error)
            if outcome == FailOutcome.RETRY_SCHEDULED:
                result.retried += 1
            elif outcome == FailOutcome.FAILED:
                result.failed += 1
            else:
                result.lock_lost += 1

    async def _execute(self, job: ClaimedJob) -> str | None:
        """Run the dispatcher; returns an error description, or None on success."""
        try:
            async with self._session_factory() as db:
                dispatch = asyncio.create_task(self._dispatcher.dispatch(db, job))
                try:
                    done, _ = await asyncio.wait({dispatch}, timeout=self._options.job_timeout_seconds)
                except asyncio.CancelledError:
                    await _stop(dispatch)
                    raise
                if not done:
                    await _stop(dispatch)
                    return await self._record_timeout(job)
                # a handler's own TimeoutError lands here, already recorded by dispatch
                dispatch.result()
            return None
        except Exception as exc:
            return f"{type(exc).__name__}: {exc}"

    async def _record_timeout(self, job: ClaimedJob) -> str:
        timeout_error = JobTimeoutError(job.id, self._options.job_timeout_seconds)
        logger.error("Webhook job timed out", extra_data={"job_id": job.id})
        # the cancelled dispatch never recorded this attempt
        async with self._session_factory() as db:
            await IdempotencyLedger(db).record_failure(
                job.provider, job.event_id, timeout_error.message
            )
            await db.commit()
        return timeout_error.message

    async def _renew_lock_periodically(self, job: ClaimedJob) -> None:
        while True:
            await asyncio.sleep(self._options.lock_renew_seconds)
            try:
                async with self._session_factory() as db:
                    renewed = await JobQueue(db, self._options).renew_lock(job.id, job.lock_token)
            except (SQLAlchemyError, OSError) as exc:
                logger.warning(
                    "Job lock renewal failed",
                    extra_data={"job_id": job.id, "error": str(exc)},
                )
                continue
            if not renewed:
                logger.warning("Could not renew job lock", extra_data={"job_id": job.id})
                return

    async def close(self, timeout: float = 10.0) -> bool:
        """
        Stop claiming and wait for in-flight jobs.

        Returns True if everything drained within ``timeout``.
        """
        self._closing = True
        pending = [task for task in self._in_flight if not task.done()]
        if not pending:
            return True

        logger.info("Draining webhook worker pool", extra_data={"in_flight": len(pending)})
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(
                "Worker pool closed with jobs still running",
                extra_data={"cancelled": len(still_running)},
            )
            return False
        return True


async def _stop(task: asyncio.Task) -> None:
    """Cancel ``task`` and wait for it to finish."""
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
