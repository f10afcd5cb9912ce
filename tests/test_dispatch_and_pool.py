"""
Tests for handler dispatch and the worker pool

- app/workers/registry.py
- app/workers/dispatch.py
- app/workers/pool.py
"""
import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import HandlerError
from app.db.models.listing import Listing
from app.db.models.raw_webhook_event import FinixWebhookEvent, RawEventStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.db.models.webhook_job import JobState, WebhookJob
from app.webhooks.adapters import InboundEvent
from app.webhooks.ledger import IdempotencyLedger
from app.workers.dispatch import DispatchResult, EventDispatcher
from app.workers.pool import WorkerPool
from app.workers.queue import JobQueue, QueueOptions
from app.workers.registry import HandlerContext, HandlerRegistry


async def _record_and_enqueue(
    db: AsyncSession,
    options: QueueOptions,
    event_id: str = "evt_1",
    event_type: str = "transfer.updated",
) -> WebhookJob:
    receipt = await IdempotencyLedger(db).record_receipt(
        InboundEvent(provider="finix", event_id=event_id, event_type=event_type, payload={"n": 1})
    )
    job = await JobQueue(db, options).enqueue(
        provider="finix",
        raw_event_id=receipt.record.id,
        event_id=event_id,
        event_type=event_type,
        payload={"n": 1},
    )
    await db.commit()
    return job


def _pool(session_factory, registry: HandlerRegistry, options: QueueOptions) -> WorkerPool:
    return WorkerPool(session_factory, EventDispatcher(registry), options, concurrency=1, batch_size=10)


async def _drain(pool: WorkerPool, max_batches: int = 20) -> int:
    claimed = 0
    for _ in range(max_batches):
        result = await pool.run_batch()
        if result.claimed == 0:
            break
        claimed += result.claimed
    return claimed


# ============================================================================
# Registry
# ============================================================================


class TestHandlerRegistry:

    @pytest.mark.unit
    def test_register_and_resolve(self):
        registry = HandlerRegistry()

        async def handler(ctx):
            return None

        registry.register("finix", "transfer.updated", handler)
        assert registry.resolve("finix", "transfer.updated") is handler
        assert registry.resolve("finix", "transfer.created") is None
        assert registry.resolve("getstream", "transfer.updated") is None

    @pytest.mark.unit
    def test_duplicate_registration_rejected(self):
        registry = HandlerRegistry()

        async def handler(ctx):
            return None

        registry.register("finix", "transfer.updated", handler)
        with pytest.raises(ValueError):
            registry.register("finix", "transfer.updated", handler)

    @pytest.mark.unit
    def test_decorator_registers_every_type(self):
        registry = HandlerRegistry()

        @registry.on("getstream", "reaction.new", "reaction.deleted")
        async def handler(ctx):
            return None

        assert registry.event_types("getstream") == ["reaction.deleted", "reaction.new"]
        assert len(registry) == 2


# ============================================================================
# Dispatch
# ============================================================================


class TestDispatch:

    @pytest.mark.asyncio
    async def test_handler_runs_once_and_event_is_processed(
        self, db_session, session_factory, queue_options, fetch
    ):
        registry = HandlerRegistry()
        seen: list[HandlerContext] = []

        @registry.on("finix", "transfer.updated")
        async def handler(ctx: HandlerContext):
            seen.append(ctx)
            return "ok"

        await _record_and_enqueue(db_session, queue_options)
        await _drain(_pool(session_factory, registry, queue_options))

        assert len(seen) == 1
        assert seen[0].event_id == "evt_1"
        assert seen[0].payload == {"n": 1}
        assert seen[0].attempt == 1

        raw = (await fetch(FinixWebhookEvent, event_id="evt_1"))[0]
        assert raw.status == RawEventStatus.PROCESSED
        assert (await fetch(WebhookJob, event_id="evt_1"))[0].state == JobState.COMPLETED
        assert (await fetch(WebhookEvent, event_id="evt_1"))[0].status == WebhookEventStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_already_processed_event_skips_handler(self, db_session, session_factory, queue_options):
        registry = HandlerRegistry()
        calls = []

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            calls.append(ctx.event_id)

        job = await _record_and_enqueue(db_session, queue_options)
        await IdempotencyLedger(db_session).mark_processed("finix", "evt_1")
        await db_session.commit()

        async with session_factory() as db:
            claimed = (await JobQueue(db, queue_options).claim(1))[0]
        async with session_factory() as db:
            result = await EventDispatcher(registry).dispatch(db, claimed)

        assert claimed.id == job.id
        assert result == DispatchResult.ALREADY_PROCESSED
        assert calls == []

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(
        self, db_session, session_factory, queue_options, fetch
    ):
        await _record_and_enqueue(db_session, queue_options, event_type="settlement.created")
        await _drain(_pool(session_factory, HandlerRegistry(), queue_options))

        raw = (await fetch(FinixWebhookEvent, event_id="evt_1"))[0]
        assert raw.status == RawEventStatus.PROCESSED
        assert (await fetch(WebhookJob, event_id="evt_1"))[0].state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_handler_rolls_back_its_mutations(
        self, db_session, session_factory, fetch
    ):
        options = QueueOptions(max_attempts=1, backoff_base_seconds=0)
        registry = HandlerRegistry()

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            ctx.db.add(Listing(title="half-applied"))
            await ctx.db.flush()
            raise HandlerError("boom")

        await _record_and_enqueue(db_session, options)
        await _drain(_pool(session_factory, registry, options))

        assert await fetch(Listing) == []
        raw = (await fetch(FinixWebhookEvent, event_id="evt_1"))[0]
        assert raw.status == RawEventStatus.FAILED
        assert "boom" in raw.error


# ============================================================================
# Retry policy through the pool
# ============================================================================


class TestRetries:

    @pytest.mark.asyncio
    async def test_handler_invoked_exactly_max_attempts_times(self, db_session, session_factory, fetch):
        options = QueueOptions(max_attempts=4, backoff_base_seconds=0)
        registry = HandlerRegistry()
        attempts = []

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            attempts.append(ctx.attempt)
            raise RuntimeError("still broken")

        await _record_and_enqueue(db_session, options)
        await _drain(_pool(session_factory, registry, options))

        assert attempts == [1, 2, 3, 4]
        job = (await fetch(WebhookJob, event_id="evt_1"))[0]
        assert job.state == JobState.FAILED
        assert job.attempts_made == 4
        assert "still broken" in job.last_error
        raw = (await fetch(FinixWebhookEvent, event_id="evt_1"))[0]
        assert raw.status == RawEventStatus.FAILED
        assert raw.attempt_count == 4

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, db_session, session_factory, fetch):
        options = QueueOptions(max_attempts=5, backoff_base_seconds=0)
        registry = HandlerRegistry()
        calls = []

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            calls.append(ctx.attempt)
            if len(calls) < 3:
                raise RuntimeError("not yet")
            return "done"

        await _record_and_enqueue(db_session, options)
        await _drain(_pool(session_factory, registry, options))

        assert calls == [1, 2, 3]
        raw = (await fetch(FinixWebhookEvent, event_id="evt_1"))[0]
        assert raw.status == RawEventStatus.PROCESSED
        assert raw.attempt_count == 2
        job = (await fetch(WebhookJob, event_id="evt_1"))[0]
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 3

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self, db_session, session_factory, fetch):
        options = QueueOptions(max_attempts=2, backoff_base_seconds=60, job_timeout_seconds=0.05)
        registry = HandlerRegistry()

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            await asyncio.sleep(5)

        await _record_and_enqueue(db_session, options)
        pool = _pool(session_factory, registry, options)
        result = await pool.run_batch()

        assert result.retried == 1
        assert "timed out" in result.errors[0]
        job = (await fetch(WebhookJob, event_id="evt_1"))[0]
        assert job.state == JobState.WAITING
        assert job.attempts_made == 1
        raw = (await fetch(FinixWebhookEvent, event_id="evt_1"))[0]
        assert raw.status == RawEventStatus.PENDING
        assert raw.attempt_count == 1

    @pytest.mark.asyncio
    async def test_handler_timeout_error_counted_once(self, db_session, session_factory, fetch):
        options = QueueOptions(max_attempts=2, backoff_base_seconds=60, job_timeout_seconds=5)
        registry = HandlerRegistry()

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            raise TimeoutError("upstream slow")

        await _record_and_enqueue(db_session, options)
        result = await _pool(session_factory, registry, options).run_batch()

        assert result.retried == 1
        assert result.errors == ["TimeoutError: upstream slow"]
        raw = (await fetch(FinixWebhookEvent, event_id="evt_1"))[0]
        assert raw.attempt_count == 1
        assert (await fetch(WebhookJob, event_id="evt_1"))[0].attempts_made == 1


# ============================================================================
# Lock ownership
# ============================================================================


class TestLockRenewal:

    @pytest.mark.asyncio
    async def test_jobs_waiting_for_a_slot_keep_their_lock(self, db_session, session_factory, fetch):
        options = QueueOptions(
            backoff_base_seconds=0, lock_duration_seconds=0.5, lock_renew_seconds=0.1, job_timeout_seconds=5
        )
        registry = HandlerRegistry()
        handled: list[str] = []

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            handled.append(ctx.event_id)
            await asyncio.sleep(0.8)

        await _record_and_enqueue(db_session, options, event_id="evt_a")
        await _record_and_enqueue(db_session, options, event_id="evt_b")
        batch = asyncio.create_task(_pool(session_factory, registry, options).run_batch())

        # evt_b is still queued behind evt_a, past its original lock expiry
        await asyncio.sleep(0.65)
        async with session_factory() as db:
            swept = await JobQueue(db, options).recover_stalled()
        result = await batch

        assert swept == {"requeued": 0, "failed": 0}
        assert result.completed == 2
        assert result.lock_lost == 0
        assert handled == ["evt_a", "evt_b"]
        assert [job.state for job in await fetch(WebhookJob)] == [JobState.COMPLETED, JobState.COMPLETED]


# ============================================================================
# Shutdown
# ============================================================================


class TestClose:

    @pytest.mark.asyncio
    async def test_closed_pool_claims_nothing(self, db_session, session_factory, queue_options):
        pool = _pool(session_factory, HandlerRegistry(), queue_options)
        await _record_and_enqueue(db_session, queue_options)

        assert await pool.close() is True
        assert pool.closing is True
        assert (await pool.run_batch()).claimed == 0

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_job(self, db_session, session_factory, queue_options, fetch):
        registry = HandlerRegistry()
        started = asyncio.Event()

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            started.set()
            await asyncio.sleep(0.05)

        await _record_and_enqueue(db_session, queue_options)
        pool = _pool(session_factory, registry, queue_options)
        batch = asyncio.create_task(pool.run_batch())
        await started.wait()

        assert await pool.close(timeout=5) is True
        result = await batch
        assert result.completed == 1
        assert (await fetch(WebhookJob, event_id="evt_1"))[0].state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_close_timeout_leaves_job_for_stalled_recovery(
        self, db_session, session_factory, queue_options, fetch
    ):
        registry = HandlerRegistry()
        started = asyncio.Event()

        @registry.on("finix", "transfer.updated")
        async def handler(ctx):
            started.set()
            await asyncio.sleep(10)

        await _record_and_enqueue(db_session, queue_options)
        pool = _pool(session_factory, registry, queue_options)
        batch = asyncio.create_task(pool.run_batch())
        await started.wait()

        assert await pool.close(timeout=0.05) is False
        await batch
        job = (await fetch(WebhookJob, event_id="evt_1"))[0]
        assert job.state == JobState.ACTIVE
        assert job.lock_token is not None
