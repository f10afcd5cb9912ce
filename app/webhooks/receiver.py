"""
Webhook receiver - the synchronous half of the pipeline.

Verifies, deduplicates and enqueues a delivery, then answers the provider.
Only a bad signature produces a non-200 answer: providers retry on anything
else, and once the delivery is authentic a retry cannot help more than the
queue (or the intake spool) already does.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    MalformedPayloadError,
    TransientDependencyError,
    UnknownProviderError,
    WebhookAuthenticationError,
)
from app.core.logging import get_logger, webhook_context
from app.db.models.raw_webhook_event import RawEventStatus
from app.webhooks.adapters import (
    InboundEvent,
    is_ping,
    normalize_headers,
    synthesize_event_id,
    transport_headers,
)
from app.webhooks.ledger import IdempotencyLedger
from app.webhooks.spool import IntakeSpool
from app.webhooks.verification import SignatureVerifier
from app.workers.queue import JobQueue, QueueOptions

logger = get_logger(__name__)

# Raw text kept for a payload that could not be parsed
_MALFORMED_BODY_LIMIT = 10_000

# Errors that go away once the database is reachable again. Anything else
# (data or integrity errors) would fail the same way on every replay.
TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, OSError)


@dataclass
class ReceiverResponse:
    status_code: int
    body: dict[str, Any]


@dataclass
class AcceptResult:
    event_id: str
    job_id: int | None
    created: bool
    already_processed: bool = False


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class WebhookReceiver:
    def __init__(
        self,
        verifiers: Mapping[str, SignatureVerifier],
        adapters: Mapping[str, Any],
        queue_options: QueueOptions,
        spool: IntakeSpool | None = None,
        latency_budget_ms: int = 200,
    ):
        self.verifiers = verifiers
        self.adapters = adapters
        self.queue_options = queue_options
        self.spool = spool
        self.latency_budget_ms = latency_budget_ms

    async def receive(
        self,
        db: AsyncSession,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> ReceiverResponse:
        started = time.perf_counter()
        verifier = self.verifiers.get(provider)
        adapter = self.adapters.get(provider)
        if verifier is None or adapter is None:
            raise UnknownProviderError(provider)

        headers = normalize_headers(headers)
        try:
            verifier.verify(raw_body, headers)
        except WebhookAuthenticationError as exc:
            return ReceiverResponse(401, {"success": False, "message": exc.message})

        if is_ping(raw_body):
            logger.info("Webhook ping received", extra_data={"provider": provider})
            return ReceiverResponse(200, {"ok": True, "ping": True})

        event: InboundEvent | None = None
        try:
            try:
                event = adapter.parse(raw_body, headers)
            except MalformedPayloadError as exc:
                return await self._absorb_malformed(db, provider, raw_body, headers, exc, started)

            with webhook_context(
                provider=provider,
                event_id=event.event_id,
                event_type=event.event_type,
            ):
                result = await self.accept(db, event)
                elapsed = _elapsed_ms(started)
                self._log_latency(provider, event.event_id, elapsed)

            if result.already_processed:
                return ReceiverResponse(
                    200,
                    {"success": True, "message": "already processed", "event_id": result.event_id},
                )
            return ReceiverResponse(
                200,
                {
                    "success": True,
                    "message": "webhook received and enqueued",
                    "event_id": result.event_id,
                    "job_id": result.job_id,
                    "processing_time_ms": elapsed,
                },
            )
        except TransientDependencyError as exc:
            logger.error(
                "Webhook intake unavailable",
                extra_data={
                    "provider": provider,
                    "event_id": event.event_id if event else None,
                    "error": exc.message,
                },
            )
            if event is not None:
                await self._spool(event)
            return self._absorbed(started)
        except Exception as exc:
            await self._safe_rollback(db)
            logger.error(
                "Webhook intake failed",
                extra_data={
                    "provider": provider,
                    "event_id": event.event_id if event else None,
                    "error": str(exc),
                },
                exc_info=True,
            )
            return self._absorbed(started)

    async def accept(self, db: AsyncSession, event: InboundEvent) -> AcceptResult:
        """
        Record the event and make sure exactly one open job exists for it.

        The raw record and the job commit in one transaction. Database errors
        caused by an outage surface as TransientDependencyError; other
        database errors propagate unchanged.
        """
        ledger = IdempotencyLedger(db)
        queue = JobQueue(db, self.queue_options)
        try:
            receipt = await ledger.record_receipt(event)
            if not receipt.created and receipt.status == RawEventStatus.PROCESSED:
                await db.commit()
                return AcceptResult(
                    event_id=event.event_id,
                    job_id=None,
                    created=False,
                    already_processed=True,
                )

            job = None
            if not receipt.created:
                if receipt.status == RawEventStatus.FAILED:
                    await ledger.reopen(event.provider, event.event_id)
                    logger.info(
                        "Failed webhook event redelivered, reopening",
                        extra_data={"event_id": event.event_id},
                    )
                job = await queue.find_open_job(event.provider, event.event_id)

            if job is None:
                job = await queue.enqueue(
                    provider=event.provider,
                    raw_event_id=receipt.record.id,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    payload=event.payload,
                )
            job_id = job.id
            await db.commit()
        except TRANSIENT_DB_ERRORS as exc:
            await self._safe_rollback(db)
            raise TransientDependencyError(event.provider, f"Could not record webhook: {exc}") from exc
        except SQLAlchemyError:
            await self._safe_rollback(db)
            raise

        return AcceptResult(event_id=event.event_id, job_id=job_id, created=receipt.created)

    async def _absorb_malformed(
        self,
        db: AsyncSession,
        provider: str,
        raw_body: bytes,
        headers: dict[str, str],
        exc: MalformedPayloadError,
        started: float,
    ) -> ReceiverResponse:
        """Keep the unparseable body as a processed-with-error record."""
        payload = {"raw": raw_body.decode("utf-8", errors="replace")[:_MALFORMED_BODY_LIMIT]}
        event = InboundEvent(
            provider=provider,
            event_id=synthesize_event_id(provider, "malformed", payload),
            event_type="malformed",
            payload=payload,
            headers=transport_headers(headers),
        )
        logger.warning(
            "Malformed webhook payload",
            extra_data={"provider": provider, "event_id": event.event_id, "error": exc.message},
        )
        await IdempotencyLedger(db).record_receipt(
            event, status=RawEventStatus.PROCESSED, error=exc.message
        )
        await db.commit()
        return ReceiverResponse(
            200,
            {
                "received": True,
                "error": "malformed payload",
                "event_id": event.event_id,
                "processing_time_ms": _elapsed_ms(started),
            },
        )

    async def _spool(self, event: InboundEvent) -> None:
        if self.spool is None:
            return
        try:
            await self.spool.push(event)
        except Exception as exc:
            # provider redelivery is the only recovery left
            logger.error(
                "Could not spool webhook",
                extra_data={"event_id": event.event_id, "error": str(exc)},
            )

    def _log_latency(self, provider: str, event_id: str, elapsed_ms: float) -> None:
        extra = {"provider": provider, "event_id": event_id, "processing_time_ms": elapsed_ms}
        if elapsed_ms > self.latency_budget_ms:
            logger.warning(
                "Webhook acknowledgment exceeded latency budget",
                extra_data={**extra, "budget_ms": self.latency_budget_ms},
            )
        else:
            logger.info("Webhook accepted", extra_data=extra)

    @staticmethod
    async def _safe_rollback(db: AsyncSession) -> None:
        try:
            await db.rollback()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Rollback failed", extra_data={"error": str(exc)})

    @staticmethod
    def _absorbed(started: float) -> ReceiverResponse:
        return ReceiverResponse(
            200,
            {"received": True, "error": "processing failed", "processing_time_ms": _elapsed_ms(started)},
        )
