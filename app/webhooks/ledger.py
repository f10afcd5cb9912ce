"""
Idempotency ledger over the raw event tables.

All status changes are compare-and-set UPDATEs that exclude ``processed``
rows, so completion is write-once even when two workers race on the same
event. The unified ``webhook_events`` row is kept in step with every change.

Methods flush but never commit: the caller owns the transaction, which lets
the receiver commit the record together with its queue job, and the worker
commit the domain mutation together with ``processed``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import UnknownProviderError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.raw_webhook_event import RAW_EVENT_MODELS, RawEventStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.webhooks.adapters import InboundEvent

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 1000

_UNIFIED_STATUS = {
    RawEventStatus.PENDING: WebhookEventStatus.RECEIVED,
    RawEventStatus.PROCESSING: WebhookEventStatus.PROCESSING,
    RawEventStatus.PROCESSED: WebhookEventStatus.PROCESSED,
    RawEventStatus.FAILED: WebhookEventStatus.FAILED,
}


def _truncate(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:_MAX_ERROR_LENGTH]


def raw_model_for(provider: str):
    try:
        return RAW_EVENT_MODELS[provider]
    except KeyError:
        raise UnknownProviderError(provider) from None


@dataclass
class Receipt:
    """Result of ``record_receipt``"""

    record: Any
    created: bool

    @property
    def status(self) -> RawEventStatus:
        return self.record.status


class IdempotencyLedger:
    """Read-modify-write surface keyed by (provider, event_id)"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_receipt(
        self,
        event: InboundEvent,
        *,
        status: RawEventStatus = RawEventStatus.PENDING,
        error: str | None = None,
    ) -> Receipt:
        """
        Insert the raw event if absent, otherwise return the existing row.

        Optimistic INSERT inside a savepoint; a unique-constraint violation
        means another delivery of the same event got there first.
        """
        model = raw_model_for(event.provider)
        now = utcnow()
        record = model(
            event_id=event.event_id,
            event_type=event.event_type,
            payload=event.payload,
            transport_headers=event.headers,
            status=status,
            attempt_count=0,
            attempt_number=event.attempt_number,
            error=_truncate(error),
            received_at=now,
            processed_at=now if status == RawEventStatus.PROCESSED else None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
        except IntegrityError:
            existing = await self.get(event.provider, event.event_id)
            if existing is None:
                # unique violation but no row: constraint hit on something else
                raise
            if event.attempt_number is not None:
                existing.attempt_number = event.attempt_number
            logger.info(
                "Duplicate webhook delivery",
                extra_data={
                    "provider": event.provider,
                    "event_id": event.event_id,
                    "status": existing.status.value,
                    "attempt_number": event.attempt_number,
                },
            )
            return Receipt(record=existing, created=False)

        await self._record_unified(event, status, error)
        return Receipt(record=record, created=True)

    async def _record_unified(
        self,
        event: InboundEvent,
        status: RawEventStatus,
        error: str | None,
    ) -> None:
        unified = WebhookEvent(
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type,
            status=_UNIFIED_STATUS[status],
            error=_truncate(error),
            data={"attempt_number": event.attempt_number},
            processed_at=utcnow() if status == RawEventStatus.PROCESSED else None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(unified)
        except IntegrityError:
            # left over from a raw row that was pruned; keep the existing one
            logger.debug(
                "Unified webhook event already exists",
                extra_data={"provider": event.provider, "event_id": event.event_id},
            )

    async def get(self, provider: str, event_id: str):
        model = raw_model_for(provider)
        # populate_existing: a long-lived session must see status changes made by workers
        result = await self.db.execute(
            select(model)
            .where(model.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def status_of(self, provider: str, event_id: str) -> RawEventStatus | None:
        """Fresh read of the status, bypassing the identity map."""
        model = raw_model_for(provider)
        result = await self.db.execute(
            select(model.status).where(model.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def list_events(
        self,
        provider: str,
        status: RawEventStatus | None = None,
        limit: int = 50,
    ) -> list:
        """Most recent raw events, optionally filtered by status"""
        model = raw_model_for(provider)
        query = select(model).order_by(model.received_at.desc(), model.id.desc()).limit(limit)
        if status is not None:
            query = query.where(model.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _transition(
        self,
        provider: str,
        event_id: str,
        *,
        allowed_from: tuple[RawEventStatus, ...] | None = None,
        increment_attempts: bool = False,
        **values: Any,
    ) -> bool:
        model = raw_model_for(provider)
        conditions = [model.event_id == event_id, model.status != RawEventStatus.PROCESSED]
        if allowed_from is not None:
            conditions.append(model.status.in_(allowed_from))
        if increment_attempts:
            values["attempt_count"] = model.attempt_count + 1

        result = await self.db.execute(
            update(model)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount > 0
        if changed and "status" in values:
            await self._sync_unified(provider, event_id, values)
        return changed

    async def _sync_unified(
        self,
        provider: str,
        event_id: str,
        values: dict[str, Any],
    ) -> None:
        status = values["status"]
        unified_values: dict[str, Any] = {
            "status": _UNIFIED_STATUS[status],
            "updated_at": utcnow(),
        }
        if "error" in values:
            unified_values["error"] = values["error"]
        if status == RawEventStatus.PROCESSED:
            unified_values["processed_at"] = utcnow()
        await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.provider == provider,
                WebhookEvent.event_id == event_id,
                WebhookEvent.status != WebhookEventStatus.PROCESSED,
            )
            .values(**unified_values)
            .execution_options(synchronize_session=False)
        )

    async def mark_processing(self, provider: str, event_id: str) -> bool:
        """pending/failed/processing -> processing. False if already processed."""
        return await self._transition(provider, event_id, status=RawEventStatus.PROCESSING)

    async def mark_processed(self, provider: str, event_id: str, error: str | None = None) -> bool:
        """
        Write-once completion. ``error`` is kept for events absorbed without
        side effects (malformed payloads).
        """
        changed = await self._transition(
            provider,
            event_id,
            status=RawEventStatus.PROCESSED,
            processed_at=utcnow(),
            error=_truncate(error),
        )
        if not changed:
            logger.info(
                "Event already processed",
                extra_data={"provider": provider, "event_id": event_id},
            )
        return changed

    async def record_failure(self, provider: str, event_id: str, error: str) -> bool:
        """One failed attempt: attempt_count + 1, back to pending for the next retry."""
        return await self._transition(
            provider,
            event_id,
            status=RawEventStatus.PENDING,
            error=_truncate(error),
            increment_attempts=True,
        )

    async def mark_failed(self, provider: str, event_id: str, error: str) -> bool:
        """Terminal failure after retries were exhausted."""
        changed = await self._transition(
            provider,
            event_id,
            status=RawEventStatus.FAILED,
            error=_truncate(error),
        )
        if changed:
            logger.error(
                "Webhook event failed permanently",
                extra_data={"provider": provider, "event_id": event_id, "error": _truncate(error)},
            )
        return changed

    async def reopen(self, provider: str, event_id: str) -> bool:
        """failed -> pending, when the provider redelivers a failed event."""
        return await self._transition(
            provider,
            event_id,
            allowed_from=(RawEventStatus.FAILED,),
            status=RawEventStatus.PENDING,
        )
