"""
Intake spool: a Redis list holding verified deliveries whose ledger write
failed (database down, pool exhausted). ``replay_spooled_webhooks`` feeds
them back through the receiver once the database is reachable again.
"""
from __future__ import annotations

import json
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import redis_client
from app.core.exceptions import TransientDependencyError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.webhooks.adapters import InboundEvent

if TYPE_CHECKING:
    from app.webhooks.receiver import WebhookReceiver

logger = get_logger(__name__)


def _serialize(event: InboundEvent) -> str:
    return json.dumps(
        {
            "provider": event.provider,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "payload": event.payload,
            "headers": event.headers,
            "attempt_number": event.attempt_number,
            "spooled_at": utcnow().isoformat(),
        },
        default=str,
    )


def _deserialize(raw: str) -> InboundEvent:
    data = json.loads(raw)
    return InboundEvent(
        provider=data["provider"],
        event_id=data["event_id"],
        event_type=data["event_type"],
        payload=data["payload"],
        headers=data.get("headers") or {},
        attempt_number=data.get("attempt_number"),
    )


class IntakeSpool:
    def __init__(self, key: str, replay_batch: int = 100, dead_letter_key: str | None = None):
        self.key = key
        self.replay_batch = replay_batch
        # entries that can never be recorded, kept for manual inspection
        self.dead_letter_key = dead_letter_key or f"{key}:dead"

    async def push(self, event: InboundEvent) -> None:
        client = await redis_client.get_redis()
        await client.rpush(self.key, _serialize(event))
        logger.warning(
            "Webhook spooled for replay",
            extra_data={"provider": event.provider, "event_id": event.event_id},
        )

    async def size(self) -> int:
        client = await redis_client.get_redis()
        return await client.llen(self.key)

    async def replay(
        self,
        receiver: "WebhookReceiver",
        session_factory: async_sessionmaker[AsyncSession],
    ) -> dict[str, int]:
        """
        Re-ingest up to ``replay_batch`` spooled deliveries, oldest first.

        Stops at the first outage and puts that entry back at the head, so a
        still-unavailable database does not spin through the whole list. An
        entry that fails for any other reason is moved to the dead-letter
        list and replay goes on with the next one.
        """
        client = await redis_client.get_redis()
        replayed = 0
        dropped = 0
        dead_lettered = 0

        for _ in range(self.replay_batch):
            raw = await client.lpop(self.key)
            if raw is None:
                break
            try:
                event = _deserialize(raw)
            except (ValueError, KeyError, TypeError) as exc:
                logger.error("Dropping unreadable spool entry", extra_data={"error": str(exc)})
                dropped += 1
                continue

            try:
                async with session_factory() as db:
                    await receiver.accept(db, event)
            except TransientDependencyError as exc:
                await client.lpush(self.key, raw)
                logger.warning(
                    "Spool replay stopped, database still unavailable",
                    extra_data={"event_id": event.event_id, "error": exc.message},
                )
                break
            except Exception as exc:
                await client.rpush(self.dead_letter_key, raw)
                dead_lettered += 1
                logger.error(
                    "Spool entry cannot be recorded, moved to dead letters",
                    extra_data={
                        "event_id": event.event_id,
                        "dead_letter_key": self.dead_letter_key,
                        "error": f"{type(exc).__name__}: {exc}",
                    },
                )
                continue
            replayed += 1

        remaining = await client.llen(self.key)
        if replayed or dropped or dead_lettered:
            logger.info(
                "Spool replay finished",
                extra_data={
                    "replayed": replayed,
                    "dropped": dropped,
                    "dead_lettered": dead_lettered,
                    "remaining": remaining,
                },
            )
        return {
            "replayed": replayed,
            "dropped": dropped,
            "dead_lettered": dead_lettered,
            "remaining": remaining,
        }
