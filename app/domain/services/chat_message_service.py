"""
Chat Message Service - keeps the local copy of GetStream messages in sync.

Updates and deletions upsert, so they are safe to apply before the
message.new event that created the message.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.chat_message import ChatMessage, ChatMessageType

logger = get_logger(__name__)

_CUSTOM_TYPES = {
    "offer": ChatMessageType.OFFER,
    "order": ChatMessageType.ORDER,
    "inquiry": ChatMessageType.INQUIRY,
}


def message_type_of(message: dict[str, Any]) -> ChatMessageType:
    if message.get("type") == "system":
        return ChatMessageType.SYSTEM
    custom = message.get("custom") or {}
    return _CUSTOM_TYPES.get(custom.get("type"), ChatMessageType.REGULAR)


def _stream_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _channel_parts(event: dict[str, Any]) -> tuple[str | None, str]:
    channel_id = event.get("channel_id")
    channel_type = event.get("channel_type") or "messaging"
    if not channel_id and isinstance(event.get("cid"), str) and ":" in event["cid"]:
        channel_type, channel_id = event["cid"].split(":", 1)
    return channel_id, channel_type


class ChatMessageService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, stream_message_id: str) -> ChatMessage | None:
        result = await self.db.execute(
            select(ChatMessage).where(ChatMessage.stream_message_id == stream_message_id)
        )
        return result.scalar_one_or_none()

    def _new_message(self, event: dict[str, Any], message: dict[str, Any]) -> ChatMessage:
        channel_id, channel_type = _channel_parts(event)
        channel = event.get("channel") or {}
        row = ChatMessage(
            stream_message_id=message["id"],
            stream_channel_id=channel_id or "",
            stream_channel_type=channel_type,
            sender_id=(message.get("user") or {}).get("id"),
            text=message.get("text") or "",
            message_type=message_type_of(message),
            attachments=message.get("attachments") or [],
            listing_id=channel.get("listing_id"),
            offer_id=channel.get("offer_id"),
            order_id=channel.get("order_id"),
            custom_data=message.get("custom") or {},
            reactions=[],
            stream_created_at=_stream_timestamp(message.get("created_at")),
        )
        self.db.add(row)
        return row

    async def store_message(self, event: dict[str, Any]) -> tuple[ChatMessage, bool]:
        """Insert from message.new; returns (row, created)."""
        message = event["message"]
        existing = await self.get(message["id"])
        if existing is not None:
            return existing, False
        row = self._new_message(event, message)
        await self.db.flush()
        return row, True

    async def update_message(self, event: dict[str, Any]) -> ChatMessage:
        message = event["message"]
        row = await self.get(message["id"])
        if row is None:
            row = self._new_message(event, message)
        else:
            row.text = message.get("text") or ""
            row.attachments = message.get("attachments") or []
        row.edited_at = _stream_timestamp(message.get("updated_at")) or utcnow()
        await self.db.flush()
        return row

    async def mark_deleted(self, event: dict[str, Any]) -> ChatMessage:
        message = event["message"]
        row = await self.get(message["id"])
        if row is None:
            row = self._new_message(event, message)
        if not row.is_deleted:
            row.is_deleted = True
            row.status = "deleted"
            row.deleted_at = _stream_timestamp(message.get("deleted_at")) or utcnow()
        await self.db.flush()
        return row

    async def add_reaction(self, stream_message_id: str, user_id: str | None, reaction_type: str) -> bool:
        """Set semantics: the same (user, type) is stored once."""
        row = await self.get(stream_message_id)
        if row is None:
            logger.info(
                "Reaction for unknown message ignored",
                extra_data={"stream_message_id": stream_message_id},
            )
            return False
        reactions = list(row.reactions or [])
        if any(r.get("user_id") == user_id and r.get("type") == reaction_type for r in reactions):
            return False
        reactions.append({"user_id": user_id, "type": reaction_type, "created_at": utcnow().isoformat()})
        # reassign: JSON columns do not track in-place mutation
        row.reactions = reactions
        return True

    async def remove_reaction(self, stream_message_id: str, user_id: str | None, reaction_type: str) -> bool:
        row = await self.get(stream_message_id)
        if row is None:
            return False
        reactions = list(row.reactions or [])
        remaining = [
            r for r in reactions
            if not (r.get("user_id") == user_id and r.get("type") == reaction_type)
        ]
        if len(remaining) == len(reactions):
            return False
        row.reactions = remaining
        return True
