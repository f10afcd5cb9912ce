"""
GetStream (chat) event handlers - mirror chat activity into chat_messages.
"""
from __future__ import annotations

from app.core.exceptions import HandlerError
from app.core.logging import get_logger
from app.domain.services.chat_message_service import ChatMessageService
from app.workers.registry import HandlerContext, HandlerRegistry

logger = get_logger(__name__)

PROVIDER = "getstream"


def _message(ctx: HandlerContext) -> dict:
    message = ctx.payload.get("message")
    if not isinstance(message, dict) or not message.get("id"):
        raise HandlerError(f"Missing message data in {ctx.event_type}")
    return message


async def handle_message_new(ctx: HandlerContext) -> str:
    _message(ctx)
    row, created = await ChatMessageService(ctx.db).store_message(ctx.payload)
    if not created:
        return f"Message {row.stream_message_id} already stored"
    return f"Stored message {row.stream_message_id} for channel {row.stream_channel_id}"


async def handle_message_updated(ctx: HandlerContext) -> str:
    _message(ctx)
    row = await ChatMessageService(ctx.db).update_message(ctx.payload)
    return f"Updated message {row.stream_message_id}"


async def handle_message_deleted(ctx: HandlerContext) -> str:
    _message(ctx)
    row = await ChatMessageService(ctx.db).mark_deleted(ctx.payload)
    return f"Deleted message {row.stream_message_id}"


async def handle_message_read(ctx: HandlerContext) -> str:
    user_id = (ctx.payload.get("user") or {}).get("id")
    channel_id = ctx.payload.get("channel_id")
    logger.info(
        "Read receipt received",
        extra_data={"user_id": user_id, "channel_id": channel_id},
    )
    return f"Read receipt for user {user_id} in channel {channel_id}"


async def handle_channel_event(ctx: HandlerContext) -> str:
    channel_id = ctx.payload.get("channel_id")
    logger.info(
        f"Channel event {ctx.event_type}",
        extra_data={"channel_id": channel_id, "channel_type": ctx.payload.get("channel_type")},
    )
    return f"Channel {channel_id} {ctx.event_type.split('.', 1)[1]}"


async def handle_reaction(ctx: HandlerContext) -> str:
    reaction = ctx.payload.get("reaction") or {}
    message_id = (ctx.payload.get("message") or {}).get("id") or reaction.get("message_id")
    if not message_id or not reaction.get("type"):
        return "Reaction without message or type ignored"

    user_id = (reaction.get("user") or {}).get("id") or reaction.get("user_id")
    service = ChatMessageService(ctx.db)
    if ctx.event_type == "reaction.new":
        changed = await service.add_reaction(message_id, user_id, reaction["type"])
    else:
        changed = await service.remove_reaction(message_id, user_id, reaction["type"])
    action = ctx.event_type.split(".", 1)[1]
    return f"Reaction {action} for message {message_id}" + ("" if changed else " (no change)")


def register_getstream_handlers(registry: HandlerRegistry) -> None:
    registry.register(PROVIDER, "message.new", handle_message_new)
    registry.register(PROVIDER, "message.updated", handle_message_updated)
    registry.register(PROVIDER, "message.deleted", handle_message_deleted)
    registry.register(PROVIDER, "message.read", handle_message_read)
    registry.register(PROVIDER, "channel.created", handle_channel_event)
    registry.register(PROVIDER, "channel.updated", handle_channel_event)
    registry.register(PROVIDER, "reaction.new", handle_reaction)
    registry.register(PROVIDER, "reaction.deleted", handle_reaction)
