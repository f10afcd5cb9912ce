"""
Typed handler registry keyed by (provider, event_type).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class HandlerContext:
    """What a handler receives: the event and the session to mutate through"""

    db: AsyncSession
    provider: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    attempt: int = 1
    # optional collaborators (chat client for best-effort notifications)
    services: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[HandlerContext], Awaitable[Optional[str]]]


class HandlerRegistry:
    """Maps (provider, event_type) to exactly one handler"""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], EventHandler] = {}

    def register(self, provider: str, event_type: str, handler: EventHandler) -> None:
        key = (provider, event_type)
        if key in self._handlers:
            raise ValueError(f"Handler already registered for {provider}:{event_type}")
        self._handlers[key] = handler

    def on(self, provider: str, *event_types: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of ``register`` for one or more event types"""
        def decorator(handler: EventHandler) -> EventHandler:
            for event_type in event_types:
                self.register(provider, event_type, handler)
            return handler
        return decorator

    def resolve(self, provider: str, event_type: str) -> EventHandler | None:
        return self._handlers.get((provider, event_type))

    def event_types(self, provider: str) -> list[str]:
        return sorted(event_type for p, event_type in self._handlers if p == provider)

    def __len__(self) -> int:
        return len(self._handlers)
