"""
Wiring of the webhook pipeline.

``build_webhook_runtime`` assembles verifiers, adapters, the handler registry,
the dispatcher and the receiver from settings. The API builds one at startup
(``app.state.webhook_runtime``); every Celery task run builds its own.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.domain.services.chat_client import ChatClient
from app.webhooks.adapters import ADAPTERS
from app.webhooks.receiver import WebhookReceiver
from app.webhooks.spool import IntakeSpool
from app.webhooks.verification import SignatureVerifier
from app.workers.dispatch import EventDispatcher
from app.workers.handlers.finix import register_finix_handlers
from app.workers.handlers.getstream import register_getstream_handlers
from app.workers.pool import WorkerPool
from app.workers.queue import QueueOptions
from app.workers.registry import HandlerRegistry


def build_verifiers(settings: Settings) -> dict[str, SignatureVerifier]:
    finix_basic_auth = None
    if settings.FINIX_WEBHOOK_USERNAME and settings.FINIX_WEBHOOK_PASSWORD:
        finix_basic_auth = (settings.FINIX_WEBHOOK_USERNAME, settings.FINIX_WEBHOOK_PASSWORD)

    return {
        "finix": SignatureVerifier(
            "finix",
            settings.FINIX_WEBHOOK_SECRET,
            "finix-signature",
            allow_unsigned=settings.DEBUG,
            basic_auth=finix_basic_auth,
        ),
        "getstream": SignatureVerifier(
            "getstream",
            settings.GETSTREAM_API_SECRET,
            "x-signature",
            allow_unsigned=settings.DEBUG,
        ),
    }


def build_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    register_finix_handlers(registry)
    register_getstream_handlers(registry)
    return registry


@dataclass
class WebhookRuntime:
    settings: Settings
    verifiers: dict[str, SignatureVerifier]
    adapters: dict[str, Any]
    registry: HandlerRegistry
    dispatcher: EventDispatcher
    queue_options: QueueOptions
    spool: IntakeSpool
    receiver: WebhookReceiver

    def worker_pool(self, session_factory: async_sessionmaker[AsyncSession]) -> WorkerPool:
        return WorkerPool(
            session_factory,
            self.dispatcher,
            self.queue_options,
            concurrency=self.settings.WEBHOOK_WORKER_CONCURRENCY,
            batch_size=self.settings.WEBHOOK_WORKER_BATCH_SIZE,
        )


def build_webhook_runtime(
    settings: Settings,
    *,
    registry: HandlerRegistry | None = None,
    services: dict[str, Any] | None = None,
) -> WebhookRuntime:
    registry = registry if registry is not None else build_registry()
    if services is None:
        services = {"chat_client": ChatClient.from_settings(settings)}

    verifiers = build_verifiers(settings)
    adapters = dict(ADAPTERS)
    queue_options = QueueOptions.from_settings(settings)
    spool = IntakeSpool(settings.WEBHOOK_SPOOL_KEY, settings.WEBHOOK_SPOOL_REPLAY_BATCH)

    return WebhookRuntime(
        settings=settings,
        verifiers=verifiers,
        adapters=adapters,
        registry=registry,
        dispatcher=EventDispatcher(registry, services),
        queue_options=queue_options,
        spool=spool,
        receiver=WebhookReceiver(
            verifiers,
            adapters,
            queue_options,
            spool=spool,
            latency_budget_ms=settings.WEBHOOK_LATENCY_BUDGET_MS,
        ),
    )
