"""
Webhook endpoints.

POST /webhooks/{provider} answers the provider; everything else here is
operator tooling behind the admin API key.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import get_getstream_circuit_breaker
from app.core.exceptions import UnknownProviderError
from app.db.database import get_db
from app.db.models.raw_webhook_event import RawEventStatus
from app.webhooks.ledger import IdempotencyLedger
from app.webhooks.runtime import WebhookRuntime
from app.workers.queue import JobQueue

router = APIRouter()


class QueueMetricsResponse(BaseModel):
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    paused: bool
    spooled: int = Field(default=0, description="deliveries waiting in the intake spool")


class RawEventResponse(BaseModel):
    event_id: str
    event_type: str
    status: str
    attempt_count: int
    attempt_number: Optional[int]
    error: Optional[str]
    received_at: Optional[datetime]
    processed_at: Optional[datetime]


def get_runtime(request: Request) -> WebhookRuntime:
    return request.app.state.webhook_runtime


@router.get(
    "/queue/metrics",
    response_model=QueueMetricsResponse,
    summary="Webhook queue metrics",
    dependencies=[Depends(require_admin_api_key)],
)
async def queue_metrics(
    runtime: WebhookRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> QueueMetricsResponse:
    metrics = await JobQueue(db, runtime.queue_options).get_metrics()
    return QueueMetricsResponse(**metrics, spooled=await runtime.spool.size())


@router.post(
    "/queue/pause",
    summary="Stop workers from claiming jobs",
    dependencies=[Depends(require_admin_api_key)],
)
async def pause_queue(
    runtime: WebhookRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await JobQueue(db, runtime.queue_options).pause()
    return {"paused": True}


@router.post(
    "/queue/resume",
    summary="Let workers claim jobs again",
    dependencies=[Depends(require_admin_api_key)],
)
async def resume_queue(
    runtime: WebhookRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await JobQueue(db, runtime.queue_options).resume()
    return {"paused": False}


@router.get(
    "/events/{provider}",
    response_model=list[RawEventResponse],
    summary="Recent raw events for triage",
    dependencies=[Depends(require_admin_api_key)],
)
async def list_events(
    provider: str,
    status: Optional[RawEventStatus] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[RawEventResponse]:
    events = await IdempotencyLedger(db).list_events(provider, status, limit)
    return [
        RawEventResponse(
            event_id=event.event_id,
            event_type=event.event_type,
            status=event.status.value,
            attempt_count=event.attempt_count,
            attempt_number=event.attempt_number,
            error=event.error,
            received_at=event.received_at,
            processed_at=event.processed_at,
        )
        for event in events
    ]


@router.get(
    "/circuit-breakers",
    summary="State of the outbound circuit breakers",
    dependencies=[Depends(require_admin_api_key)],
)
async def circuit_breakers() -> list[dict]:
    return [get_getstream_circuit_breaker().snapshot()]


@router.post(
    "/{provider}",
    summary="Receive a provider webhook",
    description=(
        "Verifies the signature over the raw body, records the event once and "
        "enqueues it. Answers 401 on a bad signature and 200 otherwise."
    ),
)
async def receive_webhook(
    provider: str,
    request: Request,
    runtime: WebhookRuntime = Depends(get_runtime),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    if provider not in runtime.verifiers:
        raise UnknownProviderError(provider)
    raw_body = await request.body()
    result = await runtime.receiver.receive(db, provider, raw_body, request.headers)
    return JSONResponse(status_code=result.status_code, content=result.body)
