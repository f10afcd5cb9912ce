"""
Webhook Event Model - cross-provider tracking of every accepted delivery.

One row per (provider, event_id). The per-provider raw tables hold the full
payload and attempt bookkeeping; this table gives operators a single place
to see what arrived and how it ended.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index, UniqueConstraint

from app.db.database import Base, utcnow


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """Unified record of a webhook delivery"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(SQLEnum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.RECEIVED)
    error = Column(String(1000), nullable=True)
    # attempt number from the provider, last job id
    data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
