"""
Raw Webhook Event Models - one table per provider.

The row is the idempotency ledger entry for a delivery: ``event_id`` is
unique per provider, and once ``status`` reaches ``processed`` it never
changes again.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from app.db.database import Base, utcnow


class RawEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class RawWebhookEventMixin:
    """Columns shared by every provider's raw event table"""

    id = Column(Integer, primary_key=True)
    event_id = Column(String(200), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    transport_headers = Column(JSON, nullable=False, default=dict)

    status = Column(SQLEnum(RawEventStatus), nullable=False, default=RawEventStatus.PENDING, index=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    # informational: value of the provider's retry-attempt header
    attempt_number = Column(Integer, nullable=True)
    error = Column(String(1000), nullable=True)

    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)


class FinixWebhookEvent(RawWebhookEventMixin, Base):
    """Raw Finix (payments) delivery"""

    __tablename__ = "finix_webhook_events"


class GetstreamWebhookEvent(RawWebhookEventMixin, Base):
    """Raw GetStream (chat) delivery"""

    __tablename__ = "getstream_webhook_events"


RAW_EVENT_MODELS = {
    "finix": FinixWebhookEvent,
    "getstream": GetstreamWebhookEvent,
}
