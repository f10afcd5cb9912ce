"""
Webhook Job Model - durable queue entry for asynchronous processing.

A job is scheduling metadata only. The worker always re-reads the raw event
status before applying side effects, so losing or duplicating a job never
duplicates a domain mutation.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index

from app.db.database import Base, utcnow


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookJob(Base):
    """Queue job referencing one raw webhook event"""

    __tablename__ = "webhook_jobs"

    id = Column(Integer, primary_key=True)

    provider = Column(String(20), nullable=False)
    raw_event_id = Column(Integer, nullable=False)
    event_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    state = Column(SQLEnum(JobState), nullable=False, default=JobState.WAITING)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    # a waiting job with run_at in the future is "delayed"
    run_at = Column(DateTime, nullable=False, default=utcnow)

    # Lock held by the worker that claimed the job
    lock_token = Column(String(64), nullable=True)
    locked_until = Column(DateTime, nullable=True)
    stalled_count = Column(Integer, nullable=False, default=0)

    last_error = Column(String(1000), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_jobs_state_run_at", "state", "run_at"),
        Index("ix_webhook_jobs_provider_event", "provider", "event_id"),
        Index("ix_webhook_jobs_state_locked_until", "state", "locked_until"),
    )
