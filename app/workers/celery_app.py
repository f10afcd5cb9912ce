"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "marketplace_webhooks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-webhook-jobs": {
        "task": "app.workers.tasks.process_webhook_jobs",
        "schedule": settings.WEBHOOK_POLL_INTERVAL_SECONDS,
    },
    "recover-stalled-webhook-jobs": {
        "task": "app.workers.tasks.recover_stalled_webhook_jobs",
        "schedule": float(settings.WEBHOOK_STALLED_CHECK_INTERVAL_SECONDS),
    },
    "prune-webhook-jobs-hourly": {
        "task": "app.workers.tasks.prune_webhook_jobs",
        "schedule": 3600.0,
    },
    "replay-spooled-webhooks": {
        "task": "app.workers.tasks.replay_spooled_webhooks",
        "schedule": 30.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}
