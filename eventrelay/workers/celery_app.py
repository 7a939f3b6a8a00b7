"""
Celery Application Configuration

Celery only runs the periodic delivery maintenance; delivery and workflow
tasks themselves go through the worker pool.
"""
from celery import Celery

from eventrelay.core.config import settings

celery_app = Celery(
    "chat_event_relay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["eventrelay.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=120,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "requeue-due-deliveries-every-10-seconds": {
        "task": "eventrelay.workers.tasks.requeue_due_deliveries",
        "schedule": 10.0,
        # a backlogged run is dropped; the next one covers the same rows
        "options": {"expires": 10.0},
    },
    "reclaim-stale-deliveries-every-30-seconds": {
        "task": "eventrelay.workers.tasks.reclaim_stale_deliveries",
        "schedule": 30.0,
        "options": {"expires": 30.0},
    },
    "log-delivery-stats-every-5-minutes": {
        "task": "eventrelay.workers.tasks.log_delivery_stats",
        "schedule": 300.0,  # 5 minutes
    },
}
