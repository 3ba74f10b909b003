"""
Celery Application Configuration
"""
from celery import Celery

from guardchat.core.config import settings

celery_app = Celery(
    "guardchat",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["guardchat.workers.tasks"]
)

# Celery configuration
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
    # מחיקת סשנים שלא היו פעילים מעבר ל-SESSION_RETENTION_HOURS
    "cleanup-stale-sessions-hourly": {
        "task": "guardchat.workers.tasks.cleanup_stale_sessions",
        "schedule": 3600.0,
    },
}
