"""Celery app for the sync workers and periodic sweeps. Uses Redis; DB session per task."""
import logging

from celery import Celery
from celery.schedules import crontab

from .config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

celery_app = Celery(
    "mailsync",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["mailsync.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Periodic tasks
celery_app.conf.beat_schedule = {
    "process-sync-queue": {
        "task": "mailsync.tasks.process_sync_queue",
        "schedule": crontab(minute="*"),  # Every minute
    },
    "schedule-polling-syncs": {
        "task": "mailsync.tasks.schedule_polling_syncs",
        "schedule": crontab(minute="*/5"),
    },
    "recover-stuck-syncs": {
        "task": "mailsync.tasks.recover_stuck_syncs",
        "schedule": crontab(minute="*/5"),
    },
    "audit-folder-counts": {
        "task": "mailsync.tasks.audit_folder_counts",
        "schedule": crontab(minute=0, hour=3),
    },
    "cleanup-old-jobs": {
        "task": "mailsync.tasks.cleanup_old_jobs",
        "schedule": crontab(minute=30, hour=3),
    },
}
