"""Celery tasks: queue drain, polling scheduler, stuck-sync recovery and maintenance. DB session per task."""
import logging
from typing import Optional

from celery import shared_task

from .config import settings
from .celery_app import celery_app
from .database import SessionLocal
from .services import folder_counts, job_queue, scheduler, sync_orchestrator

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="mailsync.tasks.process_sync_queue")
def process_sync_queue(self, max_jobs: Optional[int] = None):
    """Drain due sync jobs with the orchestrator's worker pool."""
    return sync_orchestrator.process_queue(SessionLocal, max_jobs=max_jobs)


@shared_task(bind=True, name="mailsync.tasks.schedule_polling_syncs")
def schedule_polling_syncs(self):
    db = SessionLocal()
    try:
        queued = scheduler.schedule_polling_syncs(db)
    finally:
        db.close()
    return {"queued": queued}


@shared_task(bind=True, name="mailsync.tasks.recover_stuck_syncs")
def recover_stuck_syncs(self):
    db = SessionLocal()
    try:
        reset = sync_orchestrator.recover_stuck_syncs(db)
    finally:
        db.close()
    return {"reset": reset}


@shared_task(bind=True, name="mailsync.tasks.audit_folder_counts")
def audit_folder_counts(self, user_id: Optional[int] = None):
    """Recount folder counters for one user, or for every account."""
    db = SessionLocal()
    try:
        if user_id is not None:
            result = folder_counts.recalculate_user_folders(db, user_id)
            return {"accounts": len(result), "folders": sum(len(f) for f in result.values()), "failed": 0}
        return folder_counts.recalculate_all_folders(db)
    finally:
        db.close()


@shared_task(bind=True, name="mailsync.tasks.cleanup_old_jobs")
def cleanup_old_jobs(self, older_than_days: Optional[int] = None):
    db = SessionLocal()
    try:
        deleted = job_queue.cleanup_old_jobs(db, older_than_days)
    finally:
        db.close()
    logger.info(f"Removed {deleted} finished sync jobs")
    return {"deleted": deleted}


def dispatch_queue_drain() -> None:
    """
    Ask a worker to drain the queue now instead of waiting for the next beat.
    The job is already persisted, so a broker outage only delays it.
    """
    if not settings.sync_dispatch_immediately:
        return
    try:
        celery_app.send_task("mailsync.tasks.process_sync_queue")
    except Exception as e:
        logger.warning(f"Could not dispatch queue drain, leaving it to the scheduler: {e}")
