"""
Prioritized, deduplicated sync job queue stored in the sync_jobs table.

At most one pending job exists per account (enforced by a partial unique index);
enqueueing again for that account folds the new request into the pending job.
Jobs are claimed with a conditional pending -> in_progress update so two workers
never take the same job.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models import (
    Account,
    SyncJob,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_FULL,
    JOB_IN_PROGRESS,
    JOB_INCREMENTAL,
    JOB_PENDING,
    PRIORITY_NORMAL,
    SYNC_PAUSED,
    SYNC_SYNCING,
)

logger = logging.getLogger(__name__)

JOB_TYPES = (JOB_FULL, JOB_INCREMENTAL)
# Candidates fetched per dequeue attempt; losing a claim race moves on to the next one.
_DEQUEUE_CANDIDATES = 10


def get_job(db: Session, job_id: int) -> Optional[SyncJob]:
    return db.query(SyncJob).filter(SyncJob.id == job_id).first()


def get_pending_job(db: Session, account_id: int) -> Optional[SyncJob]:
    return (
        db.query(SyncJob)
        .filter(SyncJob.account_id == account_id, SyncJob.status == JOB_PENDING)
        .first()
    )


def _merge_into_pending(
    job: SyncJob,
    job_type: str,
    priority: int,
    scheduled_for: datetime,
    metadata: Optional[dict],
    trigger: str,
) -> None:
    """A second request for the same account bumps the pending job instead of duplicating it."""
    if priority < job.priority:
        job.priority = priority
        job.trigger = trigger
    if scheduled_for < job.scheduled_for:
        job.scheduled_for = scheduled_for
    if job_type == JOB_FULL:
        job.job_type = JOB_FULL
    merged = dict(job.job_metadata or {})
    incoming = dict(metadata or {})
    old_limit = merged.pop("limit", None)
    new_limit = incoming.pop("limit", None)
    merged.update(incoming)
    # A fetch limit survives only if every merged request asked for one; full syncs are never capped.
    if job.job_type == JOB_INCREMENTAL and old_limit is not None and new_limit is not None:
        merged["limit"] = max(old_limit, new_limit)
    job.job_metadata = merged or None
    job.updated_at = datetime.utcnow()


def enqueue(
    db: Session,
    account_id: int,
    job_type: str = JOB_INCREMENTAL,
    priority: int = PRIORITY_NORMAL,
    scheduled_for: Optional[datetime] = None,
    metadata: Optional[dict[str, Any]] = None,
    trigger: str = "scheduled",
    max_retries: Optional[int] = None,
) -> SyncJob:
    """Add a job for the account, or fold the request into its pending job. Commits."""
    if job_type not in JOB_TYPES:
        raise ValueError(f"Unknown job type: {job_type}")
    scheduled_for = scheduled_for or datetime.utcnow()

    existing = get_pending_job(db, account_id)
    if existing:
        _merge_into_pending(existing, job_type, priority, scheduled_for, metadata, trigger)
        db.commit()
        logger.debug(f"Merged {trigger} request into pending job {existing.id} for account {account_id}")
        return existing

    job = SyncJob(
        account_id=account_id,
        job_type=job_type,
        priority=priority,
        trigger=trigger,
        status=JOB_PENDING,
        scheduled_for=scheduled_for,
        retry_count=0,
        max_retries=settings.sync_max_retries if max_retries is None else max_retries,
        job_metadata=metadata or None,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against another enqueue for this account.
        db.rollback()
        existing = get_pending_job(db, account_id)
        if existing is None:
            raise
        _merge_into_pending(existing, job_type, priority, scheduled_for, metadata, trigger)
        db.commit()
        return existing
    logger.info(f"Queued {job_type} job {job.id} for account {account_id} (priority {priority}, {trigger})")
    return job


def dequeue_next(db: Session, now: Optional[datetime] = None) -> Optional[SyncJob]:
    """
    Claim the most urgent eligible job: pending, due, and not for an account that
    is currently syncing or paused. Ordered by priority, then scheduled_for.
    """
    now = now or datetime.utcnow()
    candidates = (
        db.query(SyncJob.id)
        .join(Account, Account.id == SyncJob.account_id)
        .filter(
            SyncJob.status == JOB_PENDING,
            SyncJob.scheduled_for <= now,
            Account.sync_status.notin_([SYNC_SYNCING, SYNC_PAUSED]),
        )
        .order_by(SyncJob.priority.asc(), SyncJob.scheduled_for.asc(), SyncJob.id.asc())
        .limit(_DEQUEUE_CANDIDATES)
        .all()
    )
    for (job_id,) in candidates:
        claimed = (
            db.query(SyncJob)
            .filter(SyncJob.id == job_id, SyncJob.status == JOB_PENDING)
            .update(
                {"status": JOB_IN_PROGRESS, "started_at": now, "updated_at": now},
                synchronize_session=False,
            )
        )
        db.commit()
        if claimed == 1:
            return get_job(db, job_id)
    return None


def complete_job(db: Session, job: SyncJob) -> None:
    now = datetime.utcnow()
    job.status = JOB_COMPLETED
    job.completed_at = now
    job.updated_at = now
    db.commit()


def cancel_job(db: Session, job: SyncJob, reason: str) -> None:
    now = datetime.utcnow()
    job.status = JOB_CANCELLED
    job.error_message = reason
    job.completed_at = now
    job.updated_at = now
    db.commit()


def fail_job(db: Session, job: SyncJob, error: str) -> None:
    """Terminal failure: the job is dropped from the queue but kept in the timeline."""
    now = datetime.utcnow()
    job.status = JOB_FAILED
    job.error_message = error
    job.completed_at = now
    job.updated_at = now
    db.commit()


def _return_to_queue(db: Session, job: SyncJob, scheduled_for: datetime) -> SyncJob:
    """
    Put an in-progress job back to pending. If a newer request for the account was
    queued meanwhile, fold this job into it instead of violating the one-pending rule.
    """
    now = datetime.utcnow()
    pending = get_pending_job(db, job.account_id)
    if pending is not None and pending.id != job.id:
        _merge_into_pending(pending, job.job_type, job.priority, scheduled_for, job.job_metadata, job.trigger)
        pending.retry_count = max(pending.retry_count, job.retry_count)
        job.status = JOB_CANCELLED
        job.error_message = f"Superseded by job {pending.id}"
        job.completed_at = now
        job.updated_at = now
        db.commit()
        return pending
    job.status = JOB_PENDING
    job.scheduled_for = scheduled_for
    job.started_at = None
    job.updated_at = now
    db.commit()
    return job


def requeue_job(db: Session, job: SyncJob) -> SyncJob:
    """Return a claimed job untouched (claim lost to another worker)."""
    return _return_to_queue(db, job, job.scheduled_for)


def retry_job(db: Session, job: SyncJob, error: str, delay_s: float) -> SyncJob:
    """Transient failure: count the retry and reschedule after delay_s seconds."""
    job.retry_count = (job.retry_count or 0) + 1
    job.error_message = error
    job.trigger = "retry"
    return _return_to_queue(db, job, datetime.utcnow() + timedelta(seconds=delay_s))


def cancel_account_jobs(db: Session, account_id: int, reason: str = "Cancelled by user") -> int:
    """Cancel pending jobs for an account. Returns the number cancelled."""
    now = datetime.utcnow()
    count = (
        db.query(SyncJob)
        .filter(SyncJob.account_id == account_id, SyncJob.status == JOB_PENDING)
        .update(
            {"status": JOB_CANCELLED, "error_message": reason, "completed_at": now, "updated_at": now},
            synchronize_session=False,
        )
    )
    db.commit()
    return count


def get_account_jobs(db: Session, account_id: int, limit: int = 20) -> list[SyncJob]:
    """Job timeline for an account, newest first."""
    return (
        db.query(SyncJob)
        .filter(SyncJob.account_id == account_id)
        .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
        .limit(limit)
        .all()
    )


def get_in_progress_jobs(db: Session, account_id: int) -> list[SyncJob]:
    return (
        db.query(SyncJob)
        .filter(SyncJob.account_id == account_id, SyncJob.status == JOB_IN_PROGRESS)
        .all()
    )


def cleanup_old_jobs(db: Session, older_than_days: Optional[int] = None) -> int:
    """Delete finished job rows past the retention window."""
    days = settings.sync_job_retention_days if older_than_days is None else older_than_days
    cutoff = datetime.utcnow() - timedelta(days=days)
    count = (
        db.query(SyncJob)
        .filter(
            SyncJob.status.in_([JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED]),
            SyncJob.completed_at <= cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return count
