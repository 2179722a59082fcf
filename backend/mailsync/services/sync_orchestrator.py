"""
Sync orchestrator: account sync state machine, job execution and recovery.

    idle -> queued -> syncing -> idle     (success)
                              -> error    (retries exhausted / auth failure)
                              -> paused   (user action, seen at the next page checkpoint)
    paused -> queued                      (resume)

Account.sync_status is only written here. Moving to syncing is a single
conditional UPDATE so two workers can never sync the same account at once.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..models import (
    Account,
    SyncJob,
    ACCOUNT_ACTIVE,
    ACCOUNT_ERROR,
    ACCOUNT_INACTIVE,
    JOB_FULL,
    JOB_IN_PROGRESS,
    JOB_INCREMENTAL,
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    SYNC_ERROR,
    SYNC_IDLE,
    SYNC_PAUSED,
    SYNC_QUEUED,
    SYNC_SYNCING,
)
from ..providers import MODE_FULL, MODE_INCREMENTAL, FetchResult, ProviderAdapter, get_adapter
from ..sync_errors import (
    CATEGORY_AUTH,
    CATEGORY_CONFLICT,
    SyncAlreadyInProgressError,
    SyncDataError,
    SyncError,
    SyncPausedError,
    calculate_backoff_delay,
    classify_error,
)
from . import job_queue
from .folder_counts import recalculate_account_folders
from .message_store import CREATED, UPDATED, WriteConflictError, commit_with_retry, delete_messages, upsert_message
from .rate_limiter import FixedWindowRateLimiter, bucket_key, config_for_provider, get_rate_limiter
from .thread_resolver import resolve_thread_id

logger = logging.getLogger(__name__)

STUCK_SYNC_MESSAGE = "Sync stopped responding and was reset. It will be retried."
DISCONNECTED_MESSAGE = "Account disconnected"
INVALID_MESSAGE = "Account authentication invalid - reconnect required"

_COMPLETED = "completed"
_PAUSED = "paused"
_INTERRUPTED = "interrupted"


class AccountNotFoundError(LookupError):
    pass


@dataclass
class SyncResult:
    success: bool
    account_id: int
    job_id: Optional[int] = None
    status: Optional[str] = None  # account sync_status after the run
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    errors: int = 0
    error: Optional[str] = None
    error_category: Optional[str] = None
    retry_scheduled: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


def get_account(db: Session, account_id: int) -> Account:
    account = db.query(Account).filter(Account.id == account_id).first()
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    return account


def _update_account(db: Session, account_id: int, values: dict, only_if: Optional[list[str]] = None) -> bool:
    """Conditional status write. Returns True if the row matched (and was updated)."""
    values = dict(values)
    values.setdefault("updated_at", datetime.utcnow())
    q = db.query(Account).filter(Account.id == account_id)
    if only_if is not None:
        q = q.filter(Account.sync_status.in_(only_if))
    count = q.update(values, synchronize_session=False)
    db.commit()
    db.expire_all()
    return count == 1


def _error_counters() -> dict:
    return {
        "error_count": Account.error_count + 1,
        "consecutive_errors": Account.consecutive_errors + 1,
    }


# ----------------------------
# State transitions
# ----------------------------


def queue_sync(
    db: Session,
    account_id: int,
    job_type: str = JOB_INCREMENTAL,
    priority: int = PRIORITY_NORMAL,
    scheduled_for: Optional[datetime] = None,
    metadata: Optional[dict] = None,
    trigger: str = "manual",
) -> Optional[SyncJob]:
    """
    Enqueue a sync and move the account idle|error -> queued.

    Accounts that need re-authorization or are disconnected are not queued.
    """
    account = get_account(db, account_id)
    if account.requires_reauth or account.status == ACCOUNT_INACTIVE:
        logger.warning(
            f"Not queueing {trigger} sync for account {account_id}: "
            f"{'re-authorization required' if account.requires_reauth else 'account inactive'}"
        )
        return None
    job = job_queue.enqueue(
        db,
        account_id,
        job_type=job_type,
        priority=priority,
        scheduled_for=scheduled_for,
        metadata=metadata,
        trigger=trigger,
    )
    _update_account(db, account_id, {"sync_status": SYNC_QUEUED}, only_if=[SYNC_IDLE, SYNC_ERROR])
    return job


def claim_sync(db: Session, account_id: int, now: Optional[datetime] = None) -> Account:
    """
    Atomically move the account to syncing and reset progress.

    Raises SyncAlreadyInProgressError / SyncPausedError without touching the row
    when the account cannot be claimed.
    """
    now = now or datetime.utcnow()
    claimed = (
        db.query(Account)
        .filter(Account.id == account_id, Account.sync_status.notin_([SYNC_SYNCING, SYNC_PAUSED]))
        .update(
            {
                "sync_status": SYNC_SYNCING,
                "sync_progress": 0,
                "sync_total": 0,
                "sync_started_at": now,
                "last_heartbeat_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.expire_all()
    account = get_account(db, account_id)
    if claimed != 1:
        if account.sync_status == SYNC_PAUSED:
            raise SyncPausedError()
        raise SyncAlreadyInProgressError()
    return account


def pause_sync(db: Session, account_id: int) -> bool:
    """Pause an account. An in-flight job stops at its next page checkpoint."""
    get_account(db, account_id)
    paused = _update_account(
        db,
        account_id,
        {"sync_status": SYNC_PAUSED},
        only_if=[SYNC_IDLE, SYNC_QUEUED, SYNC_SYNCING, SYNC_ERROR],
    )
    if paused:
        logger.info(f"Paused sync for account {account_id}")
    return paused


def resume_sync(db: Session, account_id: int) -> Optional[SyncJob]:
    """
    paused -> queued, with an incremental job to pick up where the account left off.

    Accounts blocked on re-authorization or disconnected go back to error instead.
    """
    account = get_account(db, account_id)
    blocked = account.requires_reauth or account.status == ACCOUNT_INACTIVE
    target = SYNC_ERROR if blocked else SYNC_IDLE
    if not _update_account(db, account_id, {"sync_status": target}, only_if=[SYNC_PAUSED]):
        return None
    if blocked:
        logger.info(f"Unpaused account {account_id}; it stays in error until reconnected")
        return None
    logger.info(f"Resumed sync for account {account_id}")
    return queue_sync(db, account_id, JOB_INCREMENTAL, priority=PRIORITY_HIGH, trigger="manual")


def mark_credentials_refreshed(db: Session, account_id: int) -> None:
    """Credential store reported a working credential again: lift the re-auth block."""
    get_account(db, account_id)
    _update_account(db, account_id, {"requires_reauth": False, "status": ACCOUNT_ACTIVE})
    _update_account(db, account_id, {"sync_status": SYNC_IDLE}, only_if=[SYNC_ERROR])


def mark_account_disconnected(db: Session, account_id: int) -> None:
    job_queue.cancel_account_jobs(db, account_id, DISCONNECTED_MESSAGE)
    _update_account(
        db,
        account_id,
        {"status": ACCOUNT_INACTIVE, "sync_status": SYNC_ERROR, "last_sync_error": DISCONNECTED_MESSAGE},
    )
    logger.info(f"Account {account_id} marked as disconnected")


def mark_account_invalid(db: Session, account_id: int) -> None:
    job_queue.cancel_account_jobs(db, account_id, INVALID_MESSAGE)
    _update_account(
        db,
        account_id,
        {
            "status": ACCOUNT_ERROR,
            "sync_status": SYNC_ERROR,
            "requires_reauth": True,
            "last_sync_error": INVALID_MESSAGE,
        },
    )
    logger.info(f"Account {account_id} marked as invalid")


# ----------------------------
# Job execution
# ----------------------------


def _checkpoint(db: Session, account_id: int, processed: int, total: int) -> bool:
    """Write progress + heartbeat. False means the account left syncing (paused or reset)."""
    now = datetime.utcnow()
    return _update_account(
        db,
        account_id,
        {"sync_progress": processed, "sync_total": total, "last_heartbeat_at": now, "updated_at": now},
        only_if=[SYNC_SYNCING],
    )


def _hydrate(
    limiter: FixedWindowRateLimiter,
    key: str,
    adapter: ProviderAdapter,
    account: Account,
    message_ids: list[str],
) -> list:
    config = config_for_provider(account.provider)
    batches = limiter.batch(
        message_ids,
        settings.provider_batch_size,
        key,
        config,
        lambda ids: adapter.get_messages(account.id, ids),
    )
    return [m for batch in batches for m in batch]


def _fetch_page(
    limiter: FixedWindowRateLimiter,
    key: str,
    adapter: ProviderAdapter,
    account: Account,
    mode: str,
    cursor: Optional[str],
) -> FetchResult:
    page = limiter.run(key, config_for_provider(account.provider), adapter.fetch, account.id, mode, cursor)
    if settings.rate_limit_adaptive and page.rate_limit is not None:
        limiter.update_from_headers(key, page.rate_limit.limit, page.rate_limit.remaining, page.rate_limit.reset)
    return page


def _run_pipeline(
    db: Session,
    account: Account,
    job: SyncJob,
    adapter: ProviderAdapter,
    result: SyncResult,
) -> tuple[str, Optional[str]]:
    """
    fetch -> thread -> write, one provider page at a time.

    Each page is committed, then progress and heartbeat are written; a failed
    checkpoint means the account was paused or reset and the run stops there.
    Returns (outcome, cursor to persist).
    """
    mode = MODE_FULL if job.job_type == JOB_FULL else MODE_INCREMENTAL
    cursor = None if mode == MODE_FULL else account.sync_cursor
    limit = (job.job_metadata or {}).get("limit") if mode == MODE_INCREMENTAL else None
    limiter = get_rate_limiter()
    key = bucket_key(account.provider, account.id)
    estimated_total = 0

    while True:
        page = _fetch_page(limiter, key, adapter, account, mode, cursor)
        if page.estimated_total:
            estimated_total = max(estimated_total, int(page.estimated_total))

        messages = list(page.messages)
        if page.message_ids:
            messages.extend(_hydrate(limiter, key, adapter, account, page.message_ids))

        for message in messages:
            try:
                thread_id = resolve_thread_id(message, account.provider)
                written = upsert_message(db, account.id, message, thread_id)
            except WriteConflictError:
                raise
            except (ValueError, TypeError, AttributeError) as e:
                result.errors += 1
                logger.warning(f"Skipping malformed message for account {account.id}: {e}")
                continue
            result.processed += 1
            if written == CREATED:
                result.created += 1
            elif written == UPDATED:
                result.updated += 1
            else:
                result.unchanged += 1

        if page.deleted_message_ids:
            result.deleted += delete_messages(db, account.id, page.deleted_message_ids)

        commit_with_retry(db)

        fetched = result.processed + result.errors
        if not _checkpoint(db, account.id, fetched, max(estimated_total, fetched)):
            status = get_account(db, account.id).sync_status
            return (_PAUSED if status == SYNC_PAUSED else _INTERRUPTED), None

        cursor = page.next_cursor or cursor
        if not page.has_more:
            break
        if limit and fetched >= int(limit):
            logger.info(f"Fetch limit {limit} reached for account {account.id}")
            break

    fetched = result.processed + result.errors
    if fetched and result.errors / fetched > settings.sync_partial_failure_threshold:
        raise SyncDataError(f"Partial sync failure: {result.errors}/{fetched} messages failed")
    return _COMPLETED, cursor


def _reconcile(db: Session, account_id: int) -> None:
    """Folder counts after a job; failures are logged and left for the next cycle."""
    try:
        recalculate_account_folders(db, account_id)
    except Exception as e:
        db.rollback()
        logger.error(f"Folder reconciliation failed for account {account_id}: {e}")


def _handle_failure(db: Session, account_id: int, job: SyncJob, exc: BaseException, result: SyncResult) -> None:
    info = classify_error(exc)
    now = datetime.utcnow()
    result.success = False
    result.error = info.message
    result.error_category = info.category

    if info.category == CATEGORY_AUTH:
        logger.error(f"Authentication failed for account {account_id}: {exc}")
        job_queue.fail_job(db, job, info.message)
        job_queue.cancel_account_jobs(db, account_id, "Re-authorization required")
        _update_account(
            db,
            account_id,
            {
                "sync_status": SYNC_ERROR,
                "status": ACCOUNT_ERROR,
                "requires_reauth": True,
                "last_sync_error": info.message,
                "last_sync_at": now,
                **_error_counters(),
            },
            only_if=[SYNC_SYNCING],
        )
        result.status = SYNC_ERROR
        return

    if info.retryable and job.retry_count < job.max_retries:
        delay = info.retry_after or calculate_backoff_delay(
            job.retry_count + 1,
            settings.sync_retry_base_delay_s,
            settings.sync_retry_max_delay_s,
        )
        logger.warning(
            f"Sync for account {account_id} failed ({info.category}: {exc}); "
            f"retry {job.retry_count + 1}/{job.max_retries} in {delay:.0f}s"
        )
        job_queue.retry_job(db, job, info.message, delay)
        _update_account(
            db,
            account_id,
            {"sync_status": SYNC_QUEUED, "last_sync_error": info.message, "last_sync_at": now},
            only_if=[SYNC_SYNCING],
        )
        result.retry_scheduled = True
        result.status = SYNC_QUEUED
        return

    logger.error(f"Sync for account {account_id} failed permanently ({info.category}): {exc}")
    job_queue.fail_job(db, job, info.message)
    _update_account(
        db,
        account_id,
        {"sync_status": SYNC_ERROR, "last_sync_error": info.message, "last_sync_at": now, **_error_counters()},
        only_if=[SYNC_SYNCING],
    )
    result.status = SYNC_ERROR


def _mark_success(db: Session, account_id: int, cursor: Optional[str]) -> bool:
    now = datetime.utcnow()
    # Work queued while this run was in flight keeps the account queued.
    pending = job_queue.get_pending_job(db, account_id) is not None
    values = {
        "sync_status": SYNC_QUEUED if pending else SYNC_IDLE,
        "last_sync_at": now,
        "last_successful_sync_at": now,
        "last_sync_error": None,
        "consecutive_errors": 0,
        "next_scheduled_sync_at": now + timedelta(seconds=settings.poll_interval_s),
    }
    if cursor:
        values["sync_cursor"] = cursor
    return _update_account(db, account_id, values, only_if=[SYNC_SYNCING])


def _execute(db: Session, account: Account, job: SyncJob, adapter: Optional[ProviderAdapter]) -> SyncResult:
    """Run a claimed job to one of its end states."""
    account_id = account.id
    result = SyncResult(success=True, account_id=account_id, job_id=job.id)
    logger.info(f"Starting {job.job_type} sync for account {account_id} (job {job.id}, {job.trigger})")
    try:
        adapter = adapter or get_adapter(account.provider)
        outcome, cursor = _run_pipeline(db, account, job, adapter, result)
    except Exception as exc:
        db.rollback()
        _handle_failure(db, account_id, job, exc, result)
        _reconcile(db, account_id)
        return result

    _reconcile(db, account_id)

    if outcome == _COMPLETED and _mark_success(db, account_id, cursor):
        job_queue.complete_job(db, job)
        result.status = SYNC_IDLE
        logger.info(
            f"Sync complete for account {account_id}: {result.processed} processed, "
            f"{result.created} created, {result.updated} updated, {result.deleted} deleted"
        )
        return result

    # Paused (or reset) while running.
    db.refresh(job)
    status = get_account(db, account_id).sync_status
    result.success = False
    result.status = status
    result.error_category = CATEGORY_CONFLICT
    if status == SYNC_PAUSED:
        result.error = SyncPausedError.user_message
    else:
        result.error = "Sync interrupted"
    if job.status == JOB_IN_PROGRESS:
        job_queue.cancel_job(db, job, result.error)
    logger.info(f"Sync for account {account_id} stopped early: {result.error}")
    return result


def run_job(db: Session, job: SyncJob, adapter: Optional[ProviderAdapter] = None) -> SyncResult:
    """Execute a job taken from dequeue_next."""
    try:
        account = claim_sync(db, job.account_id)
    except AccountNotFoundError as e:
        job_queue.fail_job(db, job, str(e))
        return SyncResult(success=False, account_id=job.account_id, job_id=job.id, error=str(e))
    except (SyncAlreadyInProgressError, SyncPausedError) as e:
        # Leave the work queued for when the account is free again.
        job_queue.requeue_job(db, job)
        return SyncResult(
            success=False,
            account_id=job.account_id,
            job_id=job.id,
            status=get_account(db, job.account_id).sync_status,
            error=e.user_message,
            error_category=e.category,
        )
    return _execute(db, account, job, adapter)


def start_sync(
    db: Session,
    account_id: int,
    job_type: str = JOB_INCREMENTAL,
    adapter: Optional[ProviderAdapter] = None,
) -> SyncResult:
    """
    Run a sync now, in the caller's thread. Rejected with a failure result (and
    no state change) when the account is already syncing or paused.
    """
    try:
        account = claim_sync(db, account_id)
    except SyncError as e:
        return SyncResult(
            success=False,
            account_id=account_id,
            status=get_account(db, account_id).sync_status,
            error=e.user_message,
            error_category=e.category,
        )
    now = datetime.utcnow()
    job = SyncJob(
        account_id=account_id,
        job_type=job_type,
        priority=PRIORITY_HIGH,
        trigger="manual",
        status=JOB_IN_PROGRESS,
        scheduled_for=now,
        started_at=now,
        max_retries=0,
    )
    db.add(job)
    db.commit()
    return _execute(db, account, job, adapter)


# ----------------------------
# Recovery and worker pool
# ----------------------------


def recover_stuck_syncs(
    db: Session,
    now: Optional[datetime] = None,
    threshold_s: Optional[int] = None,
) -> list[int]:
    """
    Reset accounts stuck in syncing whose heartbeat is older than the threshold.

    Their in-flight job is retried if it has retries left (account -> idle) or
    failed (account -> error); error counters increment either way.
    Returns the reset account ids.
    """
    now = now or datetime.utcnow()
    threshold = settings.sync_stuck_threshold_s if threshold_s is None else threshold_s
    cutoff = now - timedelta(seconds=threshold)
    last_seen = func.coalesce(Account.last_heartbeat_at, Account.sync_started_at, Account.updated_at)

    stuck = [
        a.id for a in db.query(Account.id).filter(Account.sync_status == SYNC_SYNCING, last_seen < cutoff)
    ]
    reset: list[int] = []
    for account_id in stuck:
        jobs = job_queue.get_in_progress_jobs(db, account_id)
        retryable = [j for j in jobs if j.retry_count < j.max_retries]
        new_status = SYNC_ERROR if jobs and not retryable else SYNC_IDLE

        count = (
            db.query(Account)
            .filter(Account.id == account_id, Account.sync_status == SYNC_SYNCING, last_seen < cutoff)
            .update(
                {
                    "sync_status": new_status,
                    "last_sync_error": STUCK_SYNC_MESSAGE,
                    "updated_at": now,
                    **_error_counters(),
                },
                synchronize_session=False,
            )
        )
        db.commit()
        db.expire_all()
        if count != 1:
            continue  # heartbeat arrived meanwhile

        for job in jobs:
            if job in retryable:
                delay = calculate_backoff_delay(
                    job.retry_count + 1,
                    settings.sync_retry_base_delay_s,
                    settings.sync_retry_max_delay_s,
                )
                job_queue.retry_job(db, job, STUCK_SYNC_MESSAGE, delay)
            else:
                job_queue.fail_job(db, job, STUCK_SYNC_MESSAGE)
        logger.warning(f"Recovered stuck sync for account {account_id} -> {new_status}")
        reset.append(account_id)
    return reset


def process_queue(
    session_factory: Callable[[], Session] = SessionLocal,
    max_workers: Optional[int] = None,
    max_jobs: Optional[int] = None,
) -> dict:
    """
    Drain due jobs with a pool of worker threads, one DB session per worker.
    Different accounts sync in parallel; the per-account claim keeps each account serial.
    """
    workers = max(1, max_workers or settings.sync_workers)
    limit = settings.sync_max_jobs_per_run if max_jobs is None else max_jobs
    stats = {"processed": 0, "succeeded": 0, "failed": 0}
    lock = threading.Lock()

    def _reserve() -> bool:
        with lock:
            if limit and stats["processed"] >= limit:
                return False
            stats["processed"] += 1
            return True

    def _release() -> None:
        with lock:
            stats["processed"] -= 1

    def _worker() -> None:
        db = session_factory()
        try:
            while _reserve():
                job = job_queue.dequeue_next(db)
                if job is None:
                    _release()
                    return
                result = run_job(db, job)
                with lock:
                    stats["succeeded" if result.success else "failed"] += 1
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_worker) for _ in range(workers)]
        for future in as_completed(futures):
            future.result()

    if stats["processed"]:
        logger.info(
            f"Queue drain: {stats['processed']} jobs, {stats['succeeded']} succeeded, {stats['failed']} failed"
        )
    return stats


def get_sync_status(db: Session, account_id: int) -> dict:
    """Status snapshot polled by the UI."""
    account = get_account(db, account_id)
    return account_status_dict(account)


def account_status_dict(account: Account) -> dict:
    return {
        "account_id": account.id,
        "provider": account.provider,
        "status": account.status,
        "sync_status": account.sync_status,
        "sync_progress": account.sync_progress or 0,
        "sync_total": account.sync_total or 0,
        "last_sync_at": account.last_sync_at,
        "last_successful_sync_at": account.last_successful_sync_at,
        "last_sync_error": account.last_sync_error,
        "error_count": account.error_count or 0,
        "consecutive_errors": account.consecutive_errors or 0,
        "next_scheduled_sync_at": account.next_scheduled_sync_at,
        "requires_reauth": bool(account.requires_reauth),
    }
