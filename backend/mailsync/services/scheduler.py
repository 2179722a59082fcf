"""Periodic polling: queue syncs for accounts whose next poll is due."""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..models import (
    Account,
    ACCOUNT_ACTIVE,
    JOB_FULL,
    JOB_INCREMENTAL,
    PRIORITY_LOW,
    PRIORITY_NORMAL,
    SYNC_ERROR,
    SYNC_IDLE,
)
from . import sync_orchestrator

logger = logging.getLogger(__name__)


def next_sync_delay(account: Account) -> int:
    """Seconds until the account should be polled again; backs off on repeated errors."""
    errors = account.consecutive_errors or 0
    if errors >= settings.poll_error_backoff_threshold:
        return min((2 ** errors) * settings.poll_error_backoff_base_s, settings.poll_error_backoff_max_s)
    return settings.poll_interval_s


def schedule_polling_syncs(db: Session, now: Optional[datetime] = None) -> list[int]:
    """
    Enqueue scheduled syncs for due accounts. Accounts that never synced
    successfully get a full sync. Returns the account ids queued.
    """
    now = now or datetime.utcnow()
    due = (
        db.query(Account)
        .filter(
            Account.status == ACCOUNT_ACTIVE,
            Account.requires_reauth.is_(False),
            Account.sync_status.in_([SYNC_IDLE, SYNC_ERROR]),
            or_(Account.next_scheduled_sync_at.is_(None), Account.next_scheduled_sync_at <= now),
        )
        .order_by(Account.next_scheduled_sync_at.asc(), Account.id.asc())
        .all()
    )

    queued: list[int] = []
    for account in due:
        account_id = account.id
        never_synced = account.last_successful_sync_at is None
        delay = next_sync_delay(account)
        job = sync_orchestrator.queue_sync(
            db,
            account_id,
            job_type=JOB_FULL if never_synced else JOB_INCREMENTAL,
            priority=PRIORITY_NORMAL if never_synced else PRIORITY_LOW,
            scheduled_for=now,
            trigger="scheduled",
        )
        if job is None:
            continue
        db.query(Account).filter(Account.id == account_id).update(
            {"next_scheduled_sync_at": now + timedelta(seconds=delay)},
            synchronize_session=False,
        )
        db.commit()
        queued.append(account_id)

    if queued:
        logger.info(f"Scheduled polling syncs for {len(queued)} accounts")
    return queued
