"""Sync API: per-account status (polling + SSE), job timeline, manual sync, pause/resume, folder counts."""
import asyncio
import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse
from typing import Optional

from ..database import SessionLocal, get_db, get_sync_db
from ..models import Account, JOB_FULL, PRIORITY_HIGH, SYNC_PAUSED, SYNC_SYNCING
from ..schemas import (
    FolderCountsResponse,
    FolderRecalculateResponse,
    JobListResponse,
    SyncJobResponse,
    SyncQueuedResponse,
    SyncRequest,
    SyncStatusResponse,
)
from ..services import folder_counts, job_queue, sync_orchestrator
from ..sync_errors import AuthenticationError, SyncAlreadyInProgressError, SyncPausedError
from ..tasks import dispatch_queue_drain

router = APIRouter(prefix="/api/accounts", tags=["sync"])

# SSE stops once the account settles in one of these.
_SETTLED = ("idle", "error", "paused")


def _account_or_404(db: Session, account_id: int) -> Account:
    try:
        return sync_orchestrator.get_account(db, account_id)
    except sync_orchestrator.AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")


def _jsonable(state: dict) -> dict:
    return {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in state.items()}


@router.get("/{account_id}/sync-status", response_model=SyncStatusResponse)
async def sync_status(account_id: int, db: AsyncSession = Depends(get_db)):
    """Current sync state for the account: status, progress, last error, next poll."""
    account = await db.scalar(select(Account).where(Account.id == account_id))
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return sync_orchestrator.account_status_dict(account)


async def _sse_generator(account_id: int, interval_s: float = 0.5):
    """Yield SSE events with sync progress for this account until it settles."""
    while True:
        session = SessionLocal()
        try:
            state = sync_orchestrator.get_sync_status(session, account_id)
        finally:
            session.close()
        yield {"data": json.dumps(_jsonable(state))}
        if state.get("sync_status") in _SETTLED:
            break
        await asyncio.sleep(interval_s)


@router.get("/{account_id}/sync-events")
async def sync_events(account_id: int, db: Session = Depends(get_sync_db)):
    """SSE stream of sync progress for this account."""
    _account_or_404(db, account_id)
    return EventSourceResponse(_sse_generator(account_id))


@router.get("/{account_id}/jobs", response_model=JobListResponse)
def list_jobs(
    account_id: int,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_sync_db),
):
    """Job timeline for the account, newest first."""
    _account_or_404(db, account_id)
    jobs = job_queue.get_account_jobs(db, account_id, limit=limit)
    return {"items": [SyncJobResponse.model_validate(j) for j in jobs]}


@router.post("/{account_id}/sync", response_model=SyncQueuedResponse, status_code=202)
def request_sync(
    account_id: int,
    background_tasks: BackgroundTasks,
    body: Optional[SyncRequest] = None,
    db: Session = Depends(get_sync_db),
):
    """Queue a manual sync. 409 while the account is syncing or paused."""
    body = body or SyncRequest()
    account = _account_or_404(db, account_id)
    if account.sync_status == SYNC_SYNCING:
        raise HTTPException(status_code=409, detail=SyncAlreadyInProgressError.user_message)
    if account.sync_status == SYNC_PAUSED:
        raise HTTPException(status_code=409, detail=SyncPausedError.user_message)
    if account.requires_reauth:
        raise HTTPException(status_code=400, detail=AuthenticationError.user_message)

    job = sync_orchestrator.queue_sync(
        db,
        account_id,
        job_type=body.job_type,
        priority=PRIORITY_HIGH,
        trigger="manual",
    )
    if job is None:
        raise HTTPException(status_code=400, detail="Account is not active")
    background_tasks.add_task(dispatch_queue_drain)
    return {
        "message": f"{'Full' if job.job_type == JOB_FULL else 'Incremental'} sync queued.",
        "status": "queued",
        "job_id": job.id,
    }


@router.post("/{account_id}/pause", response_model=SyncStatusResponse)
def pause(account_id: int, db: Session = Depends(get_sync_db)):
    _account_or_404(db, account_id)
    if not sync_orchestrator.pause_sync(db, account_id):
        raise HTTPException(status_code=409, detail="Sync is already paused")
    return sync_orchestrator.get_sync_status(db, account_id)


@router.post("/{account_id}/resume", response_model=SyncStatusResponse)
def resume(account_id: int, background_tasks: BackgroundTasks, db: Session = Depends(get_sync_db)):
    account = _account_or_404(db, account_id)
    if account.sync_status != SYNC_PAUSED:
        raise HTTPException(status_code=409, detail="Sync is not paused")
    if sync_orchestrator.resume_sync(db, account_id) is not None:
        background_tasks.add_task(dispatch_queue_drain)
    return sync_orchestrator.get_sync_status(db, account_id)


@router.get("/{account_id}/folders", response_model=dict[str, FolderCountsResponse])
def get_folders(account_id: int, db: Session = Depends(get_sync_db)):
    """Stored folder counters."""
    _account_or_404(db, account_id)
    return {name: c.as_dict() for name, c in folder_counts.get_folder_counts(db, account_id).items()}


@router.post("/{account_id}/folders/recalculate", response_model=FolderRecalculateResponse)
def recalculate_folders(
    account_id: int,
    folder: Optional[str] = None,
    db: Session = Depends(get_sync_db),
):
    """Recount folder counters from stored messages (one folder, or all)."""
    _account_or_404(db, account_id)
    if folder:
        counts = {folder: folder_counts.recalculate(db, account_id, folder)}
    else:
        counts = folder_counts.recalculate(db, account_id)
    return {"account_id": account_id, "folders": {name: c.as_dict() for name, c in counts.items()}}
