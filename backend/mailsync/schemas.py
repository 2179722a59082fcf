"""Pydantic schemas for API."""
from datetime import datetime
from typing import Optional, List, Dict

from pydantic import BaseModel, Field


class SyncStatusResponse(BaseModel):
    account_id: int
    provider: str
    status: str
    sync_status: str
    sync_progress: int = 0
    sync_total: int = 0
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    error_count: int = 0
    consecutive_errors: int = 0
    next_scheduled_sync_at: Optional[datetime] = None
    requires_reauth: bool = False


class SyncJobResponse(BaseModel):
    id: int
    account_id: int
    job_type: str
    priority: int
    trigger: str
    status: str
    scheduled_for: datetime
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncRequest(BaseModel):
    job_type: str = Field(default="incremental", pattern="^(full|incremental)$")


class SyncQueuedResponse(BaseModel):
    message: str
    status: str
    job_id: Optional[int] = None


class FolderCountsResponse(BaseModel):
    message_count: int
    unread_count: int


class FolderRecalculateResponse(BaseModel):
    account_id: int
    folders: Dict[str, FolderCountsResponse]


class JobListResponse(BaseModel):
    items: List[SyncJobResponse]
