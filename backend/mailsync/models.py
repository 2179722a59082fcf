"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import JSON

Base = declarative_base()

# Account.sync_status
SYNC_IDLE = "idle"
SYNC_QUEUED = "queued"
SYNC_SYNCING = "syncing"
SYNC_PAUSED = "paused"
SYNC_ERROR = "error"

# Account.status (connection health, set by webhooks and auth failures)
ACCOUNT_ACTIVE = "active"
ACCOUNT_INACTIVE = "inactive"
ACCOUNT_ERROR = "error"

# SyncJob.status
JOB_PENDING = "pending"
JOB_IN_PROGRESS = "in_progress"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

JOB_FULL = "full"
JOB_INCREMENTAL = "incremental"

# SyncJob.priority: lower is more urgent
PRIORITY_IMMEDIATE = 0
PRIORITY_HIGH = 1
PRIORITY_NORMAL = 2
PRIORITY_LOW = 3
PRIORITY_BACKGROUND = 4


class Account(Base):
    """One connected mailbox. sync_status is owned by the sync orchestrator."""
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)  # owner in the surrounding product
    provider = Column(String(32), nullable=False, index=True)  # gmail, microsoft, nylas, imap
    email_address = Column(String, nullable=True)
    grant_id = Column(String, unique=True, index=True, nullable=True)  # provider-side handle
    credential_ref = Column(String, nullable=True)  # opaque pointer into the credential store
    status = Column(String(16), default=ACCOUNT_ACTIVE, nullable=False)

    sync_status = Column(String(16), default=SYNC_IDLE, nullable=False, index=True)
    sync_progress = Column(Integer, default=0, nullable=False)
    sync_total = Column(Integer, default=0, nullable=False)
    sync_cursor = Column(String, nullable=True)  # incremental cursor from the last successful sync
    sync_started_at = Column(DateTime, nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_successful_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    error_count = Column(Integer, default=0, nullable=False)
    consecutive_errors = Column(Integer, default=0, nullable=False)
    next_scheduled_sync_at = Column(DateTime, nullable=True, index=True)
    requires_reauth = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    jobs = relationship("SyncJob", back_populates="account", cascade="all, delete-orphan")


class SyncJob(Base):
    """A unit of sync work. Rows are kept after completion as the per-account timeline."""
    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    job_type = Column(String(16), default=JOB_INCREMENTAL, nullable=False)  # full, incremental
    priority = Column(Integer, default=PRIORITY_NORMAL, nullable=False)
    trigger = Column(String(16), default="scheduled", nullable=False)  # webhook, scheduled, manual, retry
    status = Column(String(16), default=JOB_PENDING, nullable=False, index=True)
    scheduled_for = Column(DateTime, default=datetime.utcnow, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    job_metadata = Column(JSON, nullable=True)  # e.g. {"limit": 10}
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    account = relationship("Account", back_populates="jobs")


class Message(Base):
    """Canonical mail record, deduplicated on (account_id, provider_message_id)."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_message_id = Column(String, nullable=False)
    thread_id = Column(String, nullable=False, index=True)
    folder = Column(String, nullable=False, default="inbox")
    subject = Column(String, nullable=True)
    sender = Column(String, nullable=True)
    rfc_message_id = Column(String, nullable=True, index=True)
    in_reply_to = Column(String, nullable=True)
    references_header = Column(Text, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    is_starred = Column(Boolean, default=False, nullable=False)
    is_trashed = Column(Boolean, default=False, nullable=False)
    has_attachments = Column(Boolean, default=False, nullable=False)
    received_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    attachments = relationship("Attachment", back_populates="message", cascade="all, delete-orphan")


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_attachment_id = Column(String, nullable=False)
    filename = Column(String, nullable=True)
    content_type = Column(String, nullable=True)
    size = Column(Integer, nullable=True)

    message = relationship("Message", back_populates="attachments")

    __table_args__ = (
        UniqueConstraint("message_id", "provider_attachment_id", name="uq_attachments_message_provider"),
    )


class Folder(Base):
    """Per-account folder counters, rebuilt by the folder count reconciler."""
    __tablename__ = "folders"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    unread_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "name", name="uq_folders_account_name"),
    )


# Dedup key for message upserts
Index("ix_messages_account_provider_id", Message.account_id, Message.provider_message_id, unique=True)
# Count queries for folder reconciliation
Index("ix_messages_account_folder", Message.account_id, Message.folder, Message.is_trashed)
# Dequeue order
Index("ix_sync_jobs_status_priority_scheduled", SyncJob.status, SyncJob.priority, SyncJob.scheduled_for)
# At most one outstanding job per account
Index(
    "uq_sync_jobs_pending_account",
    SyncJob.account_id,
    unique=True,
    sqlite_where=text("status = 'pending'"),
    postgresql_where=text("status = 'pending'"),
)
