"""Idempotent message/attachment writes keyed on (account_id, provider_message_id)."""
import logging
import random
import time
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..models import Attachment, Message
from ..providers.base import ProviderAttachment, ProviderMessage
from ..sync_errors import SyncError

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


class WriteConflictError(SyncError):
    """Another writer inserted the same message first; the job is safe to retry."""

    user_message = "Concurrent write conflict"


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "sqlite_busy" in msg


def commit_with_retry(db: Session, *, max_retries: int = 6, base_sleep_s: float = 0.05) -> None:
    """
    SQLite can transiently raise 'database is locked' while several sync workers write.
    Retry commits with exponential backoff + jitter.
    """
    attempt = 0
    while True:
        try:
            db.commit()
            return
        except OperationalError as e:
            db.rollback()
            if attempt >= max_retries or not _is_sqlite_locked_error(e):
                raise
            sleep_s = min(2.0, base_sleep_s * (2 ** attempt)) + random.uniform(0, 0.05)
            time.sleep(sleep_s)
            attempt += 1


def _message_fields(message: ProviderMessage, thread_id: str) -> dict:
    return {
        "thread_id": thread_id,
        "folder": (message.folder or "inbox")[:255],
        "subject": (message.subject or "")[:1000] or None,
        "sender": (message.sender or "")[:255] or None,
        "rfc_message_id": message.message_id,
        "in_reply_to": message.in_reply_to,
        "references_header": message.references,
        "is_read": bool(message.is_read),
        "is_starred": bool(message.is_starred),
        "is_trashed": bool(message.is_trashed),
        "has_attachments": message.has_attachments,
        "received_at": message.received_at.replace(tzinfo=None) if message.received_at and message.received_at.tzinfo else message.received_at,
    }


def get_message(db: Session, account_id: int, provider_message_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.account_id == account_id, Message.provider_message_id == provider_message_id)
        .first()
    )


def _attachment_fields(attachments: Iterable[ProviderAttachment]) -> list[dict]:
    """Read every attachment up front so a malformed one fails before the session is touched."""
    fields = []
    for att in attachments or ():
        fields.append(
            {
                "provider_attachment_id": att.provider_attachment_id,
                "filename": att.filename,
                "content_type": att.content_type,
                "size": att.size,
            }
        )
    return fields


def _upsert_attachments(row: Message, attachments: list[dict]) -> bool:
    """Add new attachments and refresh metadata of known ones. Returns True if anything changed."""
    existing = {a.provider_attachment_id: a for a in row.attachments}
    changed = False
    for att in attachments:
        current = existing.get(att["provider_attachment_id"])
        if current is None:
            row.attachments.append(Attachment(**att))
            changed = True
            continue
        for field_name in ("filename", "content_type", "size"):
            if getattr(current, field_name) != att[field_name]:
                setattr(current, field_name, att[field_name])
                changed = True
    return changed


def upsert_message(db: Session, account_id: int, message: ProviderMessage, thread_id: str) -> str:
    """
    Insert or update one message. Re-delivering an identical message is a no-op.

    Flushes but does not commit; the caller commits once per page.
    Returns CREATED, UPDATED or UNCHANGED.
    """
    if not message.provider_message_id:
        raise ValueError("provider_message_id is required")
    fields = _message_fields(message, thread_id)
    attachments = _attachment_fields(message.attachments)
    row = get_message(db, account_id, message.provider_message_id)

    if row is None:
        row = Message(account_id=account_id, provider_message_id=message.provider_message_id, **fields)
        _upsert_attachments(row, attachments)
        db.add(row)
        try:
            db.flush()
        except IntegrityError as e:
            db.rollback()
            raise WriteConflictError(f"Message {message.provider_message_id} written concurrently") from e
        return CREATED

    changed = False
    for key, value in fields.items():
        if getattr(row, key) != value:
            setattr(row, key, value)
            changed = True
    if _upsert_attachments(row, attachments):
        changed = True
    if changed:
        db.flush()
        return UPDATED
    return UNCHANGED


def delete_messages(db: Session, account_id: int, provider_message_ids: Iterable[str]) -> int:
    """Remove messages the provider reported as deleted. Unknown ids are ignored."""
    ids = [i for i in provider_message_ids if i]
    if not ids:
        return 0
    row_ids = [
        r.id
        for r in db.query(Message.id).filter(
            Message.account_id == account_id,
            Message.provider_message_id.in_(ids),
        )
    ]
    if not row_ids:
        return 0
    db.query(Attachment).filter(Attachment.message_id.in_(row_ids)).delete(synchronize_session=False)
    deleted = db.query(Message).filter(Message.id.in_(row_ids)).delete(synchronize_session=False)
    db.flush()
    logger.debug(f"Deleted {deleted} messages for account {account_id}")
    return deleted
