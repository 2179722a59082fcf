"""
Folder counter reconciliation.

Counters are always recomputed from the messages table (non-trashed messages,
and unread among those); they are never incremented in place, so running a
reconciliation any number of times yields the same result.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..models import Account, Folder, Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FolderCounts:
    message_count: int
    unread_count: int

    def as_dict(self) -> dict:
        return {"message_count": self.message_count, "unread_count": self.unread_count}


def _count_query(db: Session, account_id: int):
    unread = func.sum(case((Message.is_read.is_(False), 1), else_=0))
    return db.query(Message.folder, func.count(Message.id), unread).filter(
        Message.account_id == account_id,
        Message.is_trashed.is_(False),
    )


def _store(db: Session, account_id: int, name: str, counts: FolderCounts, now: datetime) -> None:
    row = db.query(Folder).filter(Folder.account_id == account_id, Folder.name == name).first()
    if row is None:
        db.add(Folder(
            account_id=account_id,
            name=name,
            message_count=counts.message_count,
            unread_count=counts.unread_count,
            updated_at=now,
        ))
    else:
        row.message_count = counts.message_count
        row.unread_count = counts.unread_count
        row.updated_at = now


def recalculate_folder(db: Session, account_id: int, folder_name: str) -> FolderCounts:
    """Recount one folder and persist its counters."""
    row = _count_query(db, account_id).filter(Message.folder == folder_name).group_by(Message.folder).first()
    counts = FolderCounts(int(row[1] or 0), int(row[2] or 0)) if row else FolderCounts(0, 0)
    _store(db, account_id, folder_name, counts, datetime.utcnow())
    db.commit()
    return counts


def recalculate_account_folders(db: Session, account_id: int) -> dict[str, FolderCounts]:
    """
    Recount every folder of an account. Folders that only exist as message
    folder names are created; known folders with no remaining messages drop to zero.
    """
    now = datetime.utcnow()
    results: dict[str, FolderCounts] = {
        name: FolderCounts(0, 0)
        for (name,) in db.query(Folder.name).filter(Folder.account_id == account_id)
    }
    for name, total, unread in _count_query(db, account_id).group_by(Message.folder):
        results[name] = FolderCounts(int(total or 0), int(unread or 0))
    # Folders that hold only trashed messages still exist as folders.
    for (name,) in db.query(Message.folder).filter(Message.account_id == account_id).distinct():
        results.setdefault(name, FolderCounts(0, 0))

    for name, counts in results.items():
        _store(db, account_id, name, counts, now)
    db.commit()
    logger.debug(f"Recalculated {len(results)} folders for account {account_id}")
    return results


def recalculate(db: Session, account_id: int, folder_name: Optional[str] = None):
    """FolderCounts for one folder, or {folder_name: FolderCounts} for the whole account."""
    if folder_name is not None:
        return recalculate_folder(db, account_id, folder_name)
    return recalculate_account_folders(db, account_id)


def recalculate_user_folders(db: Session, user_id: int) -> dict[int, dict[str, FolderCounts]]:
    """Consistency audit across every account of one user."""
    account_ids = [a.id for a in db.query(Account.id).filter(Account.user_id == user_id).order_by(Account.id)]
    return {account_id: recalculate_account_folders(db, account_id) for account_id in account_ids}


def recalculate_all_folders(db: Session) -> dict:
    """Audit sweep over all accounts. A failing account is logged and skipped."""
    summary = {"accounts": 0, "folders": 0, "failed": 0}
    for (account_id,) in db.query(Account.id).order_by(Account.id):
        try:
            folders = recalculate_account_folders(db, account_id)
        except Exception as e:
            db.rollback()
            summary["failed"] += 1
            logger.error(f"Folder reconciliation failed for account {account_id}: {e}")
            continue
        summary["accounts"] += 1
        summary["folders"] += len(folders)
    return summary


def get_folder_counts(db: Session, account_id: int) -> dict[str, FolderCounts]:
    """Stored counters as last reconciled (no recount)."""
    rows = db.query(Folder).filter(Folder.account_id == account_id).order_by(Folder.name)
    return {f.name: FolderCounts(f.message_count, f.unread_count) for f in rows}
