#!/usr/bin/env python3
"""
Recount folder counters from stored messages (no Redis/Celery needed).

Usage (from backend/; use the project venv):
  ./.venv/bin/python scripts/reconcile_folders.py --all
  ./.venv/bin/python scripts/reconcile_folders.py --account-id 3
  ./.venv/bin/python scripts/reconcile_folders.py --account-id 3 --folder inbox
  ./.venv/bin/python scripts/reconcile_folders.py --user-id 1
"""

from __future__ import annotations

import argparse
import os
import sys

# Ensure mailsync is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from sqlalchemy.orm import Session

from mailsync.database import SessionLocal
from mailsync.services import folder_counts


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Recalculate folder message/unread counters.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--account-id", type=int, help="Reconcile one account")
    target.add_argument("--user-id", type=int, help="Reconcile every account of a user")
    target.add_argument("--all", action="store_true", help="Reconcile every account")
    parser.add_argument("--folder", type=str, default=None, help="Single folder (with --account-id)")
    args = parser.parse_args()

    if args.folder and args.account_id is None:
        parser.error("--folder requires --account-id")

    db: Session = SessionLocal()
    try:
        if args.all:
            summary = folder_counts.recalculate_all_folders(db)
            print(f"Accounts: {summary['accounts']}  folders: {summary['folders']}  failed: {summary['failed']}")
            return 1 if summary["failed"] else 0

        if args.user_id is not None:
            per_account = folder_counts.recalculate_user_folders(db, args.user_id)
        elif args.folder:
            per_account = {args.account_id: {args.folder: folder_counts.recalculate(db, args.account_id, args.folder)}}
        else:
            per_account = {args.account_id: folder_counts.recalculate(db, args.account_id)}

        for account_id, folders in per_account.items():
            for name, counts in sorted(folders.items()):
                print(f"account={account_id} folder={name} messages={counts.message_count} unread={counts.unread_count}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
