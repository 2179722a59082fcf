from conftest import make_account, make_message
from mailsync.models import Folder, Message
from mailsync.services import folder_counts as fc
from mailsync.services.message_store import upsert_message


def _seed(db, account_id, specs):
    for i, (folder, is_read, is_trashed) in enumerate(specs):
        upsert_message(
            db,
            account_id,
            make_message(f"{folder}-{i}", folder=folder, is_read=is_read, is_trashed=is_trashed),
            f"t{i}",
        )
    db.commit()


def test_counts_exclude_trashed(db_session, account):
    _seed(db_session, account.id, [
        ("inbox", False, False),
        ("inbox", True, False),
        ("inbox", False, True),
        ("sent", True, False),
    ])
    result = fc.recalculate(db_session, account.id)
    assert result["inbox"] == fc.FolderCounts(2, 1)
    assert result["sent"] == fc.FolderCounts(1, 0)


def test_recalculation_is_idempotent(db_session, account):
    _seed(db_session, account.id, [("inbox", False, False), ("inbox", True, False)])
    first = fc.recalculate(db_session, account.id)
    second = fc.recalculate(db_session, account.id)
    assert first == second
    assert db_session.query(Folder).filter(Folder.account_id == account.id).count() == 1


def test_folder_with_only_trash_or_no_messages_drops_to_zero(db_session, account):
    _seed(db_session, account.id, [("archive", False, False)])
    fc.recalculate(db_session, account.id)

    db_session.query(Message).filter(Message.folder == "archive").update({"is_trashed": True})
    db_session.commit()
    assert fc.recalculate(db_session, account.id)["archive"] == fc.FolderCounts(0, 0)

    db_session.query(Message).delete()
    db_session.commit()
    assert fc.recalculate(db_session, account.id)["archive"] == fc.FolderCounts(0, 0)


def test_single_folder_recalculation(db_session, account):
    _seed(db_session, account.id, [("inbox", False, False), ("sent", False, False)])
    counts = fc.recalculate(db_session, account.id, "inbox")
    assert counts == fc.FolderCounts(1, 1)
    assert set(fc.get_folder_counts(db_session, account.id)) == {"inbox"}


def test_stale_counters_are_overwritten(db_session, account):
    db_session.add(Folder(account_id=account.id, name="inbox", message_count=99, unread_count=42))
    db_session.commit()
    _seed(db_session, account.id, [("inbox", True, False)])
    fc.recalculate(db_session, account.id)
    assert fc.get_folder_counts(db_session, account.id)["inbox"] == fc.FolderCounts(1, 0)


def test_user_and_global_sweeps(db_session, account):
    other = make_account(db_session, user_id=2)
    _seed(db_session, account.id, [("inbox", False, False)])
    _seed(db_session, other.id, [("inbox", True, False), ("inbox", True, False)])

    per_user = fc.recalculate_user_folders(db_session, 1)
    assert list(per_user) == [account.id]
    assert per_user[account.id]["inbox"].as_dict() == {"message_count": 1, "unread_count": 1}

    summary = fc.recalculate_all_folders(db_session)
    assert summary == {"accounts": 2, "folders": 2, "failed": 0}
    assert fc.get_folder_counts(db_session, other.id)["inbox"] == fc.FolderCounts(2, 0)
