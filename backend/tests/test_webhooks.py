import hashlib
import hmac
import json

import pytest

from conftest import make_account
from mailsync.config import settings
from mailsync.models import (
    SyncJob,
    ACCOUNT_ERROR,
    ACCOUNT_INACTIVE,
    JOB_CANCELLED,
    JOB_FULL,
    JOB_PENDING,
    PRIORITY_HIGH,
    PRIORITY_IMMEDIATE,
    PRIORITY_NORMAL,
    SYNC_ERROR,
    SYNC_QUEUED,
)
from mailsync.services import job_queue
from mailsync.services.webhook_ingestion import handle_webhook, parse_event, verify_signature
from mailsync.sync_errors import MalformedWebhookError

SECRET = "whsec_test"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _event(event_type: str, grant_id: str) -> bytes:
    return json.dumps({"type": event_type, "data": {"grant_id": grant_id, "object": {}}}).encode()


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", SECRET)
    return SECRET


def test_verify_signature():
    body = b'{"type":"message.created"}'
    assert verify_signature(body, _sign(body), SECRET)
    assert verify_signature(body, _sign(body).upper(), SECRET)
    assert not verify_signature(body, _sign(body, "other"), SECRET)
    assert not verify_signature(body, "", SECRET)
    assert not verify_signature(body, _sign(body), "")


def test_parse_event_rejects_malformed_payloads():
    with pytest.raises(MalformedWebhookError):
        parse_event(b"not json")
    with pytest.raises(MalformedWebhookError):
        parse_event(b"[1, 2]")
    with pytest.raises(MalformedWebhookError):
        parse_event(b'{"data": {}}')
    assert parse_event(b'{"type": "message.created"}') == ("message.created", None)


@pytest.mark.parametrize(
    "event_type,priority,metadata",
    [
        ("message.created", PRIORITY_IMMEDIATE, {"limit": 10}),
        ("thread.updated", PRIORITY_IMMEDIATE, {"limit": 10}),
        ("message.updated", PRIORITY_NORMAL, None),
        ("message.deleted", PRIORITY_NORMAL, None),
    ],
)
def test_message_events_queue_incremental_sync(db_session, account, event_type, priority, metadata):
    body = _event(event_type, account.grant_id)
    outcome = handle_webhook(db_session, body, _sign(body), secret=SECRET)

    assert outcome.accepted
    assert outcome.account_id == account.id
    job = job_queue.get_pending_job(db_session, account.id)
    assert job.id == outcome.job_id
    assert job.priority == priority
    assert job.trigger == "webhook"
    assert job.job_metadata == metadata


def test_repeated_webhooks_share_one_pending_job(db_session, account):
    for _ in range(3):
        body = _event("message.created", account.grant_id)
        handle_webhook(db_session, body, _sign(body), secret=SECRET)
    assert db_session.query(SyncJob).filter(SyncJob.status == JOB_PENDING).count() == 1


def test_account_connected_queues_full_sync_and_clears_reauth(db_session):
    account = make_account(db_session, requires_reauth=True, status=ACCOUNT_ERROR, sync_status=SYNC_ERROR)
    body = _event("account.connected", account.grant_id)
    outcome = handle_webhook(db_session, body, _sign(body), secret=SECRET)

    assert outcome.action == "queued"
    job = job_queue.get_pending_job(db_session, account.id)
    assert job.job_type == JOB_FULL
    assert job.priority == PRIORITY_HIGH
    db_session.refresh(account)
    assert not account.requires_reauth


def test_account_disconnected_bypasses_queue(db_session, account):
    job_queue.enqueue(db_session, account.id)
    body = _event("account.disconnected", account.grant_id)
    outcome = handle_webhook(db_session, body, _sign(body), secret=SECRET)

    assert outcome.action == "disconnected"
    db_session.expire_all()
    assert account.status == ACCOUNT_INACTIVE
    assert account.sync_status == SYNC_ERROR
    assert account.last_sync_error == "Account disconnected"
    assert {j.status for j in db_session.query(SyncJob)} == {JOB_CANCELLED}


def test_account_invalid_requires_reauth(db_session, account):
    body = _event("account.invalid", account.grant_id)
    handle_webhook(db_session, body, _sign(body), secret=SECRET)
    db_session.refresh(account)
    assert account.status == ACCOUNT_ERROR
    assert account.sync_status == SYNC_ERROR
    assert account.requires_reauth


def test_invalid_signature_and_missing_secret_are_rejected(db_session, account):
    body = _event("message.created", account.grant_id)
    assert handle_webhook(db_session, body, "deadbeef", secret=SECRET).error == "Invalid signature"
    assert not handle_webhook(db_session, body, _sign(body, ""), secret="").accepted
    assert db_session.query(SyncJob).count() == 0


def test_unknown_grant_is_acknowledged_and_dropped(db_session, account):
    body = _event("message.created", "no-such-grant")
    outcome = handle_webhook(db_session, body, _sign(body), secret=SECRET)
    assert outcome.accepted
    assert outcome.account_id is None
    assert db_session.query(SyncJob).count() == 0


# ---- HTTP ----


def test_challenge_is_echoed(client):
    res = client.get("/api/webhooks/mail", params={"challenge": "abc123"})
    assert res.status_code == 200
    assert res.json() == {"challenge": "abc123"}


def test_post_webhook_always_200(client, db_session, account, webhook_secret):
    body = _event("message.created", account.grant_id)
    res = client.post(
        "/api/webhooks/mail",
        content=body,
        headers={settings.webhook_signature_header: _sign(body), "Content-Type": "application/json"},
    )
    assert res.status_code == 200
    assert res.json() == {"received": True}
    db_session.expire_all()
    assert job_queue.get_pending_job(db_session, account.id) is not None

    bad = client.post("/api/webhooks/mail", content=b"{oops", headers={settings.webhook_signature_header: _sign(b"{oops")})
    assert bad.status_code == 200
    assert bad.json() == {"received": True, "error": "Malformed webhook payload"}

    unsigned = client.post("/api/webhooks/mail", content=body)
    assert unsigned.status_code == 200
    assert unsigned.json()["error"] == "Invalid signature"


def test_post_webhook_processing_error_still_200(client, monkeypatch, webhook_secret):
    from mailsync.routers import webhooks

    def _boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(webhooks, "handle_webhook", _boom)
    res = client.post("/api/webhooks/mail", content=b"{}")
    assert res.status_code == 200
    assert res.json() == {"received": True, "error": "Webhook processing failed"}


def test_webhook_moves_idle_account_to_queued(db_session, account):
    body = _event("message.updated", account.grant_id)
    handle_webhook(db_session, body, _sign(body), secret=SECRET)
    db_session.refresh(account)
    assert account.sync_status == SYNC_QUEUED
