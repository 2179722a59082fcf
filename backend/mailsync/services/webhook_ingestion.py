"""
Provider webhook ingestion: signature check, event parsing, and translation of
events into queued syncs or account state changes.

Webhooks only enqueue work; the fetch happens in the job worker.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from ..config import settings
from ..models import Account, JOB_FULL, JOB_INCREMENTAL, PRIORITY_HIGH, PRIORITY_IMMEDIATE, PRIORITY_NORMAL
from ..sync_errors import MalformedWebhookError
from . import sync_orchestrator

logger = logging.getLogger(__name__)

NEW_MAIL_EVENTS = ("message.created", "thread.created", "thread.updated")
CHANGE_EVENTS = ("message.updated", "message.deleted")


@dataclass
class WebhookOutcome:
    accepted: bool
    event_type: Optional[str] = None
    account_id: Optional[int] = None
    action: str = "ignored"
    job_id: Optional[int] = None
    error: Optional[str] = None


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded, compared in constant time."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_event(body: Union[bytes, str]) -> tuple[str, Optional[str]]:
    """Return (event type, grant id). Raises MalformedWebhookError."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as e:
        raise MalformedWebhookError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Payload is not an object")
    event_type = payload.get("type")
    if not event_type or not isinstance(event_type, str):
        raise MalformedWebhookError("Missing event type")
    data = payload.get("data")
    grant_id = data.get("grant_id") if isinstance(data, dict) else None
    return event_type, grant_id


def _queue(db: Session, outcome: WebhookOutcome, account_id: int, job_type: str, priority: int, metadata=None):
    job = sync_orchestrator.queue_sync(
        db,
        account_id,
        job_type=job_type,
        priority=priority,
        metadata=metadata,
        trigger="webhook",
    )
    if job is not None:
        outcome.action = "queued"
        outcome.job_id = job.id
    else:
        outcome.action = "skipped"


def handle_webhook(
    db: Session,
    body: bytes,
    signature: Optional[str],
    secret: Optional[str] = None,
) -> WebhookOutcome:
    """
    Verify and apply one webhook delivery.

    Never raises for bad input: rejected or malformed deliveries come back as
    an outcome with accepted=False and an error string.
    """
    secret = settings.webhook_secret if secret is None else secret
    if not secret:
        logger.error("Webhook secret is not configured; rejecting payload")
        return WebhookOutcome(accepted=False, error="Webhook secret not configured")
    if not verify_signature(body, signature, secret):
        logger.warning("Rejected webhook with invalid signature")
        return WebhookOutcome(accepted=False, error="Invalid signature")

    try:
        event_type, grant_id = parse_event(body)
    except MalformedWebhookError as e:
        logger.warning(f"Malformed webhook payload: {e}")
        return WebhookOutcome(accepted=False, error=e.user_message)

    outcome = WebhookOutcome(accepted=True, event_type=event_type)
    if not grant_id:
        logger.info(f"Webhook {event_type} without grant id ignored")
        return outcome

    account = db.query(Account).filter(Account.grant_id == grant_id).first()
    if account is None:
        logger.warning(f"No account found for grant ID: {grant_id}")
        return outcome
    account_id = account.id
    outcome.account_id = account_id

    if event_type in NEW_MAIL_EVENTS:
        _queue(
            db,
            outcome,
            account_id,
            JOB_INCREMENTAL,
            PRIORITY_IMMEDIATE,
            metadata={"limit": settings.webhook_fetch_limit},
        )
    elif event_type in CHANGE_EVENTS:
        _queue(db, outcome, account_id, JOB_INCREMENTAL, PRIORITY_NORMAL)
    elif event_type == "account.connected":
        sync_orchestrator.mark_credentials_refreshed(db, account_id)
        _queue(db, outcome, account_id, JOB_FULL, PRIORITY_HIGH)
    elif event_type == "account.disconnected":
        sync_orchestrator.mark_account_disconnected(db, account_id)
        outcome.action = "disconnected"
    elif event_type == "account.invalid":
        sync_orchestrator.mark_account_invalid(db, account_id)
        outcome.action = "invalidated"
    else:
        logger.info(f"Unhandled webhook type: {event_type}")

    logger.info(f"Webhook {event_type} for account {account_id}: {outcome.action}")
    return outcome
