"""Provider webhook endpoint. Deliveries are always acknowledged with 200 so providers do not retry-storm."""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_sync_db
from ..services.webhook_ingestion import handle_webhook
from ..tasks import dispatch_queue_drain

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.get("/mail")
def webhook_challenge(challenge: Optional[str] = None):
    """Endpoint ownership handshake: echo the challenge back unchanged."""
    if challenge is None:
        raise HTTPException(status_code=400, detail="Missing challenge")
    return {"challenge": challenge}


@router.post("/mail")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_sync_db),
):
    body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    try:
        outcome = await run_in_threadpool(handle_webhook, db, body, signature)
    except Exception as e:
        logger.exception(f"Webhook processing failed: {e}")
        return {"received": True, "error": "Webhook processing failed"}

    if outcome.job_id is not None:
        background_tasks.add_task(dispatch_queue_drain)
    if outcome.error:
        return {"received": True, "error": outcome.error}
    return {"received": True}
