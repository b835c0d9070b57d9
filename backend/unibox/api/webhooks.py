from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from unibox.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _history_id(envelope: Any) -> str | None:
    """Pull ``historyId`` out of a Pub/Sub push envelope, or None if unusable."""
    if not isinstance(envelope, dict):
        return None
    encoded = (envelope.get("message") or {}).get("data") or ""
    try:
        # Pub/Sub strips the padding; extra '=' is ignored by the decoder
        notification = json.loads(base64.b64decode(encoded + "==").decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        logger.warning("gmail push: undecodable notification data: %s", exc)
        return None
    if not isinstance(notification, dict) or not notification.get("historyId"):
        logger.warning("gmail push: notification without historyId")
        return None
    return str(notification["historyId"])


@router.post("/gmail")
async def gmail_push(request: Request, token: str = Query(...)):
    """Gmail push endpoint for Google Pub/Sub.

    Only queues a history sync; the worker fetches and ingests. Any body we
    cannot use still gets a 200, otherwise Pub/Sub redelivers it forever.
    """
    if not settings.PUBSUB_VERIFICATION_TOKEN or token != settings.PUBSUB_VERIFICATION_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid verification token")

    try:
        envelope = await request.json()
    except ValueError:
        logger.warning("gmail push: body is not JSON")
        return {"status": "ok"}

    history_id = _history_id(envelope)
    if history_id is not None:
        from unibox.tasks.gmail_tasks import sync_gmail_history

        sync_gmail_history.delay(history_id)
        logger.info("gmail push: queued history sync from %s", history_id)

    return {"status": "ok"}
