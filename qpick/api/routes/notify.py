"""Notification trigger webhook."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from qpick import metrics
from qpick.api.deps import get_dispatcher, require_webhook_secret
from qpick.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notify", tags=["notify"])


@router.post("/webhook", dependencies=[Depends(require_webhook_secret)])
async def notify_webhook(
    request: Request,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Handle a report-insert notification from the database.

    Always answers 200 with a diagnostic flag (``ignored``, ``ignored_ttl``,
    ``dedup``, ``no_store_geo``, ``cooldown``, ``no_watchers``) or the sent
    count, except 401 on auth failure and 500 on unexpected errors.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    try:
        result = await dispatcher.handle(payload)
    except Exception:
        metrics.webhook_requests_total.labels(status="error").inc()
        logger.exception("Notification webhook failed")
        raise HTTPException(status_code=500, detail="Dispatch failed")

    metrics.webhook_requests_total.labels(status="ok").inc()
    return result.to_response()
