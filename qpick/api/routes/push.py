"""Push registration routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.api.deps import get_database
from qpick.config import settings
from qpick.errors import InvalidInputError, StorageError
from qpick.registry.subscriptions import subscription_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/push", tags=["push"])


class SubscriptionKeys(BaseModel):
    p256dh: str | None = None
    auth: str | None = None


class BrowserSubscription(BaseModel):
    endpoint: str | None = None
    keys: SubscriptionKeys | None = None


class PushSubscribe(BaseModel):
    subscriber_id: str | None = None
    subscription: BrowserSubscription | None = None
    user_agent: str | None = None


class PushDisable(BaseModel):
    subscriber_id: str | None = None


@router.post("/subscribe")
async def subscribe(
    data: PushSubscribe, db: AsyncSession = Depends(get_database)
):
    """Register (or re-register) a browser push subscription."""
    subscription = data.subscription or BrowserSubscription()
    keys = subscription.keys or SubscriptionKeys()
    try:
        await subscription_registry.register_push(
            db,
            subscriber_id=data.subscriber_id,
            endpoint=subscription.endpoint,
            p256dh_key=keys.p256dh,
            auth_key=keys.auth,
            user_agent=data.user_agent,
        )
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Push registration failed: {e}")
        raise HTTPException(status_code=500, detail="Push registration failed")
    return {"ok": True}


@router.post("/disable")
async def disable(
    data: PushDisable, db: AsyncSession = Depends(get_database)
):
    """Disable every push registration of a subscriber."""
    try:
        count = await subscription_registry.disable_push(db, data.subscriber_id)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Push disable failed: {e}")
        raise HTTPException(status_code=500, detail="Push disable failed")

    logger.info(f"Disabled {count} push registrations")
    return {"ok": True}


@router.get("/public-key")
async def public_key():
    """VAPID application server key for ``pushManager.subscribe``."""
    if not settings.vapid_public_key:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    return {"public_key": settings.vapid_public_key}
