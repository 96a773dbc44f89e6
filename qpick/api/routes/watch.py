"""Watch subscription routes."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.api.deps import get_database
from qpick.errors import InvalidInputError, StorageError
from qpick.registry.subscriptions import subscription_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/watch", tags=["watch"])


class WatchToggle(BaseModel):
    subscriber_id: str | None = None
    product_id: Any = None
    lat: Any = None
    lng: Any = None
    enable: bool = False


class WatchResponse(BaseModel):
    ok: bool
    enabled: bool
    area_key: str | None = None


@router.get("")
async def get_watch(
    subscriber_id: str | None = Query(None),
    product_id: str | None = Query(None),
    db: AsyncSession = Depends(get_database),
):
    """Whether the subscriber currently watches the product."""
    try:
        enabled = await subscription_registry.get_watch_state(db, subscriber_id, product_id)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Watch lookup failed: {e}")
        raise HTTPException(status_code=500, detail="Watch lookup failed")
    return {"enabled": enabled}


@router.post("", response_model=WatchResponse, response_model_exclude_none=True)
async def toggle_watch(
    data: WatchToggle, db: AsyncSession = Depends(get_database)
):
    """Enable a watch at the given location, or disable it."""
    try:
        if data.enable:
            key = await subscription_registry.enable_watch(
                db, data.subscriber_id, data.product_id, data.lat, data.lng
            )
            return WatchResponse(ok=True, enabled=True, area_key=key)

        await subscription_registry.disable_watch(db, data.subscriber_id, data.product_id)
        return WatchResponse(ok=True, enabled=False)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Watch update failed: {e}")
        raise HTTPException(status_code=500, detail="Watch update failed")
