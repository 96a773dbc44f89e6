"""Nearby store routes."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.api.deps import get_database
from qpick.config import settings
from qpick.errors import InvalidInputError
from qpick.geo.nearby import NearbyStoreFinder
from qpick.search.service import validate_coordinates

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stores-near", tags=["stores"])

finder = NearbyStoreFinder()


@router.get("")
async def stores_near(
    lat: str | None = Query(None),
    lng: str | None = Query(None),
    db: AsyncSession = Depends(get_database),
):
    """Closest stores to the caller, used to pick a store when reporting."""
    try:
        lat_f, lng_f = validate_coordinates(lat, lng)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        stores = await finder.find(
            db, lat_f, lng_f, settings.stores_near_radius_m, settings.stores_near_limit
        )
    except SQLAlchemyError as e:
        logger.error(f"Nearby store lookup failed: {e}")
        raise HTTPException(status_code=500, detail="Nearby store lookup failed")

    return {"stores": [asdict(store) for store in stores]}
