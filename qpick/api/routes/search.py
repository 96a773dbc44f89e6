"""Availability search routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.api.deps import get_database, get_search_service
from qpick.errors import InvalidInputError, ProductNotFoundError
from qpick.search.service import AvailabilitySearchService, validate_product_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])


@router.get("")
async def search_availability(
    lat: str | None = Query(None),
    lng: str | None = Query(None),
    product_id: str | None = Query(None),
    sort: str | None = Query(None, description="distance (default) or rank"),
    db: AsyncSession = Depends(get_database),
    service: AvailabilitySearchService = Depends(get_search_service),
):
    """
    Nearby stores for a product with live and community availability.

    Parameters arrive as raw strings so malformed values are answered with
    400 rather than a validation error body.
    """
    try:
        return await service.search(db, lat, lng, product_id, sort)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProductNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        logger.exception("Search failed")
        try:
            pid = validate_product_id(product_id)
        except InvalidInputError:
            pid = None
        body = service.empty_result(pid)
        body["error"] = "search failed, please retry"
        return JSONResponse(status_code=500, content=body)
