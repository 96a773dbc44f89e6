"""Nearest-store lookup.

Bounding-box prefilter in SQL, exact haversine distance in Python, sorted
nearest first.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.db.models import Store
from qpick.geo.bucketer import bounding_box, haversine_m

logger = logging.getLogger(__name__)


@dataclass
class NearbyStore:
    """A store within the search radius."""

    id: str
    chain: str
    name: Optional[str]
    address: Optional[str]
    phone: Optional[str]
    latitude: float
    longitude: float
    distance_m: float


class NearbyStoreFinder:
    """Finds stores within a radius of a point."""

    async def find(
        self,
        db: AsyncSession,
        lat: float,
        lng: float,
        radius_m: float,
        limit: int,
    ) -> list[NearbyStore]:
        """
        Find stores within ``radius_m`` of (lat, lng).

        Args:
            db: Database session
            lat: Searcher latitude
            lng: Searcher longitude
            radius_m: Search radius in metres
            limit: Maximum number of stores to return

        Returns:
            Stores sorted by distance ascending
        """
        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_m)

        query = select(Store).where(
            Store.latitude.is_not(None),
            Store.longitude.is_not(None),
            Store.latitude.between(min_lat, max_lat),
            Store.longitude.between(min_lng, max_lng),
        )
        result = await db.execute(query)

        found = []
        for store in result.scalars().all():
            distance = haversine_m(lat, lng, store.latitude, store.longitude)
            if distance > radius_m:
                continue
            found.append(
                NearbyStore(
                    id=store.id,
                    chain=store.chain,
                    name=store.name,
                    address=store.address,
                    phone=store.phone,
                    latitude=store.latitude,
                    longitude=store.longitude,
                    distance_m=round(distance, 1),
                )
            )

        found.sort(key=lambda s: (s.distance_m, s.id))
        logger.debug(f"Found {len(found)} stores within {radius_m}m of {lat},{lng}")
        return found[:limit]
