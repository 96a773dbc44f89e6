"""
Availability search.

For one product and one searcher location, produces the nearby stores
annotated with both scoring windows:

- ``score``: the live window label/rank used for "most likely available first"
- ``community``: the long window trend plus the ``high_risk`` flag

Upstream lookups that fail (nearby stores, store metadata, report signals)
degrade their own sub-result to empty and are reported in ``degraded``; the
request still returns a well-shaped response.
"""

import math
import time
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qpick import metrics
from qpick.config import settings
from qpick.db.models import Product, SearchLog, Store
from qpick.errors import InvalidInputError, ProductNotFoundError, StorageError
from qpick.geo.nearby import NearbyStore, NearbyStoreFinder
from qpick.reports.store import ReportStore
from qpick.scoring.availability import (
    CommunityPolicy,
    HighRiskPolicy,
    LiveScorePolicy,
    ScoreSnapshot,
    is_high_risk,
    rank_sort_key,
    score_community,
    score_live,
)
from qpick.search.cache import ScoreCache
from qpick.utils.clock import isoformat, utcnow

logger = logging.getLogger(__name__)

KNOWN_CHAINS = ("seven_eleven", "familymart", "lawson")
SORT_MODES = ("distance", "rank")


def normalize_chain(value: Optional[str]) -> str:
    """Product chain restriction; anything unrecognised means all chains."""
    chain = str(value or "all").strip().lower()
    return chain if chain in KNOWN_CHAINS else "all"


def validate_coordinates(lat: Any, lng: Any) -> tuple[float, float]:
    """Parse and range-check a searcher location."""
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidInputError("lat/lng", "location is required")

    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidInputError("lat/lng", "location is required")
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        raise InvalidInputError("lat/lng", "out of range")
    return lat_f, lng_f


def validate_product_id(value: Any) -> int:
    """Parse a positive integer product id."""
    try:
        product_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidInputError("product_id", "select a product first")
    if product_id <= 0:
        raise InvalidInputError("product_id", "select a product first")
    return product_id


class AvailabilitySearchService:
    """Aggregates nearby stores with availability scores for one product."""

    def __init__(
        self,
        finder: NearbyStoreFinder | None = None,
        reports: ReportStore | None = None,
        cache: ScoreCache | None = None,
        config=settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.finder = finder or NearbyStoreFinder()
        self.reports = reports or ReportStore(config)
        self.cache = cache
        self.clock = clock

        self.live_policy = LiveScorePolicy.from_settings(config)
        self.community_policy = CommunityPolicy.from_settings(config)
        self.high_risk_policy = HighRiskPolicy.from_settings(config)

        self.radius_m = config.search_radius_m
        self.display_limit = config.search_display_limit
        self.chain_overfetch_limit = config.search_chain_overfetch_limit
        self.search_source = config.search_log_source

        self.ttl_hours = config.ttl_window_hours
        self.community_window_days = config.community_window_days

    def empty_result(self, product_id: Optional[int], product_name: Optional[str] = None) -> Dict[str, Any]:
        """Well-shaped response with no stores."""
        return {
            "stores": [],
            "product_id": product_id,
            "product_name": product_name,
            "high_risk_store_ids": [],
            "community_window_days": self.community_window_days,
            "ttl_hours": self.ttl_hours,
            "area_pref": None,
            "area_city": None,
            "degraded": [],
        }

    async def search(
        self,
        db: AsyncSession,
        lat: Any,
        lng: Any,
        product_id: Any,
        sort: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Nearby stores for a product, annotated with availability.

        Args:
            db: Database session
            lat: Searcher latitude
            lng: Searcher longitude
            product_id: Product chosen by the searcher
            sort: "distance" (default) or "rank"

        Returns:
            Response dict with stores, high_risk_store_ids and area metadata

        Raises:
            InvalidInputError: Bad coordinates, product id or sort mode
            ProductNotFoundError: Unknown product
            StorageError: Product lookup failed
        """
        start_time = time.time()
        success = False
        try:
            result = await self._search(db, lat, lng, product_id, sort)
            success = True
            return result
        finally:
            metrics.record_search(success, time.time() - start_time)

    async def _search(self, db, lat, lng, product_id, sort) -> Dict[str, Any]:
        lat, lng = validate_coordinates(lat, lng)
        product_id = validate_product_id(product_id)
        sort = (sort or "distance").strip().lower()
        if sort not in SORT_MODES:
            raise InvalidInputError("sort", f"must be one of {', '.join(SORT_MODES)}")

        product = await self._get_product(db, product_id)
        # Read before any degraded lookup rolls back and expires the instance
        product_name = product.name
        product_category = product.category
        chain = normalize_chain(product.chain)
        now = self.clock()
        degraded: List[str] = []

        # Nearby stores, chain-filtered and capped
        fetch_limit = self.display_limit if chain == "all" else self.chain_overfetch_limit
        try:
            nearby = await self.finder.find(db, lat, lng, self.radius_m, fetch_limit)
        except SQLAlchemyError as e:
            logger.error(f"Nearby store lookup failed: {e}")
            await db.rollback()
            nearby = []
            degraded.append("stores")

        if chain != "all":
            nearby = [s for s in nearby if str(s.chain or "").strip().lower() == chain]
        nearby = nearby[: self.display_limit]

        store_ids = [s.id for s in nearby]
        admin = await self._admin_metadata(db, store_ids, degraded)
        live, community = await self._scores(db, product_id, store_ids, now, degraded)

        stores = []
        high_risk_store_ids = []
        for store in nearby:
            live_snapshot = live[store.id]
            community_snapshot = community[store.id]
            if is_high_risk(community_snapshot, self.high_risk_policy):
                high_risk_store_ids.append(store.id)
            stores.append(
                self._store_entry(
                    store, admin.get(store.id, {}), live_snapshot, community_snapshot
                )
            )

        # Area of the nearest store, before any re-sort
        area_pref = stores[0]["pref"] if stores else None
        area_city = stores[0]["city"] if stores else None

        if sort == "rank":
            stores.sort(
                key=lambda s: rank_sort_key(
                    s["score"]["rank"], live[s["id"]].last_event_at, s["distance_m"]
                )
            )

        await self._log_search(
            db, product_id, product_name, product_category, len(stores), sort, area_pref, area_city
        )

        if degraded:
            logger.warning(f"Search for product {product_id} degraded: {degraded}")

        return {
            "stores": stores,
            "product_id": product_id,
            "product_name": product_name,
            "high_risk_store_ids": high_risk_store_ids,
            "community_window_days": self.community_window_days,
            "ttl_hours": self.ttl_hours,
            "area_pref": area_pref,
            "area_city": area_city,
            "degraded": degraded,
        }

    async def _get_product(self, db: AsyncSession, product_id: int) -> Product:
        try:
            product = await db.get(Product, product_id)
        except SQLAlchemyError as e:
            raise StorageError("get_product", e) from e
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    async def _admin_metadata(
        self, db: AsyncSession, store_ids: List[str], degraded: List[str]
    ) -> Dict[str, Dict[str, Optional[str]]]:
        """pref/city/slug per store; empty on failure."""
        if not store_ids:
            return {}
        try:
            result = await db.execute(
                select(Store.id, Store.pref, Store.city, Store.slug).where(Store.id.in_(store_ids))
            )
        except SQLAlchemyError as e:
            logger.error(f"Store metadata lookup failed: {e}")
            await db.rollback()
            degraded.append("store_metadata")
            return {}

        return {
            str(row.id): {"pref": row.pref, "city": row.city, "slug": row.slug}
            for row in result.all()
        }

    async def _scores(
        self,
        db: AsyncSession,
        product_id: int,
        store_ids: List[str],
        now: datetime,
        degraded: List[str],
    ) -> tuple[Dict[str, ScoreSnapshot], Dict[str, ScoreSnapshot]]:
        """Live and community snapshots for every store id."""
        live_window = f"live{self.ttl_hours}h"
        community_window = f"community{self.community_window_days}d"

        live: Dict[str, ScoreSnapshot] = {}
        community: Dict[str, ScoreSnapshot] = {}
        if self.cache and store_ids:
            live = await self.cache.get_many(product_id, store_ids, live_window)
            community = await self.cache.get_many(product_id, store_ids, community_window)

        missing = [sid for sid in store_ids if sid not in live or sid not in community]
        if missing:
            # The community window always covers the live window
            since = now - max(self.community_policy.window, self.live_policy.window)
            try:
                signals = await self.reports.signals_since(db, product_id, missing, since)
            except SQLAlchemyError as e:
                logger.error(f"Report signal lookup failed: {e}")
                await db.rollback()
                signals = None
                degraded.append("reports")

            by_store: Dict[str, list] = {sid: [] for sid in missing}
            for signal in signals or []:
                by_store.setdefault(signal.store_id, []).append(signal)

            fresh_live = {}
            fresh_community = {}
            for sid in missing:
                fresh_live[sid] = score_live(by_store[sid], now, self.live_policy)
                fresh_community[sid] = score_community(by_store[sid], now, self.community_policy)
            live.update(fresh_live)
            community.update(fresh_community)

            if self.cache and signals is not None:
                await self.cache.set_many(product_id, fresh_live, live_window)
                await self.cache.set_many(product_id, fresh_community, community_window)

        return live, community

    def _store_entry(
        self,
        store: NearbyStore,
        admin: Dict[str, Optional[str]],
        live: ScoreSnapshot,
        community: ScoreSnapshot,
    ) -> Dict[str, Any]:
        return {
            "id": store.id,
            "chain": store.chain,
            "name": store.name,
            "address": store.address,
            "phone": store.phone,
            "latitude": store.latitude,
            "longitude": store.longitude,
            "distance_m": store.distance_m,
            "pref": admin.get("pref"),
            "city": admin.get("city"),
            "slug": admin.get("slug"),
            "community": {
                "window_days": self.community_window_days,
                "found": community.found_count,
                "not_found": community.not_found_count,
                "total": community.total,
                "last_report_at": isoformat(community.last_event_at),
                "label": community.label,
            },
            "score": {
                "ttl_hours": self.ttl_hours,
                "found_count": live.found_count,
                "not_found_count": live.not_found_count,
                "total": live.total,
                "last_found_at": isoformat(live.last_found_at),
                "last_not_found_at": isoformat(live.last_not_found_at),
                "last_any_at": isoformat(live.last_event_at),
                "last_status": live.last_status,
                "label": live.label,
                "rank": live.rank,
            },
        }

    async def _log_search(
        self,
        db: AsyncSession,
        product_id: int,
        product_name: Optional[str],
        category: Optional[str],
        store_count: int,
        sort: str,
        area_pref: Optional[str],
        area_city: Optional[str],
    ) -> None:
        """Best-effort search log; failures never affect the response."""
        try:
            db.add(
                SearchLog(
                    keyword=product_name or str(product_id),
                    category=category,
                    product_id=product_id,
                    store_count_shown=store_count,
                    search_source=self.search_source,
                    sort_mode=sort,
                    area_pref=area_pref,
                    area_city=area_city,
                    created_at=self.clock(),
                )
            )
            await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to log search: {e}")
            await db.rollback()


# Global search service instance
search_service = AvailabilitySearchService(
    cache=ScoreCache() if settings.score_cache_enabled else None
)
