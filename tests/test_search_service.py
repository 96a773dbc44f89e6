"""Tests for the availability search aggregator."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import add_product, add_report, add_store
from qpick.db.models import SearchLog
from qpick.errors import InvalidInputError, ProductNotFoundError
from qpick.geo.nearby import NearbyStoreFinder
from qpick.reports.store import ReportStore
from qpick.search.service import AvailabilitySearchService

NOW = datetime(2026, 3, 1, 12, 0, 0)
HERE = (35.681, 139.767)


class CountingReportStore(ReportStore):
    def __init__(self, fail: bool = False):
        super().__init__()
        self.calls = 0
        self.fail = fail

    async def signals_since(self, db, product_id, store_ids, since):
        self.calls += 1
        if self.fail:
            raise OperationalError("select", {}, Exception("database unavailable"))
        return await super().signals_since(db, product_id, store_ids, since)


class BrokenFinder(NearbyStoreFinder):
    async def find(self, db, lat, lng, radius_m, limit):
        raise OperationalError("select", {}, Exception("database unavailable"))


class MemoryScoreCache:
    def __init__(self):
        self.data = {}

    async def get_many(self, product_id, store_ids, window):
        return {
            sid: self.data[(window, product_id, sid)]
            for sid in store_ids
            if (window, product_id, sid) in self.data
        }

    async def set_many(self, product_id, snapshots, window):
        for sid, snapshot in snapshots.items():
            self.data[(window, product_id, sid)] = snapshot


@pytest.fixture
async def seeded(db):
    await add_store(db, "A", 35.681, 139.767, chain="seven_eleven", pref="Tokyo", city="Chiyoda", slug="a")
    await add_store(db, "B", 35.685, 139.765, chain="lawson", pref="Tokyo", city="Chiyoda", slug="b")
    await add_store(db, "C", 35.700, 139.767, chain="seven_eleven", pref="Tokyo", city="Bunkyo", slug="c")
    await add_store(db, "D", 35.800, 139.767, chain="lawson")
    await add_product(db, 1, name="Pokemon Card 151", category="cards")
    await add_product(db, 2, name="Lawson Exclusive", chain="lawson")

    # A: fresh sighting
    await add_report(db, "A", 1, "found", NOW - timedelta(hours=1))
    # B: repeated misses over the month, nothing recent
    for days in (1, 2, 4, 8, 16):
        await add_report(db, "B", 1, "not_found", NOW - timedelta(days=days))
    # C: mixed within the live window
    await add_report(db, "C", 1, "found", NOW - timedelta(hours=3))
    await add_report(db, "C", 1, "not_found", NOW - timedelta(hours=2))
    return db


def _service(**kwargs) -> AvailabilitySearchService:
    kwargs.setdefault("clock", lambda: NOW)
    return AvailabilitySearchService(**kwargs)


@pytest.mark.asyncio
async def test_search_sorted_by_distance(seeded):
    result = await _service().search(seeded, *HERE, 1)

    assert [s["id"] for s in result["stores"]] == ["A", "B", "C"]
    distances = [s["distance_m"] for s in result["stores"]]
    assert distances == sorted(distances)
    assert distances[0] == 0.0
    assert result["product_id"] == 1
    assert result["product_name"] == "Pokemon Card 151"
    assert result["ttl_hours"] == 6
    assert result["community_window_days"] == 30
    assert result["area_pref"] == "Tokyo"
    assert result["area_city"] == "Chiyoda"
    assert result["degraded"] == []


@pytest.mark.asyncio
async def test_store_annotations(seeded):
    result = await _service().search(seeded, *HERE, 1)
    stores = {s["id"]: s for s in result["stores"]}

    a = stores["A"]
    assert a["slug"] == "a"
    assert a["score"]["label"] == "high"
    assert a["score"]["rank"] == 3
    assert a["score"]["last_status"] == "found"
    assert a["score"]["last_any_at"] == "2026-03-01T11:00:00Z"
    assert a["community"]["label"] == "insufficient-data"

    b = stores["B"]
    assert b["score"]["label"] == "none"
    assert b["score"]["rank"] == 0
    assert b["community"] == {
        "window_days": 30,
        "found": 0,
        "not_found": 5,
        "total": 5,
        "last_report_at": "2026-02-28T12:00:00Z",
        "label": "mostly-not-found",
    }

    c = stores["C"]
    assert c["score"]["label"] == "mid"
    assert c["score"]["rank"] == 2
    assert c["score"]["found_count"] == 1
    assert c["score"]["not_found_count"] == 1

    assert result["high_risk_store_ids"] == ["B"]


@pytest.mark.asyncio
async def test_sort_by_rank(seeded):
    result = await _service().search(seeded, *HERE, 1, sort="rank")

    assert [s["id"] for s in result["stores"]] == ["A", "C", "B"]
    # Area still comes from the nearest store
    assert result["area_city"] == "Chiyoda"


@pytest.mark.asyncio
async def test_chain_restricted_product(seeded):
    result = await _service().search(seeded, *HERE, 2)

    assert [s["id"] for s in result["stores"]] == ["B"]


@pytest.mark.asyncio
async def test_display_limit(seeded):
    from qpick.config import settings

    service = _service(config=settings.model_copy(update={"search_display_limit": 2}))
    result = await service.search(seeded, *HERE, 1)

    assert [s["id"] for s in result["stores"]] == ["A", "B"]


@pytest.mark.asyncio
async def test_no_stores_nearby(seeded):
    result = await _service().search(seeded, 43.06, 141.35, 1)

    assert result["stores"] == []
    assert result["high_risk_store_ids"] == []
    assert result["area_pref"] is None


@pytest.mark.asyncio
async def test_unknown_product(seeded):
    with pytest.raises(ProductNotFoundError):
        await _service().search(seeded, *HERE, 999)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "lat,lng,product_id,sort",
    [
        (None, 139.767, 1, None),
        ("abc", 139.767, 1, None),
        (float("nan"), 139.767, 1, None),
        (95.0, 139.767, 1, None),
        (35.681, 139.767, None, None),
        (35.681, 139.767, "0", None),
        (35.681, 139.767, 1, "popularity"),
    ],
)
async def test_invalid_input(seeded, lat, lng, product_id, sort):
    with pytest.raises(InvalidInputError):
        await _service().search(seeded, lat, lng, product_id, sort)


@pytest.mark.asyncio
async def test_search_is_logged(seeded):
    await _service().search(seeded, *HERE, 1, sort="rank")

    log = (await seeded.execute(select(SearchLog))).scalar_one()
    assert log.keyword == "Pokemon Card 151"
    assert log.category == "cards"
    assert log.store_count_shown == 3
    assert log.sort_mode == "rank"
    assert log.search_source == "qpick_web"
    assert log.area_pref == "Tokyo"


@pytest.mark.asyncio
async def test_store_lookup_failure_degrades(seeded):
    result = await _service(finder=BrokenFinder()).search(seeded, *HERE, 1)

    assert result["stores"] == []
    assert result["degraded"] == ["stores"]
    assert result["product_name"] == "Pokemon Card 151"


@pytest.mark.asyncio
async def test_report_lookup_failure_degrades(seeded):
    result = await _service(reports=CountingReportStore(fail=True)).search(seeded, *HERE, 1)

    assert [s["id"] for s in result["stores"]] == ["A", "B", "C"]
    assert all(s["score"]["label"] == "none" for s in result["stores"])
    assert result["high_risk_store_ids"] == []
    assert result["degraded"] == ["reports"]


@pytest.mark.asyncio
async def test_score_cache_read_through(seeded):
    reports = CountingReportStore()
    cache = MemoryScoreCache()
    service = _service(reports=reports, cache=cache)

    first = await service.search(seeded, *HERE, 1)
    second = await service.search(seeded, *HERE, 1)

    assert reports.calls == 1
    assert first["stores"] == second["stores"]
    assert first["high_risk_store_ids"] == second["high_risk_store_ids"]
