"""Tests for watch subscriptions and push registrations."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import TOKYO_A, TOKYO_B, TOKYO_OTHER_CELL
from qpick.db.models import PushRegistration, WatchSubscription
from qpick.errors import InvalidInputError
from qpick.registry.subscriptions import SubscriptionRegistry

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def registry():
    return SubscriptionRegistry()


@pytest.mark.asyncio
async def test_enable_watch_returns_area_key(db, registry):
    key = await registry.enable_watch(db, "sub-1", 1, *TOKYO_A, now=NOW)

    assert key == "35.68,139.76"
    assert await registry.get_watch_state(db, "sub-1", 1, now=NOW) is True

    row = (await db.execute(select(WatchSubscription))).scalar_one()
    assert row.expires_at == NOW + timedelta(days=7)


@pytest.mark.asyncio
async def test_reenable_moves_area_and_refreshes_expiry(db, registry):
    await registry.enable_watch(db, "sub-1", 1, *TOKYO_A, now=NOW)
    later = NOW + timedelta(days=3)
    key = await registry.enable_watch(db, "sub-1", 1, *TOKYO_OTHER_CELL, now=later)

    rows = (await db.execute(select(WatchSubscription))).scalars().all()
    assert len(rows) == 1
    await db.refresh(rows[0])
    assert rows[0].area_key == key == "35.70,139.76"
    assert rows[0].expires_at == later + timedelta(days=7)


@pytest.mark.asyncio
async def test_disable_watch(db, registry):
    await registry.enable_watch(db, "sub-1", 1, *TOKYO_A, now=NOW)
    await registry.disable_watch(db, "sub-1", 1, now=NOW)

    assert await registry.get_watch_state(db, "sub-1", 1, now=NOW) is False
    assert await registry.active_watchers(db, 1, "35.68,139.76", NOW) == []


@pytest.mark.asyncio
async def test_disable_missing_watch_is_noop(db, registry):
    await registry.disable_watch(db, "nobody", 1)
    assert await registry.get_watch_state(db, "nobody", 1) is False


@pytest.mark.asyncio
async def test_watch_expires(db, registry):
    await registry.enable_watch(db, "sub-1", 1, *TOKYO_A, now=NOW)
    after_expiry = NOW + timedelta(days=7, seconds=1)

    assert await registry.get_watch_state(db, "sub-1", 1, now=after_expiry) is False
    assert await registry.active_watchers(db, 1, "35.68,139.76", after_expiry) == []


@pytest.mark.asyncio
async def test_active_watchers_match_product_and_area(db, registry):
    await registry.enable_watch(db, "sub-a", 1, *TOKYO_A, now=NOW)
    await registry.enable_watch(db, "sub-b", 1, *TOKYO_B, now=NOW + timedelta(minutes=1))
    await registry.enable_watch(db, "sub-c", 1, *TOKYO_OTHER_CELL, now=NOW)
    await registry.enable_watch(db, "sub-d", 2, *TOKYO_A, now=NOW)

    watchers = await registry.active_watchers(db, 1, "35.68,139.76", NOW + timedelta(hours=1))

    # Most recently updated first
    assert watchers == ["sub-b", "sub-a"]


@pytest.mark.asyncio
async def test_watch_validation(db, registry):
    with pytest.raises(InvalidInputError):
        await registry.enable_watch(db, "", 1, *TOKYO_A)
    with pytest.raises(InvalidInputError):
        await registry.enable_watch(db, "sub-1", "abc", *TOKYO_A)
    with pytest.raises(InvalidInputError):
        await registry.enable_watch(db, "sub-1", 1, 91.0, 139.0)
    with pytest.raises(InvalidInputError):
        await registry.enable_watch(db, "sub-1", 1, float("nan"), 139.0)


@pytest.mark.asyncio
async def test_register_push_upserts_by_endpoint(db, registry):
    await registry.register_push(db, "sub-1", "https://push.example/abc", "k1", "a1", now=NOW)
    await registry.register_push(db, "sub-2", "https://push.example/abc", "k2", "a2", "UA", now=NOW)

    rows = (await db.execute(select(PushRegistration))).scalars().all()
    assert len(rows) == 1
    await db.refresh(rows[0])
    assert rows[0].subscriber_id == "sub-2"
    assert rows[0].p256dh_key == "k2"
    assert rows[0].user_agent == "UA"

    targets = await registry.push_targets(db, ["sub-2"])
    assert [t.endpoint for t in targets] == ["https://push.example/abc"]
    assert await registry.push_targets(db, ["sub-1"]) == []


@pytest.mark.asyncio
async def test_register_push_requires_keys(db, registry):
    with pytest.raises(InvalidInputError):
        await registry.register_push(db, "sub-1", "https://push.example/abc", "", "a1")


@pytest.mark.asyncio
async def test_disable_push_and_reenable(db, registry):
    await registry.register_push(db, "sub-1", "https://push.example/1", "k", "a")
    await registry.register_push(db, "sub-1", "https://push.example/2", "k", "a")

    assert await registry.disable_push(db, "sub-1") == 2
    assert await registry.push_targets(db, ["sub-1"]) == []

    # Re-registering the same endpoint turns it back on
    await registry.register_push(db, "sub-1", "https://push.example/1", "k", "a")
    targets = await registry.push_targets(db, ["sub-1"])
    assert [t.endpoint for t in targets] == ["https://push.example/1"]


@pytest.mark.asyncio
async def test_disable_endpoint(db, registry):
    await registry.register_push(db, "sub-1", "https://push.example/1", "k", "a")
    await registry.register_push(db, "sub-1", "https://push.example/2", "k", "a")

    await registry.disable_endpoint(db, "https://push.example/1")

    targets = await registry.push_targets(db, ["sub-1"])
    assert [t.endpoint for t in targets] == ["https://push.example/2"]
