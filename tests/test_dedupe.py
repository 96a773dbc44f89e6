"""Tests for processed-event markers and product x area cooldowns."""

import asyncio
from datetime import datetime, timedelta

import pytest

from qpick.notify.dedupe import DedupeManager

NOW = datetime(2026, 3, 1, 12, 0, 0)


def test_event_key_prefers_session():
    assert DedupeManager.event_key("S1", 1, "sess", "2026-03-01T12:00:00Z") == "S1:1:sess"
    assert DedupeManager.event_key("S1", 1, None, "2026-03-01T12:00:00Z") == "S1:1:2026-03-01T12:00:00Z"


@pytest.mark.asyncio
async def test_claim_once(db):
    dedupe = DedupeManager()

    assert await dedupe.is_processed(db, "S1:1:sess") is False
    assert await dedupe.claim(db, "S1:1:sess", NOW) is True
    assert await dedupe.claim(db, "S1:1:sess", NOW) is False
    assert await dedupe.is_processed(db, "S1:1:sess") is True


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_owner(session_factory):
    dedupe = DedupeManager()

    async def claim():
        async with session_factory() as session:
            return await dedupe.claim(session, "S1:1:race", NOW)

    results = await asyncio.gather(*(claim() for _ in range(5)))

    assert sorted(results) == [False, False, False, False, True]


@pytest.mark.asyncio
async def test_cooldown_window(db):
    dedupe = DedupeManager()
    key = "35.68,139.76"

    assert await dedupe.is_in_cooldown(db, 1, key, NOW) is False
    assert await dedupe.get_cooldown_remaining(db, 1, key, NOW) == 0

    await dedupe.start_cooldown(db, 1, key, NOW)

    assert await dedupe.is_in_cooldown(db, 1, key, NOW + timedelta(minutes=29)) is True
    assert await dedupe.get_cooldown_remaining(db, 1, key, NOW + timedelta(minutes=20)) == 600
    assert await dedupe.is_in_cooldown(db, 1, key, NOW + timedelta(minutes=30)) is False
    # Other products and areas are unaffected
    assert await dedupe.is_in_cooldown(db, 2, key, NOW) is False
    assert await dedupe.is_in_cooldown(db, 1, "35.70,139.76", NOW) is False


@pytest.mark.asyncio
async def test_cooldown_restart_is_last_write_wins(db):
    dedupe = DedupeManager()
    key = "35.68,139.76"

    await dedupe.start_cooldown(db, 1, key, NOW)
    await dedupe.start_cooldown(db, 1, key, NOW + timedelta(minutes=40))

    assert await dedupe.last_sent_at(db, 1, key) == NOW + timedelta(minutes=40)
    assert await dedupe.is_in_cooldown(db, 1, key, NOW + timedelta(minutes=60)) is True
