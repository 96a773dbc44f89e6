"""Tests for report submission and comments."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import add_product, add_store
from qpick.db.models import Comment, ReportEvent
from qpick.errors import DuplicateReportError, InvalidInputError
from qpick.reports.store import ReportStore

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
async def seeded(db):
    await add_store(db, "S1", 35.681, 139.767)
    await add_store(db, "S2", 35.685, 139.765)
    await add_product(db, 1)
    return db


@pytest.mark.asyncio
async def test_submit_report_assigns_created_at(seeded):
    store = ReportStore()

    event = await store.submit_report(seeded, "S1", 1, "found", session_id="sess-1", now=NOW)

    assert event.id is not None
    assert event.created_at == NOW
    assert event.status == "found"
    assert event.session_id == "sess-1"


@pytest.mark.asyncio
async def test_invalid_status_rejected(seeded):
    with pytest.raises(InvalidInputError):
        await ReportStore().submit_report(seeded, "S1", 1, "maybe")


@pytest.mark.asyncio
async def test_missing_store_rejected(seeded):
    with pytest.raises(InvalidInputError):
        await ReportStore().submit_report(seeded, "  ", 1, "found")


@pytest.mark.asyncio
async def test_same_session_is_already_voted(seeded):
    store = ReportStore()
    await store.submit_report(seeded, "S1", 1, "found", session_id="sess-1", now=NOW)

    with pytest.raises(DuplicateReportError):
        await store.submit_report(
            seeded, "S1", 1, "not_found", session_id="sess-1", now=NOW + timedelta(hours=1)
        )

    count = len((await seeded.execute(select(ReportEvent))).scalars().all())
    assert count == 1


@pytest.mark.asyncio
async def test_duplicate_window_expires(seeded):
    store = ReportStore()
    await store.submit_report(seeded, "S1", 1, "found", session_id="sess-1", now=NOW)

    event = await store.submit_report(
        seeded, "S1", 1, "found", session_id="sess-1", now=NOW + timedelta(hours=25)
    )
    assert event.id is not None


@pytest.mark.asyncio
async def test_other_store_or_session_not_duplicate(seeded):
    store = ReportStore()
    await store.submit_report(seeded, "S1", 1, "found", session_id="sess-1", now=NOW)

    await store.submit_report(seeded, "S2", 1, "found", session_id="sess-1", now=NOW)
    await store.submit_report(seeded, "S1", 1, "found", session_id="sess-2", now=NOW)
    # Reports without a session are never deduplicated
    await store.submit_report(seeded, "S1", 1, "found", now=NOW)
    await store.submit_report(seeded, "S1", 1, "found", now=NOW)

    count = len((await seeded.execute(select(ReportEvent))).scalars().all())
    assert count == 5


@pytest.mark.asyncio
async def test_signals_since(seeded):
    store = ReportStore()
    await store.submit_report(seeded, "S1", 1, "found", now=NOW - timedelta(days=40))
    await store.submit_report(seeded, "S1", 1, "not_found", now=NOW - timedelta(days=2))
    await store.submit_report(seeded, "S2", 1, "found", now=NOW - timedelta(hours=1))

    signals = await store.signals_since(seeded, 1, ["S1", "S2"], NOW - timedelta(days=30))

    assert sorted((s.store_id, s.status) for s in signals) == [("S1", "not_found"), ("S2", "found")]
    assert await store.signals_since(seeded, 1, [], NOW) == []


@pytest.mark.asyncio
async def test_comments_hidden_until_approved(seeded):
    store = ReportStore()
    comment = await store.add_comment(seeded, "S1", 1, "  restocked on Friday  ")

    assert comment.body == "restocked on Friday"
    assert await store.approved_comments(seeded, "S1", 1) == []

    row = (await seeded.execute(select(Comment))).scalar_one()
    row.is_approved = True
    await seeded.commit()

    approved = await store.approved_comments(seeded, "S1", 1)
    assert [c.body for c in approved] == ["restocked on Friday"]


@pytest.mark.asyncio
async def test_comment_validation(seeded):
    store = ReportStore()
    with pytest.raises(InvalidInputError):
        await store.add_comment(seeded, "S1", 1, "   ")
    with pytest.raises(InvalidInputError):
        await store.add_comment(seeded, "S1", 1, "x" * 141)

    comment = await store.add_comment(seeded, "S1", 1, "x" * 140)
    assert len(comment.body) == 140
