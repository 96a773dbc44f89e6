"""Shared fixtures: throwaway SQLite databases and a recording push sender."""

import os
import tempfile

# Must be set before qpick.config is imported anywhere
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.gettempdir()}/qpick_test_default.db"
os.environ["WEBHOOK_SHARED_SECRET"] = "test-secret"
os.environ["SCORE_CACHE_ENABLED"] = "false"
os.environ["DISPATCH_ON_SUBMIT"] = "true"

import asyncio
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from qpick.db.models import Base, Product, PushRegistration, ReportEvent, Store, WatchSubscription
from qpick.notify.push import DeliveryOutcome, PushSender

# Two points inside the same 0.02 grid cell ("35.68,139.76") and one outside
TOKYO_A = (35.681, 139.767)
TOKYO_B = (35.685, 139.765)
TOKYO_OTHER_CELL = (35.695, 139.767)


class FakePushSender(PushSender):
    """Records deliveries; per-endpoint outcomes or exceptions can be scripted."""

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.sent = []

    async def send(self, target, payload):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append((target, payload))
        outcome = self.outcomes.get(target.endpoint)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or DeliveryOutcome(ok=True, status_code=201)


def _sqlite_url(path) -> str:
    return f"sqlite+aiosqlite:///{path}"


async def _create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(_sqlite_url(tmp_path / "qpick.db"), poolclass=NullPool)
    await _create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def sync_session_factory(tmp_path):
    """Session factory for synchronous TestClient tests."""
    engine = create_async_engine(_sqlite_url(tmp_path / "qpick_api.db"), poolclass=NullPool)
    asyncio.run(_create_schema(engine))
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def fake_sender():
    return FakePushSender()


async def add_store(
    db,
    store_id: str,
    lat: float | None,
    lng: float | None,
    chain: str = "seven_eleven",
    **fields,
) -> Store:
    store = Store(
        id=store_id,
        chain=chain,
        name=fields.pop("name", f"Store {store_id}"),
        latitude=lat,
        longitude=lng,
        **fields,
    )
    db.add(store)
    await db.commit()
    return store


async def add_product(db, product_id: int = 1, name: str = "Pokemon Card 151", chain: str = "all", **fields) -> Product:
    product = Product(id=product_id, name=name, chain=chain, **fields)
    db.add(product)
    await db.commit()
    return product


async def add_report(
    db, store_id: str, product_id: int, status: str, created_at: datetime, session_id: str | None = None
) -> ReportEvent:
    event = ReportEvent(
        store_id=store_id,
        product_id=product_id,
        status=status,
        session_id=session_id,
        created_at=created_at,
    )
    db.add(event)
    await db.commit()
    return event


async def add_watch(
    db, subscriber_id: str, product_id: int, area_key: str, expires_at: datetime, updated_at: datetime, is_enabled: bool = True
) -> None:
    db.add(
        WatchSubscription(
            subscriber_id=subscriber_id,
            product_id=product_id,
            area_key=area_key,
            is_enabled=is_enabled,
            expires_at=expires_at,
            created_at=updated_at,
            updated_at=updated_at,
        )
    )
    await db.commit()


async def add_push(db, subscriber_id: str, endpoint: str, is_enabled: bool = True) -> None:
    db.add(
        PushRegistration(
            subscriber_id=subscriber_id,
            endpoint=endpoint,
            p256dh_key="p256dh-key",
            auth_key="auth-key",
            is_enabled=is_enabled,
        )
    )
    await db.commit()
