"""Watch subscriptions and Web Push registrations.

Watches are keyed by (subscriber_id, product_id) and push registrations by
endpoint. Every write is a single upsert or update; rows are soft-disabled,
never deleted. Expiry is evaluated at read time and never swept.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.config import settings
from qpick.db.models import PushRegistration, WatchSubscription
from qpick.db.upsert import upsert
from qpick.errors import InvalidInputError, StorageError
from qpick.geo.bucketer import area_key
from qpick.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PushTarget:
    """Everything needed to deliver to one browser installation."""

    subscriber_id: str
    endpoint: str
    p256dh_key: str
    auth_key: str


def _require_text(field: str, value) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise InvalidInputError(field, "required")
    return text


def _require_product_id(value) -> int:
    try:
        product_id = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError("product_id", "must be an integer")
    if product_id <= 0:
        raise InvalidInputError("product_id", "must be positive")
    return product_id


def _require_coordinate(field: str, value, limit: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError(field, "must be a number")
    if not math.isfinite(number) or abs(number) > limit:
        raise InvalidInputError(field, f"must be within +/-{limit}")
    return number


class SubscriptionRegistry:
    """CRUD over watch subscriptions and push registrations."""

    def __init__(self, config=settings):
        self.watch_ttl = timedelta(days=config.watch_expiry_days)
        self.grid_step = config.area_grid_step

    async def enable_watch(
        self,
        db: AsyncSession,
        subscriber_id: str,
        product_id: int,
        lat: float,
        lng: float,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Create or refresh a watch at the caller's current location.

        Re-enabling moves the watch to the new area and pushes expiry out by
        another full period.

        Returns:
            The area key the watch was filed under
        """
        subscriber_id = _require_text("subscriber_id", subscriber_id)
        product_id = _require_product_id(product_id)
        lat = _require_coordinate("lat", lat, 90.0)
        lng = _require_coordinate("lng", lng, 180.0)

        now = now or utcnow()
        key = area_key(lat, lng, self.grid_step)

        try:
            await upsert(
                db,
                WatchSubscription,
                {
                    "subscriber_id": subscriber_id,
                    "product_id": product_id,
                    "area_key": key,
                    "is_enabled": True,
                    "expires_at": now + self.watch_ttl,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=["subscriber_id", "product_id"],
                update_columns=["area_key", "is_enabled", "expires_at", "updated_at"],
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError("enable_watch", e) from e

        logger.info(f"Watch enabled: product={product_id} area={key}")
        return key

    async def disable_watch(
        self,
        db: AsyncSession,
        subscriber_id: str,
        product_id: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Soft-disable a watch. Missing watches are a no-op."""
        subscriber_id = _require_text("subscriber_id", subscriber_id)
        product_id = _require_product_id(product_id)

        try:
            await db.execute(
                update(WatchSubscription)
                .where(
                    WatchSubscription.subscriber_id == subscriber_id,
                    WatchSubscription.product_id == product_id,
                )
                .values(is_enabled=False, updated_at=now or utcnow())
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError("disable_watch", e) from e

    async def get_watch_state(
        self,
        db: AsyncSession,
        subscriber_id: str,
        product_id: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """True when the watch is enabled and not yet expired."""
        subscriber_id = _require_text("subscriber_id", subscriber_id)
        product_id = _require_product_id(product_id)

        try:
            result = await db.execute(
                select(WatchSubscription.is_enabled, WatchSubscription.expires_at).where(
                    WatchSubscription.subscriber_id == subscriber_id,
                    WatchSubscription.product_id == product_id,
                )
            )
            row = result.first()
        except SQLAlchemyError as e:
            raise StorageError("get_watch_state", e) from e

        if row is None:
            return False
        return bool(row.is_enabled) and row.expires_at > (now or utcnow())

    async def register_push(
        self,
        db: AsyncSession,
        subscriber_id: str,
        endpoint: str,
        p256dh_key: str,
        auth_key: str,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Upsert a push registration keyed by endpoint.

        An endpoint identifies one browser installation, so a re-registration
        replaces whatever subscriber and keys it previously carried.
        """
        subscriber_id = _require_text("subscriber_id", subscriber_id)
        endpoint = _require_text("endpoint", endpoint)
        p256dh_key = _require_text("p256dh", p256dh_key)
        auth_key = _require_text("auth", auth_key)
        now = now or utcnow()

        try:
            await upsert(
                db,
                PushRegistration,
                {
                    "subscriber_id": subscriber_id,
                    "endpoint": endpoint,
                    "p256dh_key": p256dh_key,
                    "auth_key": auth_key,
                    "user_agent": user_agent or None,
                    "is_enabled": True,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=["endpoint"],
                update_columns=[
                    "subscriber_id",
                    "p256dh_key",
                    "auth_key",
                    "user_agent",
                    "is_enabled",
                    "updated_at",
                ],
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError("register_push", e) from e

    async def disable_push(
        self, db: AsyncSession, subscriber_id: str, now: Optional[datetime] = None
    ) -> int:
        """
        Disable every push registration of a subscriber (explicit opt-out).

        Returns:
            Number of registrations touched
        """
        subscriber_id = _require_text("subscriber_id", subscriber_id)

        try:
            result = await db.execute(
                update(PushRegistration)
                .where(PushRegistration.subscriber_id == subscriber_id)
                .values(is_enabled=False, updated_at=now or utcnow())
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError("disable_push", e) from e

        return result.rowcount or 0

    async def disable_endpoint(
        self, db: AsyncSession, endpoint: str, now: Optional[datetime] = None
    ) -> None:
        """Disable a single registration whose endpoint is gone."""
        try:
            await db.execute(
                update(PushRegistration)
                .where(PushRegistration.endpoint == endpoint)
                .values(is_enabled=False, updated_at=now or utcnow())
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError("disable_endpoint", e) from e

    async def active_watchers(
        self,
        db: AsyncSession,
        product_id: int,
        key: str,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Subscriber ids with an active watch on product x area."""
        result = await db.execute(
            select(WatchSubscription.subscriber_id)
            .where(
                WatchSubscription.product_id == product_id,
                WatchSubscription.area_key == key,
                WatchSubscription.is_enabled.is_(True),
                WatchSubscription.expires_at > (now or utcnow()),
            )
            .order_by(WatchSubscription.updated_at.desc())
        )
        return [subscriber_id for subscriber_id in result.scalars().all() if subscriber_id]

    async def push_targets(
        self, db: AsyncSession, subscriber_ids: list[str]
    ) -> list[PushTarget]:
        """Enabled push registrations for the given subscribers."""
        if not subscriber_ids:
            return []

        result = await db.execute(
            select(PushRegistration).where(
                PushRegistration.subscriber_id.in_(subscriber_ids),
                PushRegistration.is_enabled.is_(True),
            )
        )
        return [
            PushTarget(
                subscriber_id=reg.subscriber_id,
                endpoint=reg.endpoint,
                p256dh_key=reg.p256dh_key,
                auth_key=reg.auth_key,
            )
            for reg in result.scalars().all()
        ]


# Global registry instance
subscription_registry = SubscriptionRegistry()
