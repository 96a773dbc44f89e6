"""Deduplication and cooldown logic for notifications.

Both mechanisms are backed by unique keys in the database so concurrent
dispatcher invocations agree without any global lock:

- ``notify_processed`` holds one row per inbound report event. Claiming it is
  an INSERT ... ON CONFLICT DO NOTHING, so exactly one caller owns an event.
- ``notify_cooldowns`` holds the last successful send per product x area and
  is written with last-write-wins upserts.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.config import settings
from qpick.db.models import NotificationCooldown, ProcessedEventMarker
from qpick.db.upsert import insert_ignore, upsert
from qpick.utils.clock import utcnow

logger = logging.getLogger(__name__)


class DedupeManager:
    """Manages event deduplication and per-area cooldown."""

    def __init__(self, config=settings):
        self.cooldown = timedelta(minutes=config.notify_cooldown_minutes)

    @staticmethod
    def event_key(store_id: str, product_id: int, session_id: Optional[str], created_at: str) -> str:
        """
        Build the idempotency key for a report event.

        The session id identifies the event; reports without one fall back to
        their raw ``created_at`` value.
        """
        return f"{store_id}:{product_id}:{session_id or created_at}"

    async def is_processed(self, db: AsyncSession, event_key: str) -> bool:
        """Check whether an event has already been claimed."""
        result = await db.execute(
            select(ProcessedEventMarker.event_key).where(
                ProcessedEventMarker.event_key == event_key
            )
        )
        return result.scalar_one_or_none() is not None

    async def claim(self, db: AsyncSession, event_key: str, now: Optional[datetime] = None) -> bool:
        """
        Record the processed marker for an event.

        An existing marker is not an error: the caller simply does not own the
        event.

        Returns:
            True if this call inserted the marker, False if it already existed
        """
        inserted = await insert_ignore(
            db,
            ProcessedEventMarker,
            {"event_key": event_key, "created_at": now or utcnow()},
            conflict_columns=["event_key"],
            returning=ProcessedEventMarker.event_key,
        )
        await db.commit()

        if inserted is None:
            logger.debug(f"Event already processed: {event_key}")
            return False
        return True

    async def last_sent_at(
        self, db: AsyncSession, product_id: int, area_key: str
    ) -> Optional[datetime]:
        """Time of the last successful send for product x area."""
        result = await db.execute(
            select(NotificationCooldown.last_sent_at).where(
                NotificationCooldown.product_id == product_id,
                NotificationCooldown.area_key == area_key,
            )
        )
        return result.scalar_one_or_none()

    async def is_in_cooldown(
        self,
        db: AsyncSession,
        product_id: int,
        area_key: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Check if product x area is in its cooldown period.

        Stores in the same grid cell share one slot.
        """
        last = await self.last_sent_at(db, product_id, area_key)
        if last is None:
            return False
        return (now or utcnow()) - last < self.cooldown

    async def get_cooldown_remaining(
        self,
        db: AsyncSession,
        product_id: int,
        area_key: str,
        now: Optional[datetime] = None,
    ) -> int:
        """Remaining cooldown in seconds, or 0 if not in cooldown."""
        last = await self.last_sent_at(db, product_id, area_key)
        if last is None:
            return 0
        remaining = self.cooldown - ((now or utcnow()) - last)
        return max(0, int(remaining.total_seconds()))

    async def start_cooldown(
        self,
        db: AsyncSession,
        product_id: int,
        area_key: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Start (or restart) the cooldown for product x area."""
        await upsert(
            db,
            NotificationCooldown,
            {"product_id": product_id, "area_key": area_key, "last_sent_at": now or utcnow()},
            conflict_columns=["product_id", "area_key"],
            update_columns=["last_sent_at"],
        )
        await db.commit()

        logger.debug(
            f"Started cooldown for {product_id}@{area_key} "
            f"({int(self.cooldown.total_seconds() // 60)} minutes)"
        )
