"""Read-through cache for score snapshots.

Keyed by (store, product, window) with a short TTL. The event log stays the
source of truth: a miss or any Redis error just means recomputing.
"""

import json
import logging
from typing import Optional

import redis.asyncio as redis

from qpick import metrics
from qpick.config import settings
from qpick.scoring.availability import ScoreSnapshot

logger = logging.getLogger(__name__)


class ScoreCache:
    """Short-lived Redis cache of per-store score snapshots."""

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None, client=None):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.score_cache_ttl_seconds
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    @staticmethod
    def _key(product_id: int, store_id: str, window: str) -> str:
        return f"score:{window}:{product_id}:{store_id}"

    async def get_many(
        self, product_id: int, store_ids: list[str], window: str
    ) -> dict[str, ScoreSnapshot]:
        """
        Fetch cached snapshots.

        Returns:
            Mapping of store id to snapshot for the hits only
        """
        if not store_ids:
            return {}

        try:
            redis_client = await self._get_redis()
            raw_values = await redis_client.mget(
                [self._key(product_id, store_id, window) for store_id in store_ids]
            )
        except redis.RedisError as e:
            logger.warning(f"Score cache read failed: {e}")
            return {}

        hits = {}
        for store_id, raw in zip(store_ids, raw_values):
            if raw is None:
                metrics.record_cache_lookup(False)
                continue
            try:
                hits[store_id] = ScoreSnapshot.from_dict(json.loads(raw))
                metrics.record_cache_lookup(True)
            except (ValueError, KeyError, TypeError):
                metrics.record_cache_lookup(False)
        return hits

    async def set_many(
        self, product_id: int, snapshots: dict[str, ScoreSnapshot], window: str
    ) -> None:
        """Store snapshots with the configured TTL."""
        if not snapshots:
            return

        try:
            redis_client = await self._get_redis()
            async with redis_client.pipeline(transaction=False) as pipe:
                for store_id, snapshot in snapshots.items():
                    pipe.setex(
                        self._key(product_id, store_id, window),
                        self.ttl_seconds,
                        json.dumps(snapshot.to_dict()),
                    )
                await pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Score cache write failed: {e}")
