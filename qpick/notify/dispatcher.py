"""Notification dispatcher for fresh "found" reports.

One invocation handles one report-insert trigger and walks an ordered chain
of guards. Each guard either passes or ends the invocation with a tagged
``DispatchResult``:

 1. type/table filter       -> ignored
 2. status filter           -> ignored
 3. freshness (TTL) filter  -> ignored_ttl
 4. idempotency claim       -> dedup
 5. store geo resolution    -> no_store_geo
 6. product x area cooldown -> cooldown
 7. watcher resolution      -> no_watchers
 8. push target resolution
 9. concurrent delivery
10. disable gone endpoints
11. cooldown commit (only if something was delivered)
12. audit log                -> sent

The processed marker is claimed at step 4, before any side effect, so a
failure in steps 5-11 still leaves the event marked and a concurrent
duplicate trigger loses the claim instead of sending twice.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qpick import metrics
from qpick.config import settings
from qpick.db.models import NotificationLog, ReportEvent, Store
from qpick.errors import StorageError
from qpick.geo.bucketer import area_key as compute_area_key
from qpick.logging_config import get_logger
from qpick.notify.dedupe import DedupeManager
from qpick.notify.push import DeliveryOutcome, PushSender
from qpick.registry.subscriptions import PushTarget, SubscriptionRegistry
from qpick.scoring.availability import ReportStatus
from qpick.utils.clock import isoformat, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    """How a dispatcher invocation ended. Values double as response flags."""

    IGNORED = "ignored"
    IGNORED_TTL = "ignored_ttl"
    DEDUP = "dedup"
    NO_STORE_GEO = "no_store_geo"
    COOLDOWN = "cooldown"
    NO_WATCHERS = "no_watchers"
    SENT = "sent"


@dataclass
class DispatchResult:
    """Tagged result of one dispatcher invocation."""

    outcome: DispatchOutcome
    event_key: Optional[str] = None
    area_key: Optional[str] = None
    sent: int = 0
    failed: int = 0
    disabled: int = 0
    payload: dict = field(default_factory=dict)

    def to_response(self) -> dict:
        """Webhook response body with the diagnostic flag for this outcome."""
        if self.outcome == DispatchOutcome.SENT:
            return {"ok": True, "sent": self.sent}
        return {"ok": True, self.outcome.value: True}


class TriggerPayload(BaseModel):
    """Storage-level insert notification."""

    type: str
    table: str
    record: Optional[dict] = None


class ReportRecord(BaseModel):
    """Report row as carried by the trigger."""

    store_id: str
    product_id: int
    status: str
    created_at: str
    session_id: Optional[str] = None

    @field_validator("store_id", "created_at", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        if value is None:
            raise ValueError("required")
        return str(value)

    @field_validator("session_id", mode="before")
    @classmethod
    def _coerce_session(cls, value):
        return str(value) if value not in (None, "") else None


class NotificationDispatcher:
    """Matches fresh found reports against watchers and sends Web Push."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender: PushSender,
        registry: SubscriptionRegistry | None = None,
        dedupe: DedupeManager | None = None,
        config=settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.sender = sender
        self.registry = registry or SubscriptionRegistry(config)
        self.dedupe = dedupe or DedupeManager(config)
        self.clock = clock

        self.table = config.report_events_table
        self.event_ttl = timedelta(minutes=config.notify_event_ttl_minutes)
        self.max_recipients = config.notify_max_recipients
        self.grid_step = config.area_grid_step
        self.max_concurrent_deliveries = config.notify_max_concurrent_deliveries
        self._message = {
            "title": config.notify_title,
            "body": config.notify_body,
            "url": config.notify_url,
        }

    async def handle(self, payload: Any) -> DispatchResult:
        """
        Process one trigger.

        Args:
            payload: ``{type, table, record}`` mapping or ``TriggerPayload``

        Returns:
            DispatchResult tagged with the step that ended the invocation

        Raises:
            Exception: Unexpected failures after the event was claimed
        """
        result = await self._run(payload)
        metrics.record_dispatch(result.outcome.value)
        return result

    async def dispatch_report(self, event: ReportEvent) -> Optional[DispatchResult]:
        """
        Run the dispatcher for a report written by this process.

        Used as a background task after the response is sent, so failures
        are logged rather than raised.
        """
        payload = {
            "type": "INSERT",
            "table": self.table,
            "record": {
                "store_id": event.store_id,
                "product_id": event.product_id,
                "status": event.status,
                "created_at": isoformat(event.created_at),
                "session_id": event.session_id,
            },
        }
        try:
            return await self.handle(payload)
        except Exception:
            logger.exception(f"In-process dispatch failed for report {event.id}")
            return None

    async def _run(self, payload: Any) -> DispatchResult:
        # 1. Only inserts into the report table
        trigger = self._parse_trigger(payload)
        if trigger is None or trigger.type != "INSERT" or trigger.table != self.table:
            return DispatchResult(DispatchOutcome.IGNORED)

        # 2. Only positive sightings
        record = self._parse_record(trigger.record)
        if record is None or record.status != ReportStatus.FOUND.value:
            return DispatchResult(DispatchOutcome.IGNORED)

        # 3. Freshness
        created_at = parse_timestamp(record.created_at)
        if created_at is None:
            return DispatchResult(DispatchOutcome.IGNORED)
        now = self.clock()
        if now - created_at > self.event_ttl:
            return DispatchResult(DispatchOutcome.IGNORED_TTL)

        # 4. Idempotency
        event_key = DedupeManager.event_key(
            record.store_id, record.product_id, record.session_id, record.created_at
        )
        async with self.session_factory() as db:
            claimed = await self.dedupe.claim(db, event_key, now)
        if not claimed:
            return DispatchResult(DispatchOutcome.DEDUP, event_key=event_key)

        log = get_logger(__name__, event_key=event_key, product_id=record.product_id)
        # Filled in as steps complete so the error audit row keeps partial progress
        progress = DispatchResult(DispatchOutcome.SENT, event_key=event_key)
        try:
            result = await self._process(record, progress, now)
        except Exception:
            log.exception("Dispatch failed after claim", extra={"area_key": progress.area_key})
            await self._write_log(progress, record, outcome_override="error")
            raise

        # 12. Audit
        await self._write_log(result, record)
        log.info(
            f"Dispatch {result.outcome.value}: area={result.area_key} "
            f"sent={result.sent} failed={result.failed} disabled={result.disabled}",
            extra={"area_key": result.area_key},
        )
        return result

    async def _process(
        self, record: ReportRecord, result: DispatchResult, now: datetime
    ) -> DispatchResult:
        """Steps 5-11 for a claimed event, recorded on ``result`` as they complete."""
        async with self.session_factory() as db:
            # 5. Store location
            store = await db.get(Store, record.store_id)
            if store is None or store.latitude is None or store.longitude is None:
                result.outcome = DispatchOutcome.NO_STORE_GEO
                return result

            key = compute_area_key(store.latitude, store.longitude, self.grid_step)
            result.area_key = key

            # 6. Rate limit per product x area
            if await self.dedupe.is_in_cooldown(db, record.product_id, key, now):
                result.outcome = DispatchOutcome.COOLDOWN
                return result

            # 7. Watchers
            subscriber_ids = await self.registry.active_watchers(db, record.product_id, key, now)
            if not subscriber_ids:
                result.outcome = DispatchOutcome.NO_WATCHERS
                return result

            # 8. Push targets, capped against pathological fan-out
            targets = await self.registry.push_targets(db, subscriber_ids[: self.max_recipients])

        payload = {
            **self._message,
            "product_id": record.product_id,
            "store_id": record.store_id,
        }
        result.payload = dict(self._message)

        # 9. Deliver concurrently; one failure never blocks the others
        semaphore = asyncio.Semaphore(self.max_concurrent_deliveries)
        outcomes = await asyncio.gather(
            *(self._deliver(semaphore, target, payload) for target in targets)
        )

        result.sent = sum(1 for outcome in outcomes if outcome.ok)
        result.failed = len(outcomes) - result.sent
        gone = [target for target, outcome in zip(targets, outcomes) if outcome.gone]

        async with self.session_factory() as db:
            # 10. Stale endpoint cleanup; a failed disable is retried on the next 404/410
            for target in gone:
                try:
                    await self.registry.disable_endpoint(db, target.endpoint, self.clock())
                except StorageError as e:
                    logger.error(
                        f"Failed to disable gone push endpoint for subscriber "
                        f"{target.subscriber_id}: {e}"
                    )
                    continue
                result.disabled += 1
                logger.info(f"Disabled gone push endpoint for subscriber {target.subscriber_id}")

            # 11. Cooldown only after a real delivery
            if result.sent > 0:
                await self.dedupe.start_cooldown(db, record.product_id, key, self.clock())

        return result

    async def _deliver(
        self, semaphore: asyncio.Semaphore, target: PushTarget, payload: dict
    ) -> DeliveryOutcome:
        """Deliver to one target, converting unexpected errors to failures."""
        async with semaphore:
            try:
                return await self.sender.send(target, payload)
            except Exception as e:
                logger.warning(f"Push sender raised {type(e).__name__}: {e}")
                return DeliveryOutcome(ok=False, error=str(e))

    async def _write_log(
        self,
        result: DispatchResult,
        record: ReportRecord,
        outcome_override: Optional[str] = None,
    ) -> None:
        """Best-effort audit row; a logging failure must not fail the dispatch."""
        try:
            async with self.session_factory() as db:
                db.add(
                    NotificationLog(
                        event_key=result.event_key,
                        store_id=record.store_id,
                        product_id=record.product_id,
                        area_key=result.area_key,
                        outcome=outcome_override or result.outcome.value,
                        sent_count=result.sent,
                        failed_count=result.failed,
                        disabled_count=result.disabled,
                        payload=result.payload or None,
                        created_at=self.clock(),
                    )
                )
                await db.commit()
        except Exception:
            logger.exception(f"Failed to write notification log for {result.event_key}")

    @staticmethod
    def _parse_trigger(payload: Any) -> Optional[TriggerPayload]:
        if isinstance(payload, TriggerPayload):
            return payload
        try:
            return TriggerPayload.model_validate(payload)
        except ValidationError:
            return None

    @staticmethod
    def _parse_record(record: Optional[dict]) -> Optional[ReportRecord]:
        if not record:
            return None
        try:
            return ReportRecord.model_validate(record)
        except ValidationError:
            return None
