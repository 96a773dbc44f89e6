"""Append-only report log and store/product comments."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.config import settings
from qpick.db.models import Comment, ReportEvent
from qpick.errors import DuplicateReportError, InvalidInputError, StorageError
from qpick.scoring.availability import ReportSignal, ReportStatus
from qpick.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ReportStore:
    """Writes report events and comments; reads signals for scoring."""

    def __init__(self, config=settings):
        self.duplicate_window = timedelta(hours=config.report_duplicate_window_hours)
        self.comment_max_length = config.comment_max_length

    async def submit_report(
        self,
        db: AsyncSession,
        store_id: str,
        product_id: int,
        status: str,
        session_id: Optional[str] = None,
        origin: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReportEvent:
        """
        Append a found/not-found report. The server assigns ``created_at``.

        Raises:
            InvalidInputError: Unknown status or missing ids
            DuplicateReportError: Same session already reported this pair
                within the duplicate window
            StorageError: Insert failed
        """
        store_id = str(store_id or "").strip()
        if not store_id:
            raise InvalidInputError("store_id", "required")
        try:
            status = ReportStatus(status).value
        except ValueError:
            raise InvalidInputError("status", "must be 'found' or 'not_found'")

        now = now or utcnow()
        session_id = (session_id or "").strip() or None

        if session_id:
            existing = await db.execute(
                select(ReportEvent.status)
                .where(
                    ReportEvent.session_id == session_id,
                    ReportEvent.store_id == store_id,
                    ReportEvent.product_id == product_id,
                    ReportEvent.created_at >= now - self.duplicate_window,
                )
                .limit(1)
            )
            previous = existing.scalar_one_or_none()
            if previous is not None:
                raise DuplicateReportError(store_id, product_id, previous)

        event = ReportEvent(
            store_id=store_id,
            product_id=product_id,
            status=status,
            session_id=session_id,
            origin=origin,
            created_at=now,
        )
        db.add(event)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            # Unique constraints enforced outside this service land here too
            if "unique" in str(e.orig).lower() or "duplicate" in str(e.orig).lower():
                raise DuplicateReportError(store_id, product_id, status) from e
            raise StorageError("submit_report", e) from e
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError("submit_report", e) from e

        await db.refresh(event)
        logger.info(f"Report {event.id}: {status} store={store_id} product={product_id}")
        return event

    async def add_comment(
        self,
        db: AsyncSession,
        store_id: str,
        product_id: int,
        body: str,
    ) -> Comment:
        """Store a comment. It stays hidden until a moderator approves it."""
        text = (body or "").strip()
        if not text:
            raise InvalidInputError("comment", "must not be blank")
        if len(text) > self.comment_max_length:
            raise InvalidInputError("comment", f"longer than {self.comment_max_length} characters")

        comment = Comment(store_id=str(store_id), product_id=product_id, body=text)
        db.add(comment)
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError("add_comment", e) from e

        await db.refresh(comment)
        return comment

    async def approved_comments(
        self,
        db: AsyncSession,
        store_id: str,
        product_id: int,
        limit: int = 20,
    ) -> list[Comment]:
        """Approved comments for a store/product pair, newest first."""
        result = await db.execute(
            select(Comment)
            .where(
                Comment.store_id == str(store_id),
                Comment.product_id == product_id,
                Comment.is_approved.is_(True),
            )
            .order_by(Comment.created_at.desc(), Comment.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def signals_since(
        self,
        db: AsyncSession,
        product_id: int,
        store_ids: list[str],
        since: datetime,
    ) -> list[ReportSignal]:
        """Report signals for the given stores with ``created_at >= since``."""
        if not store_ids:
            return []

        result = await db.execute(
            select(ReportEvent.store_id, ReportEvent.status, ReportEvent.created_at).where(
                ReportEvent.product_id == product_id,
                ReportEvent.store_id.in_(store_ids),
                ReportEvent.created_at >= since,
            )
        )
        return [
            ReportSignal(store_id=str(row.store_id), status=row.status, created_at=row.created_at)
            for row in result.all()
        ]


# Global report store instance
report_store = ReportStore()
