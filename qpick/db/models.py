"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from qpick.utils.clock import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Store(Base):
    """Convenience store location."""

    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False)  # seven_eleven, familymart, lawson
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Administrative metadata for downstream linking
    pref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    slug: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_stores_lat_lng", "latitude", "longitude"),
    )


class Product(Base):
    """Product users look for."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # "all" or a single chain the product is exclusive to
    chain: Mapped[str] = mapped_column(String(32), default="all", nullable=False)


class ReportEvent(Base):
    """Immutable found/not-found report. Never updated or deleted."""

    __tablename__ = "report_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stores.id"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    origin: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # web, app, import
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("status IN ('found', 'not_found')", name="ck_report_events_status"),
        Index("ix_report_events_product_store_created", "product_id", "store_id", "created_at"),
        Index("ix_report_events_session", "session_id", "store_id", "product_id"),
    )


class Comment(Base):
    """Free-text comment on a store/product pair. Shown only once approved."""

    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stores.id"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    store: Mapped["Store"] = relationship("Store")

    __table_args__ = (
        Index("ix_comments_store_product", "store_id", "product_id"),
    )


class WatchSubscription(Base):
    """A subscriber's standing "notify me about this product near here"."""

    __tablename__ = "watches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    area_key: Mapped[str] = mapped_column(String(32), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("subscriber_id", "product_id", name="uq_watch_subscriber_product"),
        Index("ix_watches_product_area", "product_id", "area_key"),
    )


class PushRegistration(Base):
    """Web Push subscription for one browser installation."""

    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh_key: Mapped[str] = mapped_column(Text, nullable=False)
    auth_key: Mapped[str] = mapped_column(Text, nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("endpoint", name="uq_push_subscriptions_endpoint"),
        Index("ix_push_subscriptions_subscriber", "subscriber_id"),
    )


class NotificationCooldown(Base):
    """Last successful send per product x area. Upserted only after delivery."""

    __tablename__ = "notify_cooldowns"

    product_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    area_key: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ProcessedEventMarker(Base):
    """One row per inbound report event the dispatcher has taken ownership of."""

    __tablename__ = "notify_processed"

    event_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )


class NotificationLog(Base):
    """Audit trail of dispatcher decisions."""

    __tablename__ = "notify_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_key: Mapped[str] = mapped_column(String(255), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    area_key: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)  # sent, cooldown, no_watchers, ...
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    disabled_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_notify_logs_created_at", "created_at"),
    )


class SearchLog(Base):
    """Search request log for area-level usage statistics."""

    __tablename__ = "search_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    keyword: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    product_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    store_count_shown: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    search_source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sort_mode: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    area_pref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    area_city: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_search_logs_created_at", "created_at"),
    )
