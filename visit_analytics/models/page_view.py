"""
Visit Analytics — SQLAlchemy ORM models for page views and their aggregates.

``page_views`` holds raw visits flushed from the Redis queue, kept at full
precision until the archiver folds them into one ``page_view_archives`` row
per local calendar date. ``view_count_cache`` mirrors the Redis counter hash
so per-path totals survive a Redis flush.
"""

import uuid
from datetime import date as calendar_date, datetime, timezone

from sqlalchemy import (
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from visit_analytics.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


class PageView(Base):
    """One raw visit. ``duration`` stays 0 until a later visit by the same visitor is seen."""
    __tablename__ = "page_views"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    visitor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    referer: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # Geo
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Client
    browser: Mapped[str | None] = mapped_column(String(100), nullable=True)
    browser_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    os: Mapped[str | None] = mapped_column(String(100), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    screen_size: Mapped[str | None] = mapped_column(String(50), nullable=True)
    language: Mapped[str | None] = mapped_column(String(50), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Seconds spent on the page (0 = unknown / last page seen so far)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("visitor_id", "timestamp", "path", name="uq_page_views_visit"),
        Index("ix_page_views_timestamp", "timestamp"),
        Index("ix_page_views_visitor_ts", "visitor_id", "timestamp"),
    )

    def __repr__(self):
        return f"<PageView {self.path} by {self.visitor_id} @ {self.timestamp} ({self.duration}s)>"


class ViewCountCache(Base):
    """Durable copy of the Redis per-path view counter."""
    __tablename__ = "view_count_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    path: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True)
    cached_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    post_slug: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "cached_count": self.cached_count,
            "post_slug": self.post_slug,
        }


class PageViewArchive(Base):
    """Aggregated statistics for one local calendar date."""
    __tablename__ = "page_view_archives"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    date: Mapped[calendar_date] = mapped_column(Date, nullable=False, unique=True)

    total_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Summed per archival pass, so a visitor seen in two passes counts twice
    unique_visitors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bounces: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Histograms (JSON for SQLite compat)
    path_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    referer_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    country_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    region_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    city_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    device_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    browser_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    os_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    screen_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    language_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timezone_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "total_views": self.total_views,
            "unique_visitors": self.unique_visitors,
            "total_sessions": self.total_sessions,
            "bounces": self.bounces,
            "total_duration": self.total_duration,
            "path_stats": self.path_stats or {},
            "referer_stats": self.referer_stats or {},
            "country_stats": self.country_stats or {},
            "region_stats": self.region_stats or {},
            "city_stats": self.city_stats or {},
            "device_stats": self.device_stats or {},
            "browser_stats": self.browser_stats or {},
            "os_stats": self.os_stats or {},
            "screen_stats": self.screen_stats or {},
            "language_stats": self.language_stats or {},
            "timezone_stats": self.timezone_stats or {},
        }

    def __repr__(self):
        return f"<PageViewArchive {self.date} ({self.total_views} views)>"
