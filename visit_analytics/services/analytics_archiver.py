"""
Analytics Archiver — raw ``page_views`` → daily ``page_view_archives``.

Raw page views are kept at full precision for ``precision_days``. Anything
older is folded into one archive row per *local* calendar date (in the
configured timezone), then deleted. Archive rows themselves are dropped
after ``retention_days``.

A date can be archived more than once (late events for an already-archived
day arrive in a later flush), so new statistics are merged additively into
the existing row. The merge and the deletion of its source rows commit in a
single transaction: on any error the whole pass rolls back and the next run
picks up the same rows again.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable

import pytz
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visit_analytics.models.page_view import PageView, PageViewArchive
from visit_analytics.services.session_duration import as_utc

logger = logging.getLogger("analytics.archiver")

# ── tunables ──
SESSION_TIMEOUT = timedelta(minutes=30)
DELETE_CHUNK_SIZE = 500
UNKNOWN_LABEL = "unknown"
DIRECT_LABEL = "direct"

# archive column → (page view attribute, label used when the attribute is empty)
DIMENSIONS = {
    "referer_stats": ("referer", DIRECT_LABEL),
    "country_stats": ("country", UNKNOWN_LABEL),
    "region_stats": ("region", UNKNOWN_LABEL),
    "city_stats": ("city", UNKNOWN_LABEL),
    "device_stats": ("device_type", UNKNOWN_LABEL),
    "browser_stats": ("browser", UNKNOWN_LABEL),
    "os_stats": ("os", UNKNOWN_LABEL),
    "screen_stats": ("screen_size", UNKNOWN_LABEL),
    "language_stats": ("language", UNKNOWN_LABEL),
    "timezone_stats": ("timezone", UNKNOWN_LABEL),
}

SCALARS = ("total_views", "unique_visitors", "total_sessions", "bounces", "total_duration")


def _empty_result() -> dict:
    return {
        "archived_date_groups": 0,
        "archived_raw_page_view_deleted": 0,
        "expired_archive_deleted": 0,
    }


# ─────────────────────────────────────────────────────────────────────
# configuration
# ─────────────────────────────────────────────────────────────────────

@dataclass
class RetentionConfig:
    """What to archive and for how long to keep it."""

    enabled: bool = True
    timezone: str = "UTC"
    precision_days: int = 30     # 0 = never archive
    retention_days: int = 365    # 0 = keep archives forever

    @classmethod
    def from_settings(cls, settings=None) -> "RetentionConfig":
        if settings is None:
            from visit_analytics.config import settings
        return cls(
            enabled=bool(settings.analytics_enable),
            timezone=settings.analytics_timezone or "UTC",
            precision_days=max(0, int(settings.analytics_precision_days)),
            retention_days=max(0, int(settings.analytics_retention_days)),
        )


# ─────────────────────────────────────────────────────────────────────
# timezone helpers
# ─────────────────────────────────────────────────────────────────────

def resolve_timezone(name: str | None):
    """pytz zone for ``name``; UTC (with a warning) if the name is unknown."""
    if not name:
        return pytz.utc
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning("⚠️  Invalid timezone %r — falling back to UTC", name)
        return pytz.utc


def local_date(ts: datetime, tz) -> date:
    """Calendar date of ``ts`` as seen on a wall clock in ``tz``."""
    return as_utc(ts).astimezone(tz).date()


def local_midnight_utc(day: date, tz) -> datetime:
    """The UTC instant at which ``day`` starts in ``tz``."""
    return tz.localize(datetime.combine(day, time.min)).astimezone(timezone.utc)


def archive_boundary(now: datetime, precision_days: int, tz) -> datetime:
    """Start of the local day ``precision_days`` before today, as a UTC instant.

    Aligned to a local midnight so one day is never split across runs.
    """
    today = local_date(now, tz)
    return local_midnight_utc(today - timedelta(days=precision_days), tz)


# ─────────────────────────────────────────────────────────────────────
# aggregation
# ─────────────────────────────────────────────────────────────────────

def merge_counts(existing: dict | None, current: dict | None) -> dict:
    """Key-by-key sum of two frequency maps."""
    merged = dict(existing or {})
    for key, value in (current or {}).items():
        merged[key] = merged.get(key, 0) + value
    return merged


def merge_path_stats(existing: dict | None, current: dict | None) -> dict:
    merged = {path: dict(stats) for path, stats in (existing or {}).items()}
    for path, stats in (current or {}).items():
        if path in merged:
            merged[path]["views"] = merged[path].get("views", 0) + stats.get("views", 0)
            merged[path]["visitors"] = merged[path].get("visitors", 0) + stats.get("visitors", 0)
        else:
            merged[path] = dict(stats)
    return merged


@dataclass
class DailyStats:
    """Statistics for one local date, in archive-row shape."""

    date: date
    total_views: int = 0
    unique_visitors: int = 0
    total_sessions: int = 0
    bounces: int = 0
    total_duration: int = 0
    path_stats: dict = field(default_factory=dict)
    histograms: dict = field(default_factory=lambda: {name: {} for name in DIMENSIONS})

    @classmethod
    def from_row(cls, row: PageViewArchive) -> "DailyStats":
        return cls(
            date=row.date,
            **{name: getattr(row, name) or 0 for name in SCALARS},
            path_stats=dict(row.path_stats or {}),
            histograms={name: dict(getattr(row, name) or {}) for name in DIMENSIONS},
        )

    def merge(self, other: "DailyStats") -> "DailyStats":
        """Additive merge; neither operand is modified."""
        return DailyStats(
            date=self.date,
            **{name: getattr(self, name) + getattr(other, name) for name in SCALARS},
            path_stats=merge_path_stats(self.path_stats, other.path_stats),
            histograms={
                name: merge_counts(self.histograms.get(name), other.histograms.get(name))
                for name in DIMENSIONS
            },
        )

    def as_values(self) -> dict:
        """Column values for a ``PageViewArchive`` row (date excluded)."""
        values = {name: getattr(self, name) for name in SCALARS}
        values["path_stats"] = self.path_stats
        values.update(self.histograms)
        return values


def summarize_sessions(timestamps: list[datetime]) -> tuple[int, int, timedelta]:
    """Split one visitor's views into sessions.

    A new session starts at the first view and whenever the gap to the
    previous view exceeds ``SESSION_TIMEOUT``. Returns
    ``(sessions, bounces, total_duration)`` where a one-page session is a
    bounce and only sessions of 2+ pages add ``last - first`` to the duration.
    """
    if not timestamps:
        return 0, 0, timedelta(0)

    ordered = sorted(timestamps)
    sessions: list[list[datetime]] = [[ordered[0]]]
    for previous, current in zip(ordered, ordered[1:]):
        if current - previous > SESSION_TIMEOUT:
            sessions.append([current])
        else:
            sessions[-1].append(current)

    bounces = sum(1 for s in sessions if len(s) == 1)
    duration = sum((s[-1] - s[0] for s in sessions if len(s) > 1), timedelta(0))
    return len(sessions), bounces, duration


def aggregate_page_views(views: Iterable, tz) -> dict[date, DailyStats]:
    """Bucket page views by local date and compute each bucket's statistics."""
    buckets: dict[date, DailyStats] = {}
    visitors: dict[date, set[str]] = {}
    path_visitors: dict[date, dict[str, set[str]]] = {}
    visitor_times: dict[date, dict[str, list[datetime]]] = {}

    for view in views:
        ts = as_utc(view.timestamp)
        day = local_date(ts, tz)
        stats = buckets.get(day)
        if stats is None:
            stats = buckets[day] = DailyStats(date=day)
            visitors[day] = set()
            path_visitors[day] = {}
            visitor_times[day] = {}

        stats.total_views += 1
        visitors[day].add(view.visitor_id)

        path_stat = stats.path_stats.setdefault(view.path, {"views": 0, "visitors": 0})
        path_stat["views"] += 1
        path_visitors[day].setdefault(view.path, set()).add(view.visitor_id)

        visitor_times[day].setdefault(view.visitor_id, []).append(ts)

        for name, (attr, fallback) in DIMENSIONS.items():
            key = getattr(view, attr, None) or fallback
            hist = stats.histograms[name]
            hist[key] = hist.get(key, 0) + 1

    for day, stats in buckets.items():
        stats.unique_visitors = len(visitors[day])
        for path, seen in path_visitors[day].items():
            stats.path_stats[path]["visitors"] = len(seen)

        total = timedelta(0)
        for timestamps in visitor_times[day].values():
            sessions, bounces, duration = summarize_sessions(timestamps)
            stats.total_sessions += sessions
            stats.bounces += bounces
            total += duration
        stats.total_duration = math.floor(total.total_seconds() + 0.5)

    return buckets


# ─────────────────────────────────────────────────────────────────────
# retention
# ─────────────────────────────────────────────────────────────────────

async def cleanup_expired_archives(session: AsyncSession, retention_days: int, today: date) -> int:
    """Delete archive rows dated before ``today - retention_days``. Does not commit."""
    if retention_days == 0:
        return 0

    cutoff = today - timedelta(days=retention_days)
    result = await session.execute(
        delete(PageViewArchive)
        .where(PageViewArchive.date < cutoff)
        .execution_options(synchronize_session=False)
    )
    deleted = result.rowcount or 0
    if deleted:
        logger.info("🧹 Deleted %d archive row(s) older than %s", deleted, cutoff.isoformat())
    return deleted


async def enforce_retention(
    session_factory: async_sessionmaker,
    config: RetentionConfig,
    now: datetime | None = None,
) -> int:
    """Drop expired archive rows. Idempotent — safe to run any number of times."""
    if not config.enabled or config.retention_days == 0:
        return 0

    tz = resolve_timezone(config.timezone)
    today = local_date(now or datetime.now(timezone.utc), tz)
    async with session_factory() as session:
        deleted = await cleanup_expired_archives(session, config.retention_days, today)
        await session.commit()
    return deleted


# ─────────────────────────────────────────────────────────────────────
# core
# ─────────────────────────────────────────────────────────────────────

async def _merge_bucket(session: AsyncSession, stats: DailyStats) -> None:
    existing = (
        await session.execute(select(PageViewArchive).where(PageViewArchive.date == stats.date))
    ).scalar_one_or_none()

    if existing is None:
        session.add(PageViewArchive(date=stats.date, **stats.as_values()))
        return

    merged = DailyStats.from_row(existing).merge(stats)
    for name, value in merged.as_values().items():
        setattr(existing, name, value)


async def archive_page_views(
    session_factory: async_sessionmaker,
    config: RetentionConfig,
    now: datetime | None = None,
) -> dict:
    """
    Fold page views older than the archive boundary into daily archive
    rows, delete them, then expire old archives.

    Returns
    -------
    dict  with ``archived_date_groups``, ``archived_raw_page_view_deleted``
    and ``expired_archive_deleted`` counts (all zero on failure).
    """
    if not config.enabled or config.precision_days == 0:
        return _empty_result()

    tz = resolve_timezone(config.timezone)
    now = now or datetime.now(timezone.utc)
    boundary = archive_boundary(now, config.precision_days, tz)

    archived_groups = 0
    deleted = 0
    try:
        async with session_factory() as session:
            views = (
                await session.execute(select(PageView).where(PageView.timestamp < boundary))
            ).scalars().all()

            if views:
                logger.info(
                    "📦 Archiving %d page view(s) older than %s (%s)",
                    len(views), boundary.isoformat(), tz.zone,
                )
                buckets = aggregate_page_views(views, tz)
                for day in sorted(buckets):
                    await _merge_bucket(session, buckets[day])
                await session.flush()

                ids = [v.id for v in views]
                for i in range(0, len(ids), DELETE_CHUNK_SIZE):
                    result = await session.execute(
                        delete(PageView)
                        .where(PageView.id.in_(ids[i:i + DELETE_CHUNK_SIZE]))
                        .execution_options(synchronize_session=False)
                    )
                    deleted += result.rowcount or 0

                await session.commit()
                archived_groups = len(buckets)
                logger.info(
                    "📦 Archived %d date group(s), deleted %d raw page view(s)",
                    archived_groups, deleted,
                )
    except Exception as e:
        logger.error("❌ Archiving page views failed: %s", e)
        return _empty_result()

    try:
        expired = await enforce_retention(session_factory, config, now)
    except Exception as e:
        logger.error("❌ Expiring old archives failed: %s", e)
        expired = 0

    return {
        "archived_date_groups": archived_groups,
        "archived_raw_page_view_deleted": deleted,
        "expired_archive_deleted": expired,
    }
