"""
Session duration — how long a visitor stayed on each page.

A page view's duration is only known once the same visitor's *next* page
view is seen. Within a batch that is a simple walk over each visitor's
time-ordered views. The last view of a visitor in batch N stays at 0 until
batch N+1 brings a later view, at which point :func:`backfill_previous_durations`
patches the already-persisted row.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from visit_analytics.models.page_view import PageView
from visit_analytics.schemas import NormalizedEvent

logger = logging.getLogger("analytics.duration")

_IN_CHUNK = 500


def as_utc(ts: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def seconds_between(earlier: datetime, later: datetime) -> int:
    """Whole seconds from ``earlier`` to ``later``, floored, never negative."""
    delta = (as_utc(later) - as_utc(earlier)).total_seconds()
    return max(0, math.floor(delta))


def compute_durations(events: list[NormalizedEvent]) -> dict[str, NormalizedEvent]:
    """Fill ``duration`` in place for every event that has a later sibling.

    Events are grouped per visitor and sorted by timestamp; equal timestamps
    keep queue order. Returns visitor id → that visitor's earliest event in
    the batch, which is what the cross-batch backfill needs.
    """
    by_visitor: dict[str, list[NormalizedEvent]] = defaultdict(list)
    for event in events:
        by_visitor[event.visitor_id].append(event)

    first_by_visitor: dict[str, NormalizedEvent] = {}
    for visitor_id, views in by_visitor.items():
        views.sort(key=lambda e: e.timestamp)
        for current, nxt in zip(views, views[1:]):
            current.duration = seconds_between(current.timestamp, nxt.timestamp)
        views[-1].duration = 0
        first_by_visitor[visitor_id] = views[0]

    return first_by_visitor


async def backfill_previous_durations(
    session: AsyncSession,
    first_by_visitor: dict[str, NormalizedEvent],
) -> int:
    """Give each visitor's latest stored page view its real duration.

    Only rows whose duration is still exactly 0 are touched. Does not
    commit; the caller commits together with the batch insert.
    Returns the number of rows updated.
    """
    if not first_by_visitor:
        return 0

    visitor_ids = list(first_by_visitor)
    updated = 0

    for i in range(0, len(visitor_ids), _IN_CHUNK):
        chunk = visitor_ids[i:i + _IN_CHUNK]
        ranked = (
            select(
                PageView.id,
                PageView.visitor_id,
                PageView.timestamp,
                PageView.duration,
                func.row_number().over(
                    partition_by=PageView.visitor_id,
                    order_by=PageView.timestamp.desc(),
                ).label("rn"),
            )
            .where(PageView.visitor_id.in_(chunk))
            .subquery()
        )
        latest = (
            await session.execute(
                select(ranked.c.id, ranked.c.visitor_id, ranked.c.timestamp, ranked.c.duration)
                .where(ranked.c.rn == 1)
            )
        ).all()

        for row in latest:
            if row.duration != 0:
                continue
            duration = seconds_between(row.timestamp, first_by_visitor[row.visitor_id].timestamp)
            if duration <= 0:
                continue
            result = await session.execute(
                update(PageView)
                .where(PageView.id == row.id, PageView.duration == 0)
                .values(duration=duration)
            )
            updated += result.rowcount or 0

    if updated:
        logger.info("⏱️  Backfilled duration on %d page view(s) from earlier flushes", updated)
    return updated
