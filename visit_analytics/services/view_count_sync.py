"""
View count sync — Redis counter hash → ``view_count_cache``.

A full sweep on every flush. Each path's row is overwritten with the current
Redis count (last write wins), so re-running is harmless.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visit_analytics.models.page_view import ViewCountCache
from visit_analytics.services.event_persister import dialect_insert
from visit_analytics.services.event_queue import EventQueue

logger = logging.getLogger("analytics.view_counts")

POST_PATH_RE = re.compile(r"^/posts/([^/]+)$")
UPSERT_CHUNK_SIZE = 200


def post_slug_for(path: str) -> str | None:
    """``/posts/<slug>`` → ``<slug>``; anything else → None."""
    match = POST_PATH_RE.match(path)
    return match.group(1) if match else None


async def upsert_view_counts(session: AsyncSession, counts: dict[str, int]) -> int:
    """Upsert one cache row per path. Does not commit. Returns rows upserted."""
    if not counts:
        return 0

    insert = dialect_insert(session)
    table = ViewCountCache.__table__
    now = datetime.now(timezone.utc)
    rows = [
        {
            "id": str(uuid.uuid4()),
            "path": path,
            "cached_count": count,
            "post_slug": post_slug_for(path),
            "updated_at": now,
        }
        for path, count in counts.items()
    ]

    for i in range(0, len(rows), UPSERT_CHUNK_SIZE):
        stmt = insert(table).values(rows[i:i + UPSERT_CHUNK_SIZE])
        stmt = stmt.on_conflict_do_update(
            index_elements=["path"],
            set_={
                "cached_count": stmt.excluded.cached_count,
                # keep a known slug rather than clearing it
                "post_slug": func.coalesce(stmt.excluded.post_slug, table.c.post_slug),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)

    return len(rows)


async def sync_view_counts(queue: EventQueue, session_factory: async_sessionmaker) -> int:
    """Copy every Redis path counter into the database.

    Errors are logged and reported as 0 synced rows; the flush carries on.
    """
    try:
        counts = await queue.view_counts()
        if not counts:
            return 0

        async with session_factory() as session:
            synced = await upsert_view_counts(session, counts)
            await session.commit()

        logger.info("🔢 Synced %d view count(s) to database", synced)
        return synced
    except Exception as e:
        logger.error("❌ View count sync failed: %s", e)
        return 0
