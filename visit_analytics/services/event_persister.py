"""
Raw event persister — bulk-insert a durated batch into ``page_views``.

The queue is read-then-trimmed, so a batch can be delivered twice, possibly
with newer events appended. A row that collides on (visitor_id, timestamp,
path) is not inserted again; if the stored copy still has duration 0 and the
redelivered one now knows its duration, that duration is written.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from visit_analytics.models.page_view import PageView
from visit_analytics.schemas import NormalizedEvent

logger = logging.getLogger("analytics.persister")

# Keeps a multi-row INSERT under SQLite's bound-parameter limit (19 columns per row)
INSERT_CHUNK_SIZE = 50


def dialect_insert(session: AsyncSession):
    """``insert`` construct with ON CONFLICT support for the session's backend."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def persist_events(session: AsyncSession, events: list[NormalizedEvent]) -> int:
    """Insert ``events``; redelivered rows only get a missing duration filled in.

    Returns rows written: new inserts plus redelivered rows whose duration
    went from 0 to a known value. Unchanged duplicates are not counted.
    Does not commit.
    """
    if not events:
        return 0

    insert = dialect_insert(session)
    table = PageView.__table__
    rows = [{"id": str(uuid.uuid4()), **event.to_row()} for event in events]

    written = 0
    for i in range(0, len(rows), INSERT_CHUNK_SIZE):
        stmt = insert(table).values(rows[i:i + INSERT_CHUNK_SIZE])
        stmt = stmt.on_conflict_do_update(
            index_elements=["visitor_id", "timestamp", "path"],
            set_={"duration": stmt.excluded.duration},
            where=and_(table.c.duration == 0, stmt.excluded.duration > 0),
        )
        result = await session.execute(stmt)
        written += max(result.rowcount or 0, 0)

    skipped = len(rows) - written
    if skipped:
        logger.info("⏭️  Skipped %d duplicate page view(s)", skipped)
    return written
