"""
Analytics Flush — Redis queue → PostgreSQL, one bounded batch per run.

Each run:

1. reads up to ``batch_size`` raw events from the head of the queue
2. normalizes them (malformed ones are dropped for good)
3. computes in-batch stay durations
4. backfills the duration of each visitor's last page view from earlier runs
5. inserts the batch into ``page_views`` (a redelivered row only gets a missing duration filled in)
6. syncs the Redis view counters to ``view_count_cache``
7. archives aged page views and expires old archives
8. trims the processed items off the queue

The queue is only trimmed after every step above succeeded, so a failed run
leaves the batch in place for the next one. Runs are triggered externally
(the periodic task in ``main.py``, the admin route, or the tracker when the
queue fills up) and serialized with a Redis lease via :meth:`flush_with_lock`.
The lease is renewed at every step boundary, so its TTL bounds one step, not
a whole run; a run that finds its lease gone stops without trimming.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from visit_analytics.schemas import FlushResult
from visit_analytics.services.analytics_archiver import RetentionConfig, archive_page_views
from visit_analytics.services.event_persister import persist_events
from visit_analytics.services.event_queue import EventQueue
from visit_analytics.services.normalizer import normalize_batch
from visit_analytics.services.session_duration import (
    backfill_previous_durations,
    compute_durations,
)
from visit_analytics.services.view_count_sync import sync_view_counts

logger = logging.getLogger("analytics.flush")


class FlushAbortedError(RuntimeError):
    """An abort was requested between two pipeline steps, or the flush lease was lost."""


class AnalyticsFlusher:
    """Runs the flush pipeline against one queue and one database."""

    def __init__(
        self,
        queue: EventQueue,
        session_factory: async_sessionmaker,
        retention: RetentionConfig,
        batch_size: int = 500,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.retention = retention
        self.batch_size = batch_size
        self._abort_requested = False
        self._lease_token: str | None = None

    @classmethod
    def from_settings(cls, redis_client, session_factory=None, settings=None) -> "AnalyticsFlusher":
        if settings is None:
            from visit_analytics.config import settings
        if session_factory is None:
            from visit_analytics.database import async_session_factory as session_factory

        queue = EventQueue(
            redis_client,
            queue_key=settings.analytics_queue_key,
            view_count_key=settings.analytics_view_count_key,
            lock_key=settings.analytics_flush_lock_key,
            lock_ttl_ms=settings.analytics_flush_lock_ttl_ms,
        )
        return cls(
            queue,
            session_factory,
            RetentionConfig.from_settings(settings),
            batch_size=settings.analytics_batch_size,
        )

    def request_abort(self) -> None:
        """Stop the current run at the next step boundary.

        If no run is active, the next one stops at its first boundary. The
        request is cleared once that run ends.
        """
        self._abort_requested = True

    async def _checkpoint(self, step: str) -> None:
        if self._abort_requested:
            raise FlushAbortedError(f"flush aborted before {step}")
        if self._lease_token and not await self.queue.extend_lock(self._lease_token):
            raise FlushAbortedError(f"flush lease lost before {step}")

    async def flush(self) -> FlushResult:
        """Run the pipeline once. Never raises; failures come back as ``success=False``."""
        try:
            await self._checkpoint("read")
            raw_items = await self.queue.read_batch(self.batch_size)
            if not raw_items:
                return FlushResult(success=True)

            await self._checkpoint("normalize")
            events, dropped = normalize_batch(raw_items)

            if not events:
                await self.queue.trim(len(raw_items))
                return FlushResult(success=True, dropped_count=dropped)

            await self._checkpoint("persist")
            first_by_visitor = compute_durations(events)
            async with self.session_factory() as session:
                await backfill_previous_durations(session, first_by_visitor)
                flushed = await persist_events(session, events)
                await session.commit()

            await self._checkpoint("view count sync")
            synced = await sync_view_counts(self.queue, self.session_factory)

            await self._checkpoint("archive")
            archive = await archive_page_views(self.session_factory, self.retention)

            await self._checkpoint("trim")
            await self.queue.trim(len(raw_items))

            logger.info(
                "✅ Flushed %d page view(s) (%d dropped, %d view counts synced)",
                flushed, dropped, synced,
            )
            return FlushResult(
                success=True,
                flushed_count=flushed,
                dropped_count=dropped,
                synced_view_count_rows=synced,
                **archive,
            )
        except FlushAbortedError as e:
            logger.warning("⚠️  %s — queue left untouched", e)
            return FlushResult(success=False)
        except Exception as e:
            logger.error("❌ Flushing page views failed: %s", e)
            return FlushResult(success=False)
        finally:
            self._abort_requested = False

    async def flush_with_lock(self) -> FlushResult:
        """Flush unless another run holds the lease; then report ``skipped``."""
        try:
            token = await self.queue.acquire_lock()
        except Exception as e:
            logger.error("❌ Could not reach Redis for the flush lock: %s", e)
            return FlushResult(success=False)

        if token is None:
            logger.info("⏭️  Another flush is running — skipping this one")
            return FlushResult(success=True, skipped=True)

        self._lease_token = token
        try:
            return await self.flush()
        finally:
            self._lease_token = None
            await self.queue.release_lock(token)
