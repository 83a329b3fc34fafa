"""
API Routes — page view tracking, flush trigger, archive and view-count reads, health.
"""

import logging
from datetime import date, datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visit_analytics.database import get_db
from visit_analytics.models.page_view import PageViewArchive, ViewCountCache
from visit_analytics.redis_conn import get_redis
from visit_analytics.schemas import (
    ArchiveDay,
    FlushResult,
    HealthResponse,
    TrackPageView,
    TrackResponse,
    ViewCountEntry,
)
from visit_analytics.services.analytics_flush import AnalyticsFlusher
from visit_analytics.services.event_queue import EventQueue, QueueUnavailableError
from visit_analytics.services.tracker import track_page_view

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

router = APIRouter()


# ── Dependencies ────────────────────────────────────────

def get_flusher(redis_client=Depends(get_redis)) -> AnalyticsFlusher:
    return AnalyticsFlusher.from_settings(redis_client)


def get_event_queue(flusher: AnalyticsFlusher = Depends(get_flusher)) -> EventQueue:
    return flusher.queue


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health():
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
    )


# ── Tracking ────────────────────────────────────────────

@router.post("/analytics/track", response_model=TrackResponse, tags=["analytics"])
async def track(
    params: TrackPageView,
    request: Request,
    background_tasks: BackgroundTasks,
    queue: EventQueue = Depends(get_event_queue),
    flusher: AnalyticsFlusher = Depends(get_flusher),
):
    try:
        length = await track_page_view(
            queue,
            params,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except QueueUnavailableError as e:
        # Tracking is best-effort; the visitor never sees this
        logger.error("Tracking page view failed: %s", e)
        return TrackResponse(queued=False)

    flush_scheduled = length >= flusher.batch_size
    if flush_scheduled:
        background_tasks.add_task(flusher.flush_with_lock)

    return TrackResponse(queued=True, queue_length=length, flush_scheduled=flush_scheduled)


# ── Flush ───────────────────────────────────────────────

@router.post("/analytics/flush", response_model=FlushResult, tags=["analytics"])
async def flush(flusher: AnalyticsFlusher = Depends(get_flusher)):
    return await flusher.flush_with_lock()


# ── Reads ───────────────────────────────────────────────

@router.get("/analytics/archives", response_model=list[ArchiveDay], tags=["analytics"])
async def list_archives(
    start: date | None = Query(None),
    end: date | None = Query(None),
    session: AsyncSession = Depends(get_db),
):
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    stmt = select(PageViewArchive).order_by(PageViewArchive.date)
    if start:
        stmt = stmt.where(PageViewArchive.date >= start)
    if end:
        stmt = stmt.where(PageViewArchive.date <= end)

    rows = (await session.execute(stmt)).scalars().all()
    return [ArchiveDay(**row.to_dict()) for row in rows]


@router.get("/analytics/view-counts", response_model=list[ViewCountEntry], tags=["analytics"])
async def list_view_counts(
    post_slug: str | None = Query(None, alias="postSlug"),
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db),
):
    stmt = select(ViewCountCache).order_by(ViewCountCache.cached_count.desc()).limit(limit)
    if post_slug:
        stmt = stmt.where(ViewCountCache.post_slug == post_slug)
    rows = (await session.execute(stmt)).scalars().all()
    return [ViewCountEntry.model_validate(row) for row in rows]
