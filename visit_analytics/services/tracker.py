"""
Tracker — the ingest side of the queue.

Builds the queued page view from the client payload plus what only the
server knows (IP, user agent, time of the request) and hands it to Redis,
which appends it to the queue and bumps the per-path view counter in one
script call.
"""

import logging
from datetime import datetime, timezone

from visit_analytics.schemas import TrackPageView
from visit_analytics.services.event_queue import EventQueue

logger = logging.getLogger("analytics.tracker")


def build_queued_event(
    params: TrackPageView,
    ip_address: str,
    user_agent: str | None,
    now: datetime | None = None,
) -> dict:
    """The camelCase JSON shape the flush pipeline expects on the queue."""
    event = params.model_dump(by_alias=True)
    event.update(
        {
            "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
            "ipAddress": ip_address,
            "userAgent": user_agent or None,
        }
    )
    return event


async def track_page_view(
    queue: EventQueue,
    params: TrackPageView,
    ip_address: str,
    user_agent: str | None,
) -> int:
    """Queue one page view. Returns the queue length after the push."""
    event = build_queued_event(params, ip_address, user_agent)
    length = await queue.push(event)
    logger.debug("Queued page view %s for %s (queue length %d)", params.path, params.visitor_id, length)
    return length
