"""
Event normalizer — raw queue payloads → ``NormalizedEvent``.

Fails closed: anything that is not valid JSON, lacks ``path`` /
``ipAddress`` / ``visitorId``, or carries an unparsable timestamp is
dropped. Malformed events are never retried since they can never become
valid; the caller still trims them from the queue.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable

from pydantic import ValidationError

from visit_analytics.schemas import NormalizedEvent

logger = logging.getLogger("analytics.normalizer")


def normalize_event(raw: str | bytes | dict) -> NormalizedEvent | None:
    """Decode and validate one payload. Returns None for anything malformed."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None

    if not isinstance(raw, dict):
        return None

    try:
        return NormalizedEvent.model_validate(raw)
    except ValidationError as e:
        logger.debug("Dropping malformed event: %s", e.errors(include_url=False))
        return None


def normalize_batch(raw_items: Iterable[str | bytes | dict]) -> tuple[list[NormalizedEvent], int]:
    """Normalize a drained batch, preserving queue order.

    Returns ``(events, dropped_count)``.
    """
    events: list[NormalizedEvent] = []
    dropped = 0
    for raw in raw_items:
        event = normalize_event(raw)
        if event is None:
            dropped += 1
        else:
            events.append(event)

    if dropped:
        logger.warning("⚠️  Dropped %d malformed event(s) from batch", dropped)
    return events, dropped
