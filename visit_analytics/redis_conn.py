"""
Visit Analytics — shared asyncio Redis client.
"""

import redis.asyncio as aioredis

from visit_analytics.config import settings
from visit_analytics.services.event_queue import create_redis

_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency — the process-wide Redis client (created on first use)."""
    global _client
    if _client is None:
        _client = create_redis(settings.redis_url, settings.redis_socket_timeout)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
