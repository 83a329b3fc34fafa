"""
Redis event queue — the shared FIFO between the tracker and the flush pipeline.

Page views are appended to a Redis list and counted in a Redis hash. The
flush pipeline reads the head of the list without removing it and trims it
in a second call once everything downstream has succeeded, so a crash in
between re-delivers the same batch (persistence skips duplicates).

Every Redis call goes through :func:`with_retry`: two retries with a short
fixed back-off, then :class:`QueueUnavailableError`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger("analytics.queue")

T = TypeVar("T")

# ── tunables ──
MAX_RETRIES = 2
RETRY_BACKOFF_S = 0.1

# Append the event and bump its path counter in one round-trip; returns queue length.
TRACK_PAGE_VIEW_SCRIPT = """
local length = redis.call('RPUSH', KEYS[1], ARGV[1])
redis.call('HINCRBY', KEYS[2], ARGV[2], 1)
return length
"""

# Only the holder of the lease may delete it.
RELEASE_LOCK_SCRIPT = (
    "if redis.call('get', KEYS[1]) == ARGV[1] then "
    "return redis.call('del', KEYS[1]) end return 0"
)

# Push the lease expiry out again, but only while we still hold it.
RENEW_LOCK_SCRIPT = (
    "if redis.call('get', KEYS[1]) == ARGV[1] then "
    "return redis.call('pexpire', KEYS[1], ARGV[2]) end return 0"
)


class QueueUnavailableError(RuntimeError):
    """Redis stayed unreachable after every retry."""


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = MAX_RETRIES,
    label: str = "redis",
) -> T:
    """Run ``operation``, retrying transient Redis failures ``retries`` times."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            if attempt > retries:
                raise QueueUnavailableError(f"{label} failed after {attempt} attempts: {e}") from e
            logger.warning(
                "⚠️  %s failed (attempt %d/%d): %s — retrying in %.1fs",
                label, attempt, retries + 1, e, RETRY_BACKOFF_S,
            )
            await asyncio.sleep(RETRY_BACKOFF_S)


def create_redis(url: str, socket_timeout: float | None = None) -> aioredis.Redis:
    """Build an asyncio Redis client that returns ``str`` values.

    Undecodable bytes become U+FFFD instead of raising, so a corrupt queue
    item reaches the normalizer and is dropped there.
    """
    return aioredis.from_url(
        url,
        decode_responses=True,
        encoding_errors="replace",
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


class EventQueue:
    """Queue, counter-hash and flush-lock operations on one Redis client."""

    def __init__(
        self,
        client: aioredis.Redis,
        queue_key: str,
        view_count_key: str,
        lock_key: str = "",
        lock_ttl_ms: int = 30_000,
    ):
        self.client = client
        self.queue_key = queue_key
        self.view_count_key = view_count_key
        self.lock_key = lock_key
        self.lock_ttl_ms = lock_ttl_ms

    # ── queue ────────────────────────────────────────────

    async def read_batch(self, size: int) -> list[str]:
        """Return up to ``size`` raw payloads from the head without removing them."""
        return await with_retry(
            lambda: self.client.lrange(self.queue_key, 0, size - 1),
            label=f"LRANGE {self.queue_key}",
        )

    async def trim(self, count: int) -> None:
        """Drop ``count`` items from the head of the queue."""
        if count <= 0:
            return
        await with_retry(
            lambda: self.client.ltrim(self.queue_key, count, -1),
            label=f"LTRIM {self.queue_key}",
        )
        logger.debug("Trimmed %d item(s) from %s", count, self.queue_key)

    async def length(self) -> int:
        return await with_retry(
            lambda: self.client.llen(self.queue_key),
            label=f"LLEN {self.queue_key}",
        )

    async def push(self, event: dict) -> int:
        """Enqueue one event and count a view for its path. Returns the new queue length."""
        payload = json.dumps(event, default=str)
        result = await with_retry(
            lambda: self.client.eval(
                TRACK_PAGE_VIEW_SCRIPT,
                2,
                self.queue_key,
                self.view_count_key,
                payload,
                event["path"],
            ),
            label="track page view",
        )
        return int(result)

    # ── counters ─────────────────────────────────────────

    async def view_counts(self) -> dict[str, int]:
        """The whole path → count hash."""
        raw = await with_retry(
            lambda: self.client.hgetall(self.view_count_key),
            label=f"HGETALL {self.view_count_key}",
        )
        counts: dict[str, int] = {}
        for path, value in (raw or {}).items():
            try:
                counts[path] = int(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-integer view count for %s: %r", path, value)
        return counts

    # ── flush lock ───────────────────────────────────────

    async def acquire_lock(self) -> str | None:
        """Take the flush lease. Returns the lease token, or None if someone else holds it."""
        token = uuid.uuid4().hex
        ok = await with_retry(
            lambda: self.client.set(self.lock_key, token, px=self.lock_ttl_ms, nx=True),
            label=f"SET NX {self.lock_key}",
        )
        return token if ok else None

    async def release_lock(self, token: str) -> None:
        try:
            await with_retry(
                lambda: self.client.eval(RELEASE_LOCK_SCRIPT, 1, self.lock_key, token),
                label=f"release {self.lock_key}",
            )
        except QueueUnavailableError as e:
            # The lease expires on its own after lock_ttl_ms
            logger.error("Failed to release flush lock: %s", e)

    async def extend_lock(self, token: str) -> bool:
        """Reset the lease TTL. False means the lease expired and someone else may hold it."""
        renewed = await with_retry(
            lambda: self.client.eval(RENEW_LOCK_SCRIPT, 1, self.lock_key, token, self.lock_ttl_ms),
            label=f"renew {self.lock_key}",
        )
        return bool(renewed)
