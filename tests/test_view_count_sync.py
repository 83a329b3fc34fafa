"""
Tests for the view count sync — Redis counter hash → view_count_cache.
"""

from unittest.mock import AsyncMock

from sqlalchemy import select

from visit_analytics.models.page_view import ViewCountCache
from visit_analytics.services.view_count_sync import post_slug_for, sync_view_counts
from tests.conftest import VIEW_COUNT_KEY


async def _rows(factory) -> dict:
    async with factory() as session:
        rows = (await session.execute(select(ViewCountCache))).scalars().all()
        return {r.path: r for r in rows}


class TestPostSlug:
    def test_post_path(self):
        assert post_slug_for("/posts/hello-world") == "hello-world"

    def test_non_post_paths(self):
        assert post_slug_for("/") is None
        assert post_slug_for("/posts") is None
        assert post_slug_for("/posts/a/comments") is None
        assert post_slug_for("/about/posts/x") is None


class TestSyncViewCounts:
    async def test_inserts_rows(self, event_queue, fake_redis, db_session_factory):
        fake_redis.hashes[VIEW_COUNT_KEY] = {"/": 42, "/posts/hello": 7}

        synced = await sync_view_counts(event_queue, db_session_factory)

        assert synced == 2
        rows = await _rows(db_session_factory)
        assert rows["/"].cached_count == 42
        assert rows["/"].post_slug is None
        assert rows["/posts/hello"].cached_count == 7
        assert rows["/posts/hello"].post_slug == "hello"

    async def test_last_write_wins(self, event_queue, fake_redis, db_session_factory):
        fake_redis.hashes[VIEW_COUNT_KEY] = {"/posts/hello": 7}
        await sync_view_counts(event_queue, db_session_factory)

        fake_redis.hashes[VIEW_COUNT_KEY] = {"/posts/hello": 9}
        synced = await sync_view_counts(event_queue, db_session_factory)

        assert synced == 1
        rows = await _rows(db_session_factory)
        assert len(rows) == 1
        assert rows["/posts/hello"].cached_count == 9
        assert rows["/posts/hello"].post_slug == "hello"

    async def test_rerun_is_idempotent(self, event_queue, fake_redis, db_session_factory):
        fake_redis.hashes[VIEW_COUNT_KEY] = {"/": 1, "/a": 2, "/b": 3}
        await sync_view_counts(event_queue, db_session_factory)
        await sync_view_counts(event_queue, db_session_factory)

        rows = await _rows(db_session_factory)
        assert {p: r.cached_count for p, r in rows.items()} == {"/": 1, "/a": 2, "/b": 3}

    async def test_empty_hash(self, event_queue, db_session_factory):
        assert await sync_view_counts(event_queue, db_session_factory) == 0

    async def test_redis_down_reports_zero(self, event_queue, fake_redis, db_session_factory):
        fake_redis.hashes[VIEW_COUNT_KEY] = {"/": 1}
        fake_redis.failures["hgetall"] = 10

        assert await sync_view_counts(event_queue, db_session_factory) == 0
        assert await _rows(db_session_factory) == {}

    async def test_db_failure_reports_zero(self, event_queue, fake_redis):
        fake_redis.hashes[VIEW_COUNT_KEY] = {"/": 1}

        broken_session = AsyncMock()
        broken_session.__aenter__.side_effect = Exception("DB down")
        broken_factory = lambda: broken_session  # noqa: E731

        assert await sync_view_counts(event_queue, broken_factory) == 0
