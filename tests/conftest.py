"""
Shared test fixtures — async DB, fake Redis, flush pipeline, FastAPI test client.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

import visit_analytics.models  # noqa: F401
from visit_analytics.database import Base, get_db
from visit_analytics.main import app
from visit_analytics.routes import get_flusher
from visit_analytics.services.analytics_archiver import RetentionConfig
from visit_analytics.services.analytics_flush import AnalyticsFlusher
from visit_analytics.services.event_queue import (
    EventQueue,
    RELEASE_LOCK_SCRIPT,
    RENEW_LOCK_SCRIPT,
    TRACK_PAGE_VIEW_SCRIPT,
)


# ── Test Database (SQLite in-memory) ────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

QUEUE_KEY = "test:analytics:event"
VIEW_COUNT_KEY = "test:view_count:all"
LOCK_KEY = "test:analytics:flush:lock"


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


# ── Fake Redis ──────────────────────────────────────────

class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls the pipeline makes.

    ``failures`` maps a method name to how many upcoming calls should raise
    a connection error.
    """

    def __init__(self):
        self.lists: dict[str, list[str]] = defaultdict(list)
        self.hashes: dict[str, dict[str, int]] = defaultdict(dict)
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.renewals = 0
        self.failures: dict[str, int] = {}
        self.calls: list[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        remaining = self.failures.get(name, 0)
        if remaining:
            self.failures[name] = remaining - 1
            raise RedisConnectionError(f"{name}: connection refused")

    @staticmethod
    def _slice(items: list, start: int, end: int) -> list:
        return items[start:] if end == -1 else items[start:end + 1]

    async def lrange(self, key, start, end):
        self._call("lrange")
        return list(self._slice(self.lists[key], start, end))

    async def ltrim(self, key, start, end):
        self._call("ltrim")
        self.lists[key] = self._slice(self.lists[key], start, end)
        return True

    async def llen(self, key):
        self._call("llen")
        return len(self.lists[key])

    async def rpush(self, key, *values):
        self._call("rpush")
        self.lists[key].extend(values)
        return len(self.lists[key])

    async def hincrby(self, key, field, amount=1):
        self._call("hincrby")
        self.hashes[key][field] = self.hashes[key].get(field, 0) + amount
        return self.hashes[key][field]

    async def hgetall(self, key):
        self._call("hgetall")
        return {k: str(v) for k, v in self.hashes[key].items()}

    async def set(self, key, value, px=None, nx=False):
        self._call("set")
        if nx and key in self.values:
            return None
        self.values[key] = value
        if px is not None:
            self.ttls[key] = px
        return True

    async def eval(self, script, numkeys, *args):
        self._call("eval")
        keys, argv = args[:numkeys], args[numkeys:]
        if script == TRACK_PAGE_VIEW_SCRIPT:
            self.lists[keys[0]].append(argv[0])
            self.hashes[keys[1]][argv[1]] = self.hashes[keys[1]].get(argv[1], 0) + 1
            return len(self.lists[keys[0]])
        if script == RELEASE_LOCK_SCRIPT:
            if self.values.get(keys[0]) == argv[0]:
                del self.values[keys[0]]
                return 1
            return 0
        if script == RENEW_LOCK_SCRIPT:
            if self.values.get(keys[0]) == argv[0]:
                self.ttls[keys[0]] = int(argv[1])
                self.renewals += 1
                return 1
            return 0
        raise NotImplementedError(script)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def event_queue(fake_redis):
    return EventQueue(
        fake_redis,
        queue_key=QUEUE_KEY,
        view_count_key=VIEW_COUNT_KEY,
        lock_key=LOCK_KEY,
        lock_ttl_ms=30_000,
    )


@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    monkeypatch.setattr("visit_analytics.services.event_queue.RETRY_BACKOFF_S", 0)


@pytest.fixture
def retention_config():
    return RetentionConfig(enabled=True, timezone="UTC", precision_days=30, retention_days=365)


@pytest.fixture
def flusher(event_queue, db_session_factory, retention_config):
    return AnalyticsFlusher(event_queue, db_session_factory, retention_config, batch_size=500)


# ── FastAPI test client ─────────────────────────────────

@pytest_asyncio.fixture()
async def client(db_session_factory, flusher):
    """FastAPI test client with test DB and fake Redis injected."""

    async def _override_get_db():
        async with db_session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_flusher] = lambda: flusher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Sample events ───────────────────────────────────────

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_payload(
    visitor_id: str = "v1",
    path: str = "/",
    at: datetime = BASE_TIME,
    **extra,
) -> dict:
    """A queued page view in wire (camelCase) shape."""
    payload = {
        "path": path,
        "timestamp": at.isoformat().replace("+00:00", "Z"),
        "visitorId": visitor_id,
        "ipAddress": "203.0.113.7",
        "userAgent": "Mozilla/5.0",
        "referer": None,
        "country": "DE",
        "region": "Berlin",
        "city": "Berlin",
        "browser": "Firefox",
        "browserVersion": "124.0",
        "os": "Linux",
        "osVersion": None,
        "deviceType": "desktop",
        "screenSize": "1920x1080",
        "language": "de-DE",
        "timezone": "Europe/Berlin",
    }
    payload.update(extra)
    return payload


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)
