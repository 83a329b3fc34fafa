"""
Tests for stay-duration computation — in-batch and across flushes.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from visit_analytics.models.page_view import PageView
from visit_analytics.services.normalizer import normalize_event
from visit_analytics.services.session_duration import (
    as_utc,
    backfill_previous_durations,
    compute_durations,
    seconds_between,
)
from tests.conftest import BASE_TIME, make_payload, minutes


def _event(visitor_id="v1", at=BASE_TIME, path="/"):
    return normalize_event(make_payload(visitor_id=visitor_id, at=at, path=path))


async def _store(factory, visitor_id, at, duration=0, path="/old"):
    async with factory() as session:
        row = PageView(
            path=path,
            timestamp=at,
            visitor_id=visitor_id,
            ip_address="203.0.113.7",
            duration=duration,
        )
        session.add(row)
        await session.commit()
        return row.id


class TestHelpers:
    def test_as_utc_naive(self):
        assert as_utc(datetime(2024, 1, 1, 12)).tzinfo == timezone.utc

    def test_seconds_between_floors(self):
        start = BASE_TIME
        assert seconds_between(start, start + timedelta(seconds=2, milliseconds=999)) == 2

    def test_seconds_between_negative_clamped(self):
        assert seconds_between(BASE_TIME, BASE_TIME - timedelta(seconds=30)) == 0


class TestComputeDurations:
    def test_adjacent_pairs(self):
        events = [_event(at=BASE_TIME + minutes(5 * i)) for i in range(3)]
        compute_durations(events)
        assert [e.duration for e in events] == [300, 300, 0]

    def test_unsorted_input(self):
        late = _event(at=BASE_TIME + minutes(2))
        early = _event(at=BASE_TIME)
        middle = _event(at=BASE_TIME + timedelta(seconds=45))
        first = compute_durations([late, early, middle])

        assert early.duration == 45
        assert middle.duration == 75
        assert late.duration == 0
        assert first["v1"] is early

    def test_visitors_are_independent(self):
        a1 = _event("a", BASE_TIME)
        b1 = _event("b", BASE_TIME + minutes(1))
        a2 = _event("a", BASE_TIME + minutes(3))
        b2 = _event("b", BASE_TIME + minutes(10))
        first = compute_durations([a1, b1, a2, b2])

        assert a1.duration == 180
        assert b1.duration == 540
        assert a2.duration == 0
        assert b2.duration == 0
        assert set(first) == {"a", "b"}

    def test_equal_timestamps_keep_queue_order(self):
        x = _event(at=BASE_TIME, path="/x")
        y = _event(at=BASE_TIME, path="/y")
        z = _event(at=BASE_TIME + minutes(1), path="/z")
        first = compute_durations([x, y, z])

        assert first["v1"] is x
        assert x.duration == 0
        assert y.duration == 60

    def test_every_non_last_event_matches_successor_gap(self):
        offsets = [0, 7, 7.5, 31, 95, 96]
        events = [_event(at=BASE_TIME + minutes(m)) for m in reversed(offsets)]
        compute_durations(events)

        ordered = sorted(events, key=lambda e: e.timestamp)
        for current, nxt in zip(ordered, ordered[1:]):
            expected = int((nxt.timestamp - current.timestamp).total_seconds())
            assert current.duration == expected
        assert ordered[-1].duration == 0

    def test_empty_batch(self):
        assert compute_durations([]) == {}


class TestBackfill:
    async def test_patches_latest_stored_row(self, db_session_factory):
        older_id = await _store(db_session_factory, "v1", BASE_TIME - minutes(20))
        latest_id = await _store(db_session_factory, "v1", BASE_TIME - minutes(4))

        async with db_session_factory() as session:
            updated = await backfill_previous_durations(session, {"v1": _event(at=BASE_TIME)})
            await session.commit()

        assert updated == 1
        async with db_session_factory() as session:
            older = await session.get(PageView, older_id)
            latest = await session.get(PageView, latest_id)
            assert latest.duration == 240
            assert older.duration == 0

    async def test_does_not_clobber_known_duration(self, db_session_factory):
        row_id = await _store(db_session_factory, "v1", BASE_TIME - minutes(4), duration=12)

        async with db_session_factory() as session:
            updated = await backfill_previous_durations(session, {"v1": _event(at=BASE_TIME)})
            await session.commit()

        assert updated == 0
        async with db_session_factory() as session:
            assert (await session.get(PageView, row_id)).duration == 12

    async def test_skips_when_stored_row_is_not_earlier(self, db_session_factory):
        row_id = await _store(db_session_factory, "v1", BASE_TIME + minutes(1))

        async with db_session_factory() as session:
            updated = await backfill_previous_durations(session, {"v1": _event(at=BASE_TIME)})
            await session.commit()

        assert updated == 0
        async with db_session_factory() as session:
            assert (await session.get(PageView, row_id)).duration == 0

    async def test_unknown_visitor_is_noop(self, db_session_factory):
        await _store(db_session_factory, "someone-else", BASE_TIME - minutes(4))

        async with db_session_factory() as session:
            updated = await backfill_previous_durations(session, {"v1": _event(at=BASE_TIME)})

        assert updated == 0

    async def test_multiple_visitors(self, db_session_factory):
        await _store(db_session_factory, "a", BASE_TIME - minutes(1))
        await _store(db_session_factory, "b", BASE_TIME - minutes(2))

        first = {"a": _event("a", BASE_TIME), "b": _event("b", BASE_TIME)}
        async with db_session_factory() as session:
            updated = await backfill_previous_durations(session, first)
            await session.commit()

        assert updated == 2
        async with db_session_factory() as session:
            rows = (await session.execute(select(PageView).order_by(PageView.visitor_id))).scalars().all()
            assert [r.duration for r in rows] == [60, 120]

    async def test_empty_map(self, db_session_factory):
        async with db_session_factory() as session:
            assert await backfill_previous_durations(session, {}) == 0
