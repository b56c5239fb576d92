"""Tests for session/today/lifetime aggregation."""

from datetime import datetime, timedelta, timezone

import pytest

from tt_timing.errors import PersistenceUnavailable

JST = timezone(timedelta(hours=9))


def break_log(monkeypatch, engine) -> None:
    """Make every log read through the engine fail."""

    async def run(method, *args, **kwargs):
        raise PersistenceUnavailable("disk I/O error")

    monkeypatch.setattr(engine._gateway, "run", run)


class TestRecompute:
    """Tests for aggregates read from the log."""

    @pytest.mark.asyncio
    async def test_empty_item(self, engine):
        """Verify an item without intervals has zero totals."""
        aggregate = await engine.get_aggregate("task-1")
        assert aggregate.today_total_ms == 0
        assert aggregate.lifetime_total_ms == 0
        assert aggregate.session_count == 0
        assert aggregate.day_key == "2025-01-25"

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(self, engine, clock):
        """Verify recomputing without changes yields the same aggregate."""
        await engine.start("task-1")
        clock.advance(minutes=10)
        await engine.stop()
        first = await engine.get_aggregate("task-1")
        second = await engine.get_aggregate("task-1")
        assert first == second
        assert first.lifetime_total_ms == 10 * 60_000
        assert first.session_count == 1

    @pytest.mark.asyncio
    async def test_includes_live_segment(self, engine, clock):
        """Verify the running segment counts toward every total."""
        await engine.start("task-1")
        clock.advance(minutes=5)
        aggregate = await engine.get_aggregate("task-1")
        assert aggregate.session_elapsed_ms == 5 * 60_000
        assert aggregate.today_total_ms == 5 * 60_000
        assert aggregate.lifetime_total_ms == 5 * 60_000

    @pytest.mark.asyncio
    async def test_session_elapsed_spans_pauses(self, engine, clock):
        """Verify session time sums the segments around a pause."""
        await engine.start("task-1")
        clock.advance(seconds=30)
        await engine.pause()
        clock.advance(seconds=60)
        await engine.resume()
        clock.advance(seconds=15)
        aggregate = await engine.get_aggregate("task-1")
        assert aggregate.session_elapsed_ms == 45_000

    @pytest.mark.asyncio
    async def test_other_items_unaffected_by_running_timer(self, engine, clock):
        """Verify a running timer only adds to its own item."""
        await engine.start("task-1")
        clock.advance(minutes=5)
        aggregate = await engine.get_aggregate("task-2")
        assert aggregate.session_elapsed_ms == 0
        assert aggregate.lifetime_total_ms == 0

    @pytest.mark.asyncio
    async def test_previous_sessions_sum_into_lifetime(self, engine, clock):
        """Verify lifetime sums finished sessions plus the live one."""
        for minutes in (5, 7):
            await engine.start("task-1")
            clock.advance(minutes=minutes)
            await engine.stop()
        await engine.start("task-1")
        clock.advance(minutes=1)
        aggregate = await engine.get_aggregate("task-1")
        assert aggregate.session_elapsed_ms == 60_000
        assert aggregate.lifetime_total_ms == 13 * 60_000
        assert aggregate.session_count == 2


class TestDayAttribution:
    """Tests for attributing intervals to the local day they started on."""

    @pytest.mark.asyncio
    async def test_interval_across_midnight_counts_for_start_day(self, engine, clock):
        """Verify a run crossing midnight counts for the day it started."""
        clock.set(datetime(2025, 1, 25, 23, 59, 59, tzinfo=JST))
        await engine.start("task-1")
        clock.advance(seconds=2)
        await engine.stop()

        next_day = await engine.get_aggregate("task-1")
        assert next_day.day_key == "2025-01-26"
        assert next_day.today_total_ms == 0
        assert next_day.lifetime_total_ms == 2_000

        clock.set(datetime(2025, 1, 25, 23, 0, tzinfo=JST))
        start_day = await engine.get_aggregate("task-1")
        assert start_day.today_total_ms == 2_000

    @pytest.mark.asyncio
    async def test_live_segment_from_yesterday_not_today(self, engine, clock):
        """Verify a live segment started yesterday is not today's time."""
        clock.set(datetime(2025, 1, 25, 23, 59, tzinfo=JST))
        await engine.start("task-1")
        clock.advance(minutes=2)
        aggregate = await engine.get_aggregate("task-1")
        assert aggregate.today_total_ms == 0
        assert aggregate.lifetime_total_ms == 120_000


class TestTick:
    """Tests for the I/O-free display refresh."""

    @pytest.mark.asyncio
    async def test_tick_advances_live_segment(self, monkeypatch, engine, clock):
        """Verify tick extends the cached totals without reading the log."""
        await engine.start("task-1")
        await engine.get_aggregate("task-1")
        break_log(monkeypatch, engine)
        clock.advance(seconds=42)
        aggregate = engine.tick("task-1")
        assert aggregate.session_elapsed_ms == 42_000
        assert aggregate.today_total_ms == 42_000
        assert not aggregate.stale

    def test_tick_without_snapshot(self, engine):
        """Verify tick returns None before any recompute."""
        assert engine.tick("task-1") is None

    @pytest.mark.asyncio
    async def test_tick_after_day_rollover(self, engine, clock):
        """Verify tick refuses a snapshot from a previous day."""
        await engine.get_aggregate("task-1")
        clock.advance(days=1)
        assert engine.tick("task-1") is None


class TestStaleness:
    """Tests for serving the last known aggregate on failed reads."""

    @pytest.mark.asyncio
    async def test_failed_read_serves_stale_cache(self, monkeypatch, engine, clock):
        """Verify a failed read returns the cached aggregate marked stale."""
        await engine.start("task-1")
        clock.advance(minutes=3)
        await engine.stop()
        fresh = await engine.get_aggregate("task-1")
        break_log(monkeypatch, engine)
        stale = await engine.get_aggregate("task-1")
        assert stale.stale
        assert stale.lifetime_total_ms == fresh.lifetime_total_ms

    @pytest.mark.asyncio
    async def test_failed_read_without_cache_raises(self, monkeypatch, engine):
        """Verify a failed read without a cache raises."""
        break_log(monkeypatch, engine)
        with pytest.raises(PersistenceUnavailable):
            await engine.get_aggregate("task-1")


def record(engine, work_item_id: str, start: datetime, minutes: int, session_id: str) -> None:
    """Helper to write one closed interval straight into the log."""
    interval = engine.log.open_interval(work_item_id, start, session_id=session_id)
    engine.log.close_interval(interval.id, start + timedelta(minutes=minutes))


class TestActivityMatrix:
    """Tests for the weekday/hour heatmap."""

    @pytest.fixture
    def seeded(self, engine):
        # Saturday 2025-01-25 09:10 and 09:40 JST
        record(engine, "task-1", datetime(2025, 1, 25, 9, 10, tzinfo=JST), 30, "sat-1")
        record(engine, "task-1", datetime(2025, 1, 25, 9, 40, tzinfo=JST), 10, "sat-2")
        # Sunday 01:30 JST is still Saturday in UTC
        record(engine, "task-1", datetime(2025, 1, 19, 1, 30, tzinfo=JST), 60, "sun")
        record(engine, "task-2", datetime(2025, 1, 24, 8, 0, tzinfo=JST), 20, "fri")
        # Older than 30 days
        record(engine, "task-1", datetime(2024, 12, 20, 10, 0, tzinfo=JST), 45, "old")
        return engine

    @pytest.mark.asyncio
    async def test_buckets_by_local_weekday_and_hour(self, seeded):
        """Verify intervals land in the JST weekday and hour they started."""
        matrix = await seeded.get_activity_matrix("task-1")
        saturday = matrix.cell(5, 9)
        assert (saturday.count, saturday.total_ms) == (2, 40 * 60_000)
        sunday = matrix.cell(6, 1)
        assert (sunday.count, sunday.total_ms) == (1, 60 * 60_000)
        assert matrix.cell(5, 16).count == 0
        assert matrix.total_count == 3
        assert matrix.total_ms == 100 * 60_000

    @pytest.mark.asyncio
    async def test_intensity_mixes_count_and_duration(self, seeded):
        """Verify intensity weights relative count 0.6 and relative duration 0.4."""
        matrix = await seeded.get_activity_matrix("task-1")
        assert matrix.cell(5, 9).intensity == pytest.approx(0.6 + 0.4 * 40 / 60)
        assert matrix.cell(6, 1).intensity == pytest.approx(0.6 * 0.5 + 0.4)
        assert max(cell.intensity for row in matrix.cells for cell in row) <= 1.0

    @pytest.mark.asyncio
    async def test_window_excludes_older_intervals(self, seeded, clock):
        """Verify only intervals started within the window are counted."""
        matrix = await seeded.get_activity_matrix("task-1", days=30)
        assert matrix.until == clock()
        assert matrix.since == clock() - timedelta(days=30)
        assert matrix.cell(4, 10).count == 0

        short = await seeded.get_activity_matrix("task-1", days=3)
        assert short.total_count == 2

    @pytest.mark.asyncio
    async def test_all_items(self, seeded):
        """Verify a None work item covers every item."""
        matrix = await seeded.get_activity_matrix()
        assert matrix.work_item_id is None
        assert matrix.total_count == 4
        assert matrix.cell(4, 8).total_ms == 20 * 60_000

    @pytest.mark.asyncio
    async def test_open_interval_not_counted(self, engine, clock):
        """Verify the running segment stays out of the heatmap."""
        await engine.start("task-1")
        clock.advance(minutes=5)
        matrix = await engine.get_activity_matrix("task-1")
        assert matrix.total_count == 0
        assert len(matrix.cells) == 7
        assert all(len(row) == 24 for row in matrix.cells)
        assert all(cell.intensity == 0 for row in matrix.cells for cell in row)

    @pytest.mark.asyncio
    async def test_days_must_be_positive(self, engine):
        """Verify a window shorter than one day is refused."""
        with pytest.raises(ValueError):
            await engine.get_activity_matrix("task-1", days=0)
