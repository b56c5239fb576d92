"""Tests for the SQLite execution log."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from tt_timing.errors import AlreadyOpenElsewhere, InvalidRange, NotOpen, PersistenceUnavailable
from tt_timing.execution_log import ExecutionLog, LogScope
from tt_timing.models import Frequency, WorkItem, WorkItemKind

T0 = datetime(2025, 1, 25, 3, 0, tzinfo=timezone.utc)


def at(**kwargs) -> datetime:
    return T0 + timedelta(**kwargs)


def add_closed(log: ExecutionLog, work_item_id: str, start: datetime, minutes: float, session_id: str = "s1"):
    """Helper to record one closed interval."""
    interval = log.open_interval(work_item_id, start, session_id=session_id)
    return log.close_interval(interval.id, start + timedelta(minutes=minutes))


class TestExecutionLogCreation:
    """Tests for opening logs."""

    def test_open_creates_parent_directory(self, tmp_path):
        """Verify open creates missing parent directories."""
        path = tmp_path / "nested" / "dir" / "executions.db"
        with ExecutionLog.open(path) as log:
            log.upsert_work_item(WorkItem(id="a"))
        assert path.exists()

    def test_reopen_keeps_data(self, tmp_path):
        """Verify intervals survive closing and reopening the file."""
        path = tmp_path / "executions.db"
        with ExecutionLog.open(path) as log:
            add_closed(log, "a", T0, 5)
        with ExecutionLog.open(path) as log:
            assert log.sum_duration("a") == 5 * 60_000


class TestWorkItems:
    """Tests for the work item catalog."""

    def test_upsert_and_get(self, log):
        """Verify a stored work item reads back with its kind and frequency."""
        log.upsert_work_item(WorkItem(id="h", kind=WorkItemKind.HABIT, frequency=Frequency.WEEKLY))
        item = log.get_work_item("h")
        assert item is not None
        assert item.is_habit
        assert item.frequency is Frequency.WEEKLY

    def test_upsert_updates_existing(self, log):
        """Verify upserting an existing id replaces it."""
        log.upsert_work_item(WorkItem(id="a", title="old"))
        log.upsert_work_item(WorkItem(id="a", title="new"))
        assert log.get_work_item("a").title == "new"
        assert len(log.list_work_items()) == 1

    def test_get_unknown_returns_none(self, log):
        """Verify an unknown id returns None."""
        assert log.get_work_item("missing") is None

    def test_list_filters_by_kind(self, log):
        """Verify list_work_items filters by kind and habits default to daily."""
        log.upsert_work_item(WorkItem(id="t"))
        log.upsert_work_item(WorkItem(id="h", kind=WorkItemKind.HABIT))
        habits = log.list_work_items(kind=WorkItemKind.HABIT)
        assert [item.id for item in habits] == ["h"]
        assert habits[0].frequency is Frequency.DAILY

    def test_task_with_frequency_rejected(self):
        """Verify a task cannot carry a frequency."""
        with pytest.raises(ValueError):
            WorkItem(id="t", kind=WorkItemKind.TASK, frequency=Frequency.DAILY)


class TestIntervals:
    """Tests for opening and closing intervals."""

    def test_open_and_close(self, log):
        """Verify closing an interval records its duration."""
        interval = log.open_interval("a", T0, session_id="s1")
        assert interval.is_open
        assert log.get_open_interval() == interval
        closed = log.close_interval(interval.id, at(seconds=90))
        assert closed.duration_ms == 90_000
        assert log.get_open_interval() is None

    def test_single_open_interval_across_items(self, log):
        """Verify a second open interval on another item is refused."""
        log.open_interval("a", T0, session_id="s1")
        with pytest.raises(AlreadyOpenElsewhere) as exc_info:
            log.open_interval("b", at(seconds=1), session_id="s2")
        assert exc_info.value.work_item_id == "a"

    def test_open_twice_same_item_raises(self, log):
        """Verify the same item cannot hold two open intervals."""
        log.open_interval("a", T0, session_id="s1")
        with pytest.raises(AlreadyOpenElsewhere):
            log.open_interval("a", at(seconds=1), session_id="s1")

    def test_schema_enforces_single_open(self, log):
        """Verify the partial unique index rejects a second open row written directly."""
        log.open_interval("a", T0, session_id="s1")
        with pytest.raises(sqlite3.IntegrityError):
            log._conn.execute(
                "INSERT INTO intervals (work_item_id, session_id, started_at) VALUES ('b', 's2', ?)",
                ("2025-01-25T03:00:01.000000Z",),
            )

    def test_close_before_start_raises_invalid_range(self, log):
        """Verify an end before the start raises and leaves the interval open."""
        interval = log.open_interval("a", T0, session_id="s1")
        with pytest.raises(InvalidRange):
            log.close_interval(interval.id, at(seconds=-5))
        assert log.get_open_interval() is not None

    def test_close_closed_interval_raises(self, log):
        """Verify closing an already closed interval raises NotOpen."""
        closed = add_closed(log, "a", T0, 1)
        with pytest.raises(NotOpen):
            log.close_interval(closed.id, at(minutes=2))

    def test_discard_only_open(self, log):
        """Verify discard removes open intervals but never closed ones."""
        closed = add_closed(log, "a", T0, 1)
        assert log.discard(closed.id) is False
        interval = log.open_interval("a", at(minutes=5), session_id="s2")
        assert log.discard(interval.id) is True
        assert log.list_intervals("a") == [closed]

    def test_list_intervals_filters(self, log):
        """Verify list_intervals and sum_duration honor their filters."""
        add_closed(log, "a", T0, 10, session_id="s1")
        add_closed(log, "a", at(hours=1), 20, session_id="s2")
        add_closed(log, "b", at(hours=2), 30, session_id="s3")
        assert len(log.list_intervals("a")) == 2
        assert len(log.list_intervals("a", started_from=at(minutes=30))) == 1
        assert len(log.list_intervals("a", started_before=at(minutes=30))) == 1
        assert log.sum_duration("a", session_id="s2") == 20 * 60_000

    def test_list_intervals_across_items(self, log):
        """Verify a None work item lists intervals of every item."""
        add_closed(log, "a", T0, 10, session_id="s1")
        add_closed(log, "b", at(hours=1), 20, session_id="s2")
        open_b = log.open_interval("b", at(hours=2), session_id="s3")
        assert {i.work_item_id for i in log.list_intervals(None)} == {"a", "b"}
        closed = log.list_intervals(None, closed_only=True)
        assert len(closed) == 2
        assert open_b not in closed

    def test_totals_attribute_by_start(self, log):
        """Verify an interval crossing midnight counts toward the day it started."""
        day_start = datetime(2025, 1, 24, 15, 0, tzinfo=timezone.utc)
        day_end = day_start + timedelta(days=1)
        add_closed(log, "a", day_start - timedelta(seconds=1), 1, session_id="late")
        add_closed(log, "a", day_start + timedelta(hours=1), 10, session_id="early")
        totals = log.totals("a", day_start=day_start, day_end=day_end, session_id="early")
        assert totals.today_ms == 10 * 60_000
        assert totals.lifetime_ms == 11 * 60_000
        assert totals.session_ms == 10 * 60_000
        assert totals.session_count == 2


class TestDeleteForScope:
    """Tests for scoped deletion."""

    def test_delete_today_keeps_other_days(self, log):
        """Verify a today deletion leaves earlier days intact."""
        day = (at(hours=-3), at(hours=21))
        add_closed(log, "a", at(days=-2), 40, session_id="d2")
        add_closed(log, "a", at(days=-1), 20, session_id="d1")
        add_closed(log, "a", T0, 10, session_id="d0")
        deleted = log.delete_for_scope("a", LogScope.TODAY, day_range=day)
        assert deleted == 1
        assert log.sum_duration("a") == 60 * 60_000

    def test_delete_all_removes_completions(self, log):
        """Verify deleting everything also drops completion markers."""
        add_closed(log, "a", T0, 10)
        log.record_completion("a", T0, day_key="2025-01-25")
        log.delete_for_scope("a", LogScope.ALL)
        assert log.list_intervals("a") == []
        assert log.completion_times("a") == []

    def test_delete_never_touches_open_interval(self, log):
        """Verify scoped deletion skips the open interval."""
        interval = log.open_interval("a", T0, session_id="s1")
        log.delete_for_scope("a", LogScope.ALL)
        assert log.get_open_interval() == interval

    def test_delete_today_requires_range(self, log):
        """Verify a today deletion without a day range is refused."""
        with pytest.raises(ValueError):
            log.delete_for_scope("a", LogScope.TODAY)


class TestActiveSession:
    """Tests for the active session slot."""

    def test_begin_session_opens_interval(self, log):
        """Verify begin_session claims the slot and opens the first interval."""
        interval = log.begin_session("a", "s1", T0)
        session = log.get_active_session()
        assert session.work_item_id == "a"
        assert session.session_id == "s1"
        assert not session.paused
        assert log.get_open_interval() == interval

    def test_second_session_rejected_atomically(self, log):
        """Verify a second session fails without writing an interval."""
        log.begin_session("a", "s1", T0)
        with pytest.raises(AlreadyOpenElsewhere) as exc_info:
            log.begin_session("b", "s2", at(seconds=1))
        assert exc_info.value.work_item_id == "a"
        assert len(log.list_intervals("b")) == 0

    def test_pause_resume_end(self, log):
        """Verify paused time is excluded from the session total."""
        log.begin_session("a", "s1", T0)
        log.pause_session("s1", at(seconds=30))
        assert log.get_active_session().paused
        assert log.get_open_interval() is None
        log.resume_session("s1", at(seconds=90))
        log.end_session("s1", at(seconds=150))
        assert log.get_active_session() is None
        assert log.sum_duration("a", session_id="s1") == 90_000

    def test_wrong_session_raises_not_open(self, log):
        """Verify transitions on another session id raise NotOpen."""
        log.begin_session("a", "s1", T0)
        with pytest.raises(NotOpen):
            log.pause_session("other", at(seconds=1))

    def test_abandon_deletes_every_session_segment(self, log):
        """Verify abandon drops the closed and open segments of the session."""
        add_closed(log, "a", at(hours=-2), 10, session_id="earlier")
        log.begin_session("a", "s1", T0)
        log.pause_session("s1", at(seconds=30))
        log.resume_session("s1", at(seconds=60))
        assert log.abandon_session("s1") == 2
        assert log.get_active_session() is None
        assert log.get_open_interval() is None
        assert log.sum_duration("a", session_id="s1") == 0
        assert log.sum_duration("a") == 10 * 60_000

    def test_abandon_without_session_raises(self, log):
        """Verify abandoning when no session is active raises NotOpen."""
        with pytest.raises(NotOpen):
            log.abandon_session("s1")

    def test_force_release_closes_orphans(self, log):
        """Verify force_release closes the orphaned interval and frees the slot."""
        log.begin_session("a", "s1", T0)
        released = log.force_release(at(minutes=5))
        assert released.work_item_id == "a"
        assert log.get_active_session() is None
        assert log.sum_duration("a") == 5 * 60_000

    def test_force_release_discards_future_interval(self, log):
        """Verify an orphan starting after now is discarded."""
        log.open_interval("a", at(minutes=5), session_id="s1")
        assert log.force_release(T0) is None
        assert log.list_intervals("a") == []


class TestCompletions:
    """Tests for explicit habit completions."""

    def test_one_completion_per_day(self, log):
        """Verify only the first completion of a day is kept."""
        assert log.record_completion("h", T0, day_key="2025-01-25") is True
        assert log.record_completion("h", at(hours=1), day_key="2025-01-25") is False
        assert log.completion_times("h") == [T0]

    def test_remove_completion(self, log):
        """Verify removing a completion reports whether one existed."""
        log.record_completion("h", T0, day_key="2025-01-25")
        assert log.remove_completion("h", day_key="2025-01-25") is True
        assert log.remove_completion("h", day_key="2025-01-25") is False


class TestPersistenceFailures:
    """Tests for error translation."""

    def test_closed_connection_raises_persistence_unavailable(self):
        """Verify sqlite errors surface as PersistenceUnavailable."""
        log = ExecutionLog.open_in_memory()
        log.close()
        with pytest.raises(PersistenceUnavailable):
            log.get_open_interval()
