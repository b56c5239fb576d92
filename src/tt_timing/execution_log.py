"""SQLite execution log: the persisted source of truth for all totals."""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple, TypeVar

from tt_timing.errors import (
    AlreadyOpenElsewhere,
    InvalidRange,
    NotOpen,
    PersistenceUnavailable,
)
from tt_timing.models import (
    ActiveSessionRecord,
    ExecutionInterval,
    WorkItem,
    WorkItemKind,
    format_timestamp,
    parse_timestamp,
    to_utc,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL DEFAULT 'task',
    frequency TEXT,
    title TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS intervals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    device_type TEXT NOT NULL DEFAULT 'desktop',
    CHECK (ended_at IS NULL OR ended_at >= started_at)
);

CREATE TABLE IF NOT EXISTS active_session (
    slot INTEGER PRIMARY KEY CHECK (slot = 1),
    work_item_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    paused INTEGER NOT NULL DEFAULT 0,
    device_type TEXT NOT NULL DEFAULT 'desktop'
);

CREATE TABLE IF NOT EXISTS completions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id TEXT NOT NULL,
    completed_at TEXT NOT NULL,
    day_key TEXT NOT NULL,
    UNIQUE (work_item_id, day_key)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_intervals_single_open
    ON intervals((ended_at IS NULL)) WHERE ended_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_intervals_item_started ON intervals(work_item_id, started_at);
CREATE INDEX IF NOT EXISTS idx_intervals_session ON intervals(session_id);
CREATE INDEX IF NOT EXISTS idx_completions_item ON completions(work_item_id, completed_at);
"""

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LogScope(str, Enum):
    TODAY = "today"
    ALL = "all"


class IntervalTotals(NamedTuple):
    """Closed-interval sums for one work item, read in a single pass."""

    today_ms: int
    lifetime_ms: int
    session_ms: int
    session_count: int


def _translate_errors(method: Callable[..., T]) -> Callable[..., T]:
    """Surface store failures as PersistenceUnavailable."""

    @functools.wraps(method)
    def wrapper(self: ExecutionLog, *args: Any, **kwargs: Any) -> T:
        try:
            return method(self, *args, **kwargs)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.warning("Execution log unavailable during %s: %s", method.__name__, e)
            raise PersistenceUnavailable(str(e)) from e

    return wrapper


def _row_to_interval(row: sqlite3.Row) -> ExecutionInterval:
    return ExecutionInterval(
        id=row["id"],
        work_item_id=row["work_item_id"],
        session_id=row["session_id"],
        started_at=parse_timestamp(row["started_at"]),
        ended_at=parse_timestamp(row["ended_at"]) if row["ended_at"] else None,
        device_type=row["device_type"],
    )


def _row_to_session(row: sqlite3.Row) -> ActiveSessionRecord:
    return ActiveSessionRecord(
        work_item_id=row["work_item_id"],
        session_id=row["session_id"],
        started_at=parse_timestamp(row["started_at"]),
        paused=bool(row["paused"]),
        device_type=row["device_type"],
    )


class ExecutionLog:
    """SQLite-backed log of execution intervals.

    At most one interval may be open across the whole store and at most one
    active session may exist; both are enforced by the schema as well as by
    the checks below. Not safe for concurrent use from several threads; async
    callers go through LogGateway, which owns a single worker thread.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def __enter__(self) -> ExecutionLog:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> ExecutionLog:
        """Open or create a log at the given path."""
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(sqlite3.connect(path, check_same_thread=False))

    @classmethod
    def open_in_memory(cls) -> ExecutionLog:
        """Create an in-memory log for testing."""
        return cls(sqlite3.connect(":memory:", check_same_thread=False))

    # ---- Work items ----

    @_translate_errors
    def upsert_work_item(self, item: WorkItem) -> None:
        now = format_timestamp(datetime.now(timezone.utc))
        self._conn.execute(
            """
            INSERT INTO work_items (id, kind, frequency, title, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                kind = excluded.kind,
                frequency = excluded.frequency,
                title = excluded.title,
                updated_at = excluded.updated_at
            """,
            (
                item.id,
                item.kind.value,
                item.frequency.value if item.frequency else None,
                item.title,
                now,
                now,
            ),
        )
        self._conn.commit()

    @_translate_errors
    def get_work_item(self, work_item_id: str) -> WorkItem | None:
        row = self._conn.execute(
            "SELECT id, kind, frequency, title FROM work_items WHERE id = ?",
            (work_item_id,),
        ).fetchone()
        if row is None:
            return None
        return WorkItem.model_validate(dict(row))

    @_translate_errors
    def list_work_items(self, *, kind: WorkItemKind | None = None) -> list[WorkItem]:
        query = "SELECT id, kind, frequency, title FROM work_items"
        params: list[str] = []
        if kind is not None:
            query += " WHERE kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at, id"
        return [WorkItem.model_validate(dict(row)) for row in self._conn.execute(query, params)]

    # ---- Intervals ----

    @_translate_errors
    def get_interval(self, interval_id: int) -> ExecutionInterval | None:
        row = self._conn.execute("SELECT * FROM intervals WHERE id = ?", (interval_id,)).fetchone()
        return _row_to_interval(row) if row else None

    @_translate_errors
    def get_open_interval(self) -> ExecutionInterval | None:
        """Return the single open interval in the store, if any."""
        row = self._conn.execute("SELECT * FROM intervals WHERE ended_at IS NULL").fetchone()
        return _row_to_interval(row) if row else None

    @_translate_errors
    def open_interval(
        self,
        work_item_id: str,
        at: datetime,
        *,
        session_id: str,
        device_type: str = "desktop",
        commit: bool = True,
    ) -> ExecutionInterval:
        """Open a new interval.

        Raises AlreadyOpenElsewhere (carrying the existing interval) if any
        interval is open, including one for the same work item; the caller
        decides whether that is a conflict or a retry to reconcile.

        Args:
            commit: Whether to commit immediately (default True).
                    Set to False when called within a larger transaction.
        """
        existing = self.get_open_interval()
        if existing is not None:
            raise AlreadyOpenElsewhere(interval=existing)
        started_at = to_utc(at)
        try:
            cursor = self._conn.execute(
                """
                INSERT INTO intervals (work_item_id, session_id, started_at, device_type)
                VALUES (?, ?, ?, ?)
                """,
                (work_item_id, session_id, format_timestamp(started_at), device_type),
            )
        except sqlite3.IntegrityError as e:
            # Lost a race with another connection
            raise AlreadyOpenElsewhere(interval=self.get_open_interval()) from e
        if commit:
            self._conn.commit()
        return ExecutionInterval(
            id=cursor.lastrowid,
            work_item_id=work_item_id,
            session_id=session_id,
            started_at=started_at,
            device_type=device_type,
        )

    @_translate_errors
    def close_interval(self, interval_id: int, at: datetime, *, commit: bool = True) -> ExecutionInterval:
        """Close an open interval at `at`.

        Raises:
            NotOpen: If the interval does not exist or is already closed.
            InvalidRange: If `at` is before the interval's start.
        """
        interval = self.get_interval(interval_id)
        if interval is None or not interval.is_open:
            raise NotOpen(f"Interval {interval_id} is not open")
        ended_at = to_utc(at)
        if ended_at < interval.started_at:
            raise InvalidRange(interval.started_at, ended_at)
        self._conn.execute(
            "UPDATE intervals SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
            (format_timestamp(ended_at), interval_id),
        )
        if commit:
            self._conn.commit()
        return interval.model_copy(update={"ended_at": ended_at})

    @_translate_errors
    def discard(self, interval_id: int, *, commit: bool = True) -> bool:
        """Delete an open interval without recording any time.

        Closed intervals are immutable and are never discarded.
        """
        cursor = self._conn.execute(
            "DELETE FROM intervals WHERE id = ? AND ended_at IS NULL",
            (interval_id,),
        )
        if commit:
            self._conn.commit()
        return cursor.rowcount > 0

    @_translate_errors
    def list_intervals(
        self,
        work_item_id: str | None,
        *,
        started_from: datetime | None = None,
        started_before: datetime | None = None,
        session_id: str | None = None,
        closed_only: bool = False,
    ) -> list[ExecutionInterval]:
        """Query intervals ordered by start.

        Args:
            work_item_id: Only intervals of this work item; None for all.
            started_from: Inclusive lower bound on started_at.
            started_before: Exclusive upper bound on started_at.
            session_id: Only intervals of this session.
            closed_only: Skip the open interval.
        """
        conditions: list[str] = []
        params: list[str] = []
        if work_item_id is not None:
            conditions.append("work_item_id = ?")
            params.append(work_item_id)
        if started_from is not None:
            conditions.append("started_at >= ?")
            params.append(format_timestamp(started_from))
        if started_before is not None:
            conditions.append("started_at < ?")
            params.append(format_timestamp(started_before))
        if session_id is not None:
            conditions.append("session_id = ?")
            params.append(session_id)
        if closed_only:
            conditions.append("ended_at IS NOT NULL")
        query = "SELECT * FROM intervals"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY started_at ASC, id ASC"
        return [_row_to_interval(row) for row in self._conn.execute(query, params)]

    def sum_duration(
        self,
        work_item_id: str,
        *,
        started_from: datetime | None = None,
        started_before: datetime | None = None,
        session_id: str | None = None,
    ) -> int:
        """Sum of closed interval durations (ms) matching the filters."""
        intervals = self.list_intervals(
            work_item_id,
            started_from=started_from,
            started_before=started_before,
            session_id=session_id,
            closed_only=True,
        )
        return sum(interval.duration_ms or 0 for interval in intervals)

    def totals(
        self,
        work_item_id: str,
        *,
        day_start: datetime,
        day_end: datetime,
        session_id: str | None = None,
    ) -> IntervalTotals:
        """Closed totals for today, lifetime and one session, from one read.

        Attribution to a day is by start instant, never split by duration.
        """
        day_start = to_utc(day_start)
        day_end = to_utc(day_end)
        today_ms = lifetime_ms = session_ms = 0
        sessions: set[str] = set()
        for interval in self.list_intervals(work_item_id, closed_only=True):
            ms = interval.duration_ms or 0
            lifetime_ms += ms
            sessions.add(interval.session_id)
            if day_start <= interval.started_at < day_end:
                today_ms += ms
            if session_id is not None and interval.session_id == session_id:
                session_ms += ms
        return IntervalTotals(today_ms, lifetime_ms, session_ms, len(sessions))

    @_translate_errors
    def delete_for_scope(
        self,
        work_item_id: str,
        scope: LogScope,
        *,
        day_range: tuple[datetime, datetime] | None = None,
    ) -> int:
        """Delete a work item's closed intervals and completion markers.

        Both tables are cleared in one transaction so a crash never leaves a
        half-deleted scope. Returns the number of intervals deleted.

        Args:
            scope: LogScope.TODAY (requires day_range) or LogScope.ALL.
            day_range: UTC (start, end) of the local day for TODAY.
        """
        interval_sql = "DELETE FROM intervals WHERE work_item_id = ? AND ended_at IS NOT NULL"
        completion_sql = "DELETE FROM completions WHERE work_item_id = ?"
        params: list[str] = [work_item_id]
        if scope is LogScope.TODAY:
            if day_range is None:
                raise ValueError("day_range is required for the today scope")
            interval_sql += " AND started_at >= ? AND started_at < ?"
            completion_sql += " AND completed_at >= ? AND completed_at < ?"
            params += [format_timestamp(day_range[0]), format_timestamp(day_range[1])]

        with self._conn:  # Automatic transaction handling (commits on success)
            cursor = self._conn.execute(interval_sql, params)
            self._conn.execute(completion_sql, params)
        return cursor.rowcount

    # ---- Active session ----

    @_translate_errors
    def get_active_session(self) -> ActiveSessionRecord | None:
        row = self._conn.execute("SELECT * FROM active_session WHERE slot = 1").fetchone()
        return _row_to_session(row) if row else None

    def _require_session(self, session_id: str) -> ActiveSessionRecord:
        session = self.get_active_session()
        if session is None or session.session_id != session_id:
            raise NotOpen(f"Session {session_id} is not active")
        return session

    def _open_in_session(self, session_id: str) -> ExecutionInterval | None:
        row = self._conn.execute(
            "SELECT * FROM intervals WHERE session_id = ? AND ended_at IS NULL",
            (session_id,),
        ).fetchone()
        return _row_to_interval(row) if row else None

    def _finish_open(self, session_id: str, at: datetime, *, discard_open: bool) -> ExecutionInterval | None:
        interval = self._open_in_session(session_id)
        if interval is None:
            return None
        if discard_open:
            self.discard(interval.id, commit=False)
            return None
        return self.close_interval(interval.id, at, commit=False)

    @_translate_errors
    def begin_session(
        self,
        work_item_id: str,
        session_id: str,
        at: datetime,
        *,
        device_type: str = "desktop",
    ) -> ExecutionInterval:
        """Claim the active session and open its first interval atomically."""
        with self._conn:
            existing = self.get_active_session()
            if existing is not None:
                raise AlreadyOpenElsewhere(session=existing, interval=self.get_open_interval())
            try:
                self._conn.execute(
                    """
                    INSERT INTO active_session (slot, work_item_id, session_id, started_at, paused, device_type)
                    VALUES (1, ?, ?, ?, 0, ?)
                    """,
                    (work_item_id, session_id, format_timestamp(at), device_type),
                )
            except sqlite3.IntegrityError as e:
                raise AlreadyOpenElsewhere(session=self.get_active_session()) from e
            return self.open_interval(
                work_item_id, at, session_id=session_id, device_type=device_type, commit=False
            )

    @_translate_errors
    def pause_session(
        self, session_id: str, at: datetime, *, discard_open: bool = False
    ) -> ExecutionInterval | None:
        """Close the session's open interval and mark the session paused.

        Returns the closed interval, or None when it was discarded.
        """
        with self._conn:
            self._require_session(session_id)
            closed = self._finish_open(session_id, at, discard_open=discard_open)
            self._conn.execute("UPDATE active_session SET paused = 1 WHERE slot = 1")
        return closed

    @_translate_errors
    def resume_session(self, session_id: str, at: datetime) -> ExecutionInterval:
        """Open a new interval in a paused session."""
        with self._conn:
            session = self._require_session(session_id)
            interval = self.open_interval(
                session.work_item_id,
                at,
                session_id=session_id,
                device_type=session.device_type,
                commit=False,
            )
            self._conn.execute("UPDATE active_session SET paused = 0 WHERE slot = 1")
        return interval

    @_translate_errors
    def end_session(
        self, session_id: str, at: datetime, *, discard_open: bool = False
    ) -> ExecutionInterval | None:
        """Close any open interval of the session and release it."""
        with self._conn:
            self._require_session(session_id)
            closed = self._finish_open(session_id, at, discard_open=discard_open)
            self._conn.execute("DELETE FROM active_session WHERE slot = 1")
        return closed

    @_translate_errors
    def abandon_session(self, session_id: str) -> int:
        """Release the session and delete every interval it wrote.

        Segments closed by earlier pauses go too, so the session leaves no
        time behind. Returns the number of intervals deleted.
        """
        with self._conn:
            self._require_session(session_id)
            cursor = self._conn.execute("DELETE FROM intervals WHERE session_id = ?", (session_id,))
            self._conn.execute("DELETE FROM active_session WHERE slot = 1")
        return cursor.rowcount

    @_translate_errors
    def force_release(self, at: datetime) -> ActiveSessionRecord | None:
        """Close whatever is open and release the active session.

        Recovery path for sessions orphaned by another device or a crash.
        An open interval that would end before it started is discarded.
        """
        at = to_utc(at)
        with self._conn:
            session = self.get_active_session()
            interval = self.get_open_interval()
            if interval is not None:
                if at < interval.started_at:
                    logger.warning("Discarding open interval %s: clock is behind its start", interval.id)
                    self.discard(interval.id, commit=False)
                else:
                    self.close_interval(interval.id, at, commit=False)
            self._conn.execute("DELETE FROM active_session")
        return session

    # ---- Completions ----

    @_translate_errors
    def record_completion(self, work_item_id: str, at: datetime, *, day_key: str) -> bool:
        """Record an explicit completion. Returns False if the day already has one."""
        try:
            self._conn.execute(
                "INSERT INTO completions (work_item_id, completed_at, day_key) VALUES (?, ?, ?)",
                (work_item_id, format_timestamp(at), day_key),
            )
            self._conn.commit()
            return True
        except sqlite3.IntegrityError:
            # Already completed on this day (UNIQUE violation)
            return False

    @_translate_errors
    def remove_completion(self, work_item_id: str, *, day_key: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM completions WHERE work_item_id = ? AND day_key = ?",
            (work_item_id, day_key),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    @_translate_errors
    def completion_times(self, work_item_id: str) -> list[datetime]:
        cursor = self._conn.execute(
            "SELECT completed_at FROM completions WHERE work_item_id = ? ORDER BY completed_at",
            (work_item_id,),
        )
        return [parse_timestamp(row["completed_at"]) for row in cursor]


class LogGateway:
    """Runs ExecutionLog calls off the event loop on one dedicated thread.

    A single worker serializes every call, so the sqlite connection is never
    used from two threads at once.
    """

    def __init__(self, log: ExecutionLog) -> None:
        self.log = log
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="execution-log")

    async def run(self, method: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(method, *args, **kwargs))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
