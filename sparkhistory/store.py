"""SQLite-backed storage for Spark listener events and the queries built on it."""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar, Union

from .records import (
    ApplicationInfo,
    ApplicationSummary,
    CrossAppSummary,
    ExecutorSummary,
    ResourceUsage,
    SparkEvent,
)

_log = logging.getLogger(__name__)

_T = TypeVar("_T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY,
    app_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    raw_data TEXT,
    job_id INTEGER,
    stage_id INTEGER,
    task_id INTEGER,
    duration_ms INTEGER
);
CREATE INDEX IF NOT EXISTS idx_app_time ON events(app_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_event_type ON events(event_type);
CREATE INDEX IF NOT EXISTS idx_job_stage ON events(job_id, stage_id);
"""

_INSERT = """
INSERT INTO events (
    id, app_id, event_type, timestamp, raw_data,
    job_id, stage_id, task_id, duration_ms
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_TIMESTAMP_RE = re.compile(
    r"^(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})"
    r"(?:[T ](?P<hour>\d{1,2}):(?P<minute>\d{1,2})"
    r"(?::(?P<second>\d{1,2})(?:\.(?P<fraction>\d+))?)?)?"
    r"\s*(?P<offset>Z|z|[+-]\d{2}(?::?\d{2})?)?$"
)

_DEFAULT_HOST_PORT = "localhost:0"
_DEFAULT_MAX_MEMORY = 1073741824


class StoreError(RuntimeError):
    """Raised when the event store cannot complete an operation."""


class _CircuitOpenError(Exception):
    pass


class _CircuitBreaker:
    """Stops calling a failing resource for a while after repeated failures."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 3,
        timeout: float = 10.0,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._timeout = timeout
        self._window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._state = "closed"
        self._failures: list[float] = []
        self._successes = 0
        self._opened_at = 0.0

    def call(self, func: Callable[[], _T]) -> _T:
        with self._lock:
            if self._state == "open":
                if self._clock() - self._opened_at < self._timeout:
                    raise _CircuitOpenError(self.name)
                self._state = "half_open"
                self._successes = 0
        try:
            result = func()
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == "half_open":
                self._open(now)
                return
            self._failures = [t for t in self._failures if now - t < self._window]
            self._failures.append(now)
            if len(self._failures) >= self._failure_threshold:
                self._open(now)

    def _record_success(self) -> None:
        with self._lock:
            if self._state == "half_open":
                self._successes += 1
                if self._successes >= self._success_threshold:
                    self._state = "closed"
                    self._failures.clear()

    def _open(self, now: float) -> None:
        _log.warning("Circuit breaker %s opened", self.name)
        self._state = "open"
        self._opened_at = now
        self._failures.clear()
        self._successes = 0


def _format_timestamp(moment: datetime) -> str:
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d} "
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += f".{moment.microsecond:06d}"
    return text


def _normalize_timestamp(value: Any) -> str:
    """Turn an ISO-like timestamp into the UTC form stored in the table."""
    match = _TIMESTAMP_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise StoreError(f"Invalid timestamp: {value!r}")
    fraction = (match["fraction"] or "")[:6].ljust(6, "0")
    try:
        moment = datetime(
            int(match["year"]),
            int(match["month"]),
            int(match["day"]),
            int(match["hour"] or 0),
            int(match["minute"] or 0),
            int(match["second"] or 0),
            int(fraction),
        )
    except ValueError as exc:
        raise StoreError(f"Invalid timestamp: {value!r}") from exc
    offset = match["offset"]
    if offset and offset not in ("Z", "z"):
        sign = -1 if offset[0] == "-" else 1
        digits = offset[1:].replace(":", "")
        shift = timedelta(hours=int(digits[:2]), minutes=int(digits[2:4] or 0))
        moment -= sign * shift
    return _format_timestamp(moment)


def _parse_stored(text: str) -> datetime:
    return datetime.fromisoformat(text)


def _cutoff_one_day_ago() -> str:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return _format_timestamp(now - timedelta(days=1))


def _limit_param(limit: Optional[int]) -> int:
    return -1 if limit is None else int(limit)


def _lookup(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _json_text(value: Any) -> Optional[str]:
    """Text of a JSON value: strings as they are, other values as JSON."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _cast_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value + 0.5) if value >= 0 else -int(-value + 0.5)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return _cast_int(float(text))
        except ValueError:
            return None
    return None


@dataclass
class _ExecutorAdded:
    executor_id: Optional[str]
    host_port: Optional[str]
    total_cores: Optional[int]
    max_memory: Optional[int]
    add_time: str


@dataclass
class _TaskTotals:
    total_tasks: int = 0
    completed_tasks: int = 0
    total_duration: int = 0
    total_gc_time: int = 0
    total_input_bytes: int = 0
    total_shuffle_read: int = 0
    total_shuffle_write: int = 0

    def add(self, event_type: str, raw: Any) -> None:
        self.total_tasks += 1
        if event_type == "SparkListenerTaskEnd":
            self.completed_tasks += 1
        metrics = _lookup(raw, "Task Metrics")
        self.total_duration += _cast_int(_lookup(metrics, "Executor Run Time")) or 0
        self.total_gc_time += _cast_int(_lookup(metrics, "JVM GC Time")) or 0
        self.total_input_bytes += _cast_int(_lookup(metrics, "Input Metrics", "Bytes Read")) or 0
        self.total_shuffle_read += (
            _cast_int(_lookup(metrics, "Shuffle Read Metrics", "Total Bytes Read")) or 0
        )
        self.total_shuffle_write += (
            _cast_int(_lookup(metrics, "Shuffle Write Metrics", "Bytes Written")) or 0
        )


class EventStore:
    """Event storage with application, executor and summary queries."""

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = str(db_path)
        try:
            self._conn = sqlite3.connect(
                self.db_path, isolation_level=None, check_same_thread=False
            )
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to open event store at {self.db_path}: {exc}") from exc
        self._lock = threading.RLock()
        self._breaker = _CircuitBreaker(f"events-{self.db_path}")
        _log.info("Event store initialized at: %s", self.db_path)

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        """Run a SQL statement and return every row it produces."""
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"Query failed: {exc}") from exc

    def _guarded(self, func: Callable[[], _T], open_message: str) -> _T:
        try:
            return self._breaker.call(func)
        except _CircuitOpenError:
            raise StoreError(open_message) from None

    def insert_events_batch(self, events: Iterable[SparkEvent]) -> None:
        """Insert events in one transaction; nothing is kept if any insert fails."""
        batch = list(events)
        if not batch:
            return

        def work() -> None:
            with self._lock:
                rows = [
                    (
                        event.id,
                        event.app_id,
                        event.event_type,
                        _normalize_timestamp(event.timestamp),
                        json.dumps(event.raw_data, separators=(",", ":"), sort_keys=True),
                        event.job_id,
                        event.stage_id,
                        event.task_id,
                        event.duration_ms,
                    )
                    for event in batch
                ]
                try:
                    self._conn.execute("BEGIN")
                    self._conn.executemany(_INSERT, rows)
                    self._conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    try:
                        self._conn.execute("ROLLBACK")
                    except sqlite3.Error as rollback_exc:
                        _log.warning("Failed to rollback transaction: %s", rollback_exc)
                    raise StoreError(f"Failed to insert events: {exc}") from exc
            _log.debug("Inserted %d events", len(batch))

        self._guarded(work, "Database insert failed: circuit breaker is open")

    def store_event(self, event_id: int, app_id: str, raw_event: Any) -> None:
        """Store one decoded JSON event."""
        self.insert_events_batch([SparkEvent.from_json(raw_event, app_id, event_id)])

    def get_cross_app_summary(self) -> CrossAppSummary:
        """Totals across all applications in the store."""
        sql = """
            SELECT
                COUNT(DISTINCT app_id),
                COUNT(DISTINCT CASE WHEN timestamp >= ? THEN app_id END),
                COUNT(*),
                COUNT(CASE WHEN event_type = 'SparkListenerTaskEnd' THEN 1 END),
                COUNT(CASE WHEN event_type = 'SparkListenerTaskEnd'
                           AND instr(raw_data, '"failed":true') > 0 THEN 1 END),
                COALESCE(AVG(duration_ms), 0)
            FROM events
        """

        def work() -> CrossAppSummary:
            (row,) = self.query(sql, (_cutoff_one_day_ago(),))
            return CrossAppSummary(
                total_applications=row[0],
                active_applications=row[1],
                total_events=row[2],
                total_tasks_completed=row[3],
                total_tasks_failed=row[4],
                avg_task_duration_ms=f"{float(row[5]):.0f}",
                total_data_processed_gb="0",
                peak_concurrent_executors=0,
            )

        return self._guarded(work, "Database query failed: circuit breaker is open")

    def get_active_applications(self, limit: Optional[int] = None) -> list[ApplicationSummary]:
        """Applications ordered by most recent activity, newest first."""
        rows = self.query(
            """
            SELECT app_id, MIN(timestamp), MAX(timestamp)
            FROM events
            GROUP BY app_id
            ORDER BY MAX(timestamp) DESC, app_id
            LIMIT ?
            """,
            (_limit_param(limit),),
        )
        cutoff = _cutoff_one_day_ago()
        summaries = []
        for app_id, first, last in rows:
            duration_ms = (_parse_stored(last) - _parse_stored(first)) // timedelta(milliseconds=1)
            summaries.append(
                ApplicationSummary(
                    id=app_id,
                    user="system",
                    duration=f"{duration_ms // 1000}s" if duration_ms > 0 else "0s",
                    cores=32,
                    memory=8192,
                    status="RUNNING" if last >= cutoff else "FINISHED",
                )
            )
        return summaries

    def get_applications(
        self,
        limit: Optional[int] = None,
        min_date: Optional[str] = None,
        max_date: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[ApplicationInfo]:
        """Applications with events in the date range, latest activity first.

        ``status`` is accepted but does not filter the result.
        """
        conditions = []
        params: list[Any] = []
        if min_date is not None:
            conditions.append("timestamp >= ?")
            params.append(_normalize_timestamp(min_date))
        if max_date is not None:
            conditions.append("timestamp <= ?")
            params.append(_normalize_timestamp(max_date))
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(_limit_param(limit))
        rows = self.query(
            f"""
            SELECT app_id, MIN(timestamp) AS start_time, MAX(timestamp) AS end_time, COUNT(*)
            FROM events
            {where}
            GROUP BY app_id
            ORDER BY end_time DESC, app_id
            LIMIT ?
            """,
            params,
        )
        return [
            ApplicationInfo(
                id=app_id,
                name=f"Application {app_id}",
                cores_granted=0,
                max_cores=0,
                cores_per_executor=1,
                memory_per_executor_mb=1024,
                attempts=[],
            )
            for app_id, *_ in rows
        ]

    def get_app_events(self, app_id: str) -> list[Any]:
        """Decoded events of one application in time order; unreadable ones become None."""
        rows = self.query(
            "SELECT raw_data FROM events WHERE app_id = ? ORDER BY timestamp, id", (app_id,)
        )
        events = []
        for (text,) in rows:
            try:
                events.append(json.loads(text))
            except (TypeError, ValueError) as exc:
                _log.warning("Failed to parse JSON in app events: %s", exc)
                events.append(None)
        return events

    def get_resource_usage_summary(self) -> list[ResourceUsage]:
        """Daily counts and mean durations of task, job and stage completion events."""
        rows = self.query(
            """
            SELECT app_id, event_type, COUNT(*), AVG(duration_ms),
                   substr(timestamp, 1, 10) AS event_date
            FROM events
            WHERE event_type IN ('TaskEnd', 'JobEnd', 'StageCompleted')
            GROUP BY app_id, event_type, event_date
            ORDER BY event_date DESC, app_id, event_type
            """
        )
        return [
            ResourceUsage(
                app_id=app_id,
                event_type=event_type,
                event_count=count,
                avg_duration_ms=None if average is None else float(average),
                event_date=event_date,
            )
            for app_id, event_type, count, average, event_date in rows
        ]

    def list(self) -> list[ApplicationInfo]:
        """Every application in the store."""
        return self.get_applications()

    def get(self, app_id: str) -> Optional[ApplicationInfo]:
        """The most recently active application, if its id is ``app_id``."""
        return next((app for app in self.get_applications(limit=1) if app.id == app_id), None)

    def put(self, app_id: str, app_info: ApplicationInfo) -> None:
        """Accepted for compatibility; applications are derived from their events."""
        _log.debug("Put application called for: %s (%s)", app_id, app_info.name)

    def get_executor_summary(self, app_id: str) -> list[ExecutorSummary]:
        """Executors of one application with their task totals, ordered by id."""
        rows = self.query(
            "SELECT event_type, timestamp, raw_data FROM events WHERE app_id = ? ORDER BY id",
            (app_id,),
        )
        added: dict[tuple, _ExecutorAdded] = {}
        removed: dict[Optional[str], str] = {}
        totals: dict[str, _TaskTotals] = {}

        for event_type, timestamp, raw_text in rows:
            if "Executor" not in event_type and "Task" not in event_type:
                continue
            try:
                raw = json.loads(raw_text)
            except (TypeError, ValueError):
                raw = {}
            executor_id = _json_text(_lookup(raw, "Executor ID"))
            if executor_id is None:
                executor_id = _json_text(_lookup(raw, "Task Info", "Executor ID"))

            if event_type == "SparkListenerExecutorAdded":
                host = _json_text(_lookup(raw, "Executor Info", "Host"))
                task_host = _json_text(_lookup(raw, "Task Info", "Host"))
                cores = _lookup(raw, "Executor Info", "Total Cores")
                memory = _lookup(raw, "Executor Info", "Max Memory")
                key = (executor_id, host, task_host, _json_text(cores), _json_text(memory))
                entry = added.get(key)
                if entry is None:
                    added[key] = _ExecutorAdded(
                        executor_id=executor_id,
                        host_port=host if host is not None else task_host,
                        total_cores=_cast_int(cores),
                        max_memory=_cast_int(memory),
                        add_time=timestamp,
                    )
                elif timestamp < entry.add_time:
                    entry.add_time = timestamp
            elif event_type == "SparkListenerExecutorRemoved":
                previous = removed.get(executor_id)
                if previous is None or timestamp > previous:
                    removed[executor_id] = timestamp
            elif (
                event_type in ("SparkListenerTaskStart", "SparkListenerTaskEnd")
                and executor_id is not None
            ):
                totals.setdefault(executor_id, _TaskTotals()).add(event_type, raw)

        # Full outer join of added executors with removed ones, then with task totals.
        joined: list[tuple[Optional[_ExecutorAdded], bool, Optional[str]]] = []
        matched_removed: set = set()
        for entry in added.values():
            is_removed = entry.executor_id is not None and entry.executor_id in removed
            if is_removed:
                matched_removed.add(entry.executor_id)
            joined.append((entry, is_removed, entry.executor_id))
        for removed_id in removed:
            if removed_id is None or removed_id not in matched_removed:
                # A removed row whose id is null still counts as "not removed" below.
                joined.append((None, removed_id is not None, removed_id))

        combined: list[tuple[Optional[_ExecutorAdded], bool, Optional[str], Optional[_TaskTotals]]] = []
        used_totals: set = set()
        for entry, is_removed, join_id in joined:
            task_totals = totals.get(join_id) if join_id is not None else None
            if task_totals is not None:
                used_totals.add(join_id)
            combined.append((entry, is_removed, join_id, task_totals))
        for executor_id, task_totals in totals.items():
            if executor_id not in used_totals:
                combined.append((None, False, executor_id, task_totals))

        summaries = []
        for entry, is_removed, join_id, task_totals in combined:
            task_id = join_id if task_totals is not None else None
            executor_id = (entry.executor_id if entry else None) or task_id or "driver"
            cores = entry.total_cores if entry and entry.total_cores is not None else 1
            memory = (
                entry.max_memory
                if entry and entry.max_memory is not None
                else _DEFAULT_MAX_MEMORY
            )
            host_port = entry.host_port if entry and entry.host_port is not None else None
            stats = task_totals or _TaskTotals()
            summaries.append(
                ExecutorSummary(
                    id=executor_id,
                    host_port=host_port or _DEFAULT_HOST_PORT,
                    is_active=not is_removed,
                    total_cores=cores,
                    max_tasks=cores,
                    completed_tasks=stats.completed_tasks,
                    total_tasks=stats.total_tasks,
                    total_duration=stats.total_duration,
                    total_gc_time=stats.total_gc_time,
                    total_input_bytes=stats.total_input_bytes,
                    total_shuffle_read=stats.total_shuffle_read,
                    total_shuffle_write=stats.total_shuffle_write,
                    is_excluded=False,
                    max_memory=memory,
                    resource_profile_id=0,
                )
            )
        summaries.sort(key=lambda summary: summary.id)
        return summaries

    def count_events(self) -> int:
        """Number of stored events."""
        ((count,),) = self.query("SELECT COUNT(*) FROM events")
        return count

    def get_max_event_id(self) -> Optional[int]:
        """Largest event id, or None when the store is empty."""
        ((max_id,),) = self.query("SELECT MAX(id) FROM events")
        return max_id

    def cleanup_database(self) -> None:
        """Delete every event; allowed only when ENABLE_DB_CLEANUP is "true"."""
        if os.environ.get("ENABLE_DB_CLEANUP", "") != "true":
            raise StoreError(
                "Database cleanup disabled. Set ENABLE_DB_CLEANUP=true to enable for testing."
            )
        self.query("DELETE FROM events")
        _log.warning("Cleared all events from the event store")