"""SQLite implementations of MediaStore and JobStore.

This module provides the local-first, crash-safe store using:
- sqlite-utils for schema management and simple lookups
- WAL mode for better concurrent performance
- Single-statement UPDATE...RETURNING claims and compare-and-set transitions
- Exponential backoff retry for database lock handling

One connection is shared by every thread of the process and serialized with
a re-entrant lock; other processes opening the same file are serialized by
SQLite itself.
"""

import json
import sqlite3
import threading
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from loguru import logger
from sqlite_utils import Database

from .backends import JobStore, MediaStore
from .models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ErrorKind,
    Job,
    JobPriority,
    JobStatus,
    JobType,
    Variant,
    VariantStatus,
    Video,
    VideoStatus,
)

T = TypeVar("T")

# SQLite schema SQL
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    title TEXT,
    status TEXT NOT NULL,
    type TEXT NOT NULL,
    original_file_path TEXT NOT NULL,
    original_file_name TEXT NOT NULL,
    original_file_size INTEGER NOT NULL,
    original_mime_type TEXT NOT NULL,
    duration REAL,
    width INTEGER,
    height INTEGER,
    frame_rate REAL,
    codec TEXT,
    bitrate INTEGER,
    metadata TEXT,
    thumbnail_path TEXT,
    preview_path TEXT,
    processing_progress INTEGER DEFAULT 0,
    processing_error TEXT,
    processing_errors TEXT,
    current_run_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);

CREATE TABLE IF NOT EXISTS variants (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    run_id TEXT,
    quality TEXT NOT NULL,
    format TEXT NOT NULL,
    status TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size INTEGER,
    bitrate INTEGER,
    width INTEGER,
    height INTEGER,
    codec TEXT,
    processing_progress INTEGER DEFAULT 0,
    processing_error TEXT,
    processing_started_at TEXT,
    processing_completed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_variants_video ON variants(video_id, run_id);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    run_id TEXT,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    priority TEXT NOT NULL,
    attempt_count INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    progress INTEGER DEFAULT 0,
    payload TEXT,
    result TEXT,
    error TEXT,
    error_kind TEXT,
    worker_id TEXT,
    claim_token TEXT,
    scheduled_at TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    last_heartbeat TEXT,
    actual_duration_s REAL
);

CREATE INDEX IF NOT EXISTS idx_jobs_lane ON jobs(priority, status, scheduled_at, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_video ON jobs(video_id, run_id);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);

-- Persisted lane flags (counters live in memory)
CREATE TABLE IF NOT EXISTS lanes (
    name TEXT PRIMARY KEY,
    paused INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metric_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    data TEXT NOT NULL
);
"""

JSON_COLUMNS = {
    "videos": {"metadata": dict, "processing_errors": list},
    "variants": {},
    "jobs": {"payload": dict, "result": dict},
}

COLUMNS = {
    "videos": set(Video.model_fields),
    "variants": set(Variant.model_fields),
    "jobs": set(Job.model_fields),
}


def _encode(value: Any) -> Any:
    """Convert a Python value to something sqlite3 can bind."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _model_row(model) -> Dict[str, Any]:
    return {key: _encode(value) for key, value in model.model_dump().items()}


def _decode_row(table: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize JSON columns of a fetched row."""
    row = dict(row)
    for column, empty in JSON_COLUMNS[table].items():
        raw = row.get(column)
        row[column] = json.loads(raw) if raw else empty()
    return row


def _fetch_dicts(cursor) -> List[Dict[str, Any]]:
    names = [col[0] for col in cursor.description] if cursor.description else []
    return [dict(zip(names, row)) for row in cursor.fetchall()]


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _with_lock_retry(fn: Callable[[], T], max_retries: int = 3) -> T:
    """Run fn, retrying with exponential backoff on SQLITE_BUSY.

    Backoff: 100ms, 200ms, 400ms delays
    """
    for attempt in range(max_retries):
        try:
            return fn()
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                logger.debug(f"Database locked, retrying (attempt {attempt + 1})")
                time.sleep(0.1 * (2**attempt))
                continue
            raise
    raise RuntimeError("unreachable")


class SQLiteMediaStore(MediaStore):
    """SQLite-based video/variant store.

    Owns the database connection; SQLiteJobStore shares it.
    """

    def __init__(self, db_path: str):
        """Open (or create) the database.

        Args:
            db_path: Path to SQLite database file

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        self.db = Database(conn)
        self.lock = threading.RLock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        with self.lock:
            self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self.lock:
            self.db.conn.close()

    def _update(
        self,
        table: str,
        row_id: str,
        fields: Dict[str, Any],
        statuses: Optional[List[str]] = None,
    ) -> bool:
        unknown = set(fields) - COLUMNS[table]
        if unknown:
            raise ValueError(f"Unknown {table} columns: {sorted(unknown)}")

        values = {key: _encode(value) for key, value in fields.items()}
        assignments = ", ".join(f"{column} = ?" for column in values)
        sql = f"UPDATE {table} SET {assignments} WHERE id = ?"
        params = list(values.values()) + [row_id]
        if statuses:
            sql += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)

        def _run() -> bool:
            with self.lock, self.db.conn:
                return self.db.execute(sql, params).rowcount > 0

        return _with_lock_retry(_run)

    def insert_video(self, video: Video) -> None:
        with self.lock:
            self.db["videos"].insert(_model_row(video), pk="id")

    def get_video(self, video_id: str) -> Optional[Video]:
        with self.lock:
            rows = list(self.db["videos"].rows_where("id = ?", [video_id]))
        if not rows:
            return None
        return Video.model_validate(_decode_row("videos", rows[0]))

    def update_video(
        self,
        video_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[VideoStatus] = None,
    ) -> bool:
        fields = dict(fields, updated_at=datetime.now())
        statuses = [expected_status.value] if expected_status is not None else None
        return self._update("videos", video_id, fields, statuses)

    def list_videos(
        self,
        status: Optional[VideoStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Video]:
        sql = "SELECT * FROM videos"
        params: List[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self.lock:
            rows = _fetch_dicts(self.db.execute(sql, params))
        return [Video.model_validate(_decode_row("videos", row)) for row in rows]

    def count_videos_by_status(self) -> Dict[str, int]:
        with self.lock:
            rows = self.db.execute(
                "SELECT status, COUNT(*) FROM videos GROUP BY status"
            ).fetchall()
        return {status: count for status, count in rows}

    def delete_video(self, video_id: str) -> bool:
        with self.lock, self.db.conn:
            return self.db.execute("DELETE FROM videos WHERE id = ?", [video_id]).rowcount > 0

    def insert_variant(self, variant: Variant) -> None:
        with self.lock:
            self.db["variants"].insert(_model_row(variant), pk="id")

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        with self.lock:
            rows = list(self.db["variants"].rows_where("id = ?", [variant_id]))
        if not rows:
            return None
        return Variant.model_validate(_decode_row("variants", rows[0]))

    def update_variant(
        self,
        variant_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[VariantStatus]] = None,
    ) -> bool:
        statuses = [s.value for s in expected_statuses] if expected_statuses else None
        return self._update("variants", variant_id, fields, statuses)

    def list_variants(self, video_id: str, run_id: Optional[str] = None) -> List[Variant]:
        sql = "SELECT * FROM variants WHERE video_id = ?"
        params: List[Any] = [video_id]
        if run_id is not None:
            sql += " AND run_id = ?"
            params.append(run_id)
        sql += " ORDER BY created_at ASC, rowid ASC"
        with self.lock:
            rows = _fetch_dicts(self.db.execute(sql, params))
        return [Variant.model_validate(_decode_row("variants", row)) for row in rows]

    def delete_variants(self, video_id: str) -> int:
        with self.lock, self.db.conn:
            return self.db.execute("DELETE FROM variants WHERE video_id = ?", [video_id]).rowcount


class SQLiteJobStore(JobStore):
    """SQLite-based job queue with atomic claims.

    Features:
    - Atomic claim via a single UPDATE...RETURNING statement
    - Claim tokens so a reaped job's original worker cannot report twice
    - Exponential backoff retry for database lock contention
    - Automatic state transition logging
    """

    def __init__(self, media: SQLiteMediaStore):
        """Initialize job store.

        Args:
            media: SQLiteMediaStore instance (shares same database and lock)
        """
        self.media = media
        self.db = media.db
        self.lock = media.lock

    def _to_job(self, row: Dict[str, Any]) -> Job:
        return Job.model_validate(_decode_row("jobs", row))

    def _transition_rows(
        self, rows: List[Dict[str, Any]], from_state: JobStatus, error: Optional[str] = None
    ) -> List[Job]:
        jobs = [self._to_job(row) for row in rows]
        for job in jobs:
            self._log_transition(job.id, from_state.value, job.status.value, job.worker_id, error)
        return jobs

    def insert_job(self, job: Job) -> None:
        with self.lock, self.db.conn:
            row = _model_row(job)
            self.db.execute(
                f"INSERT INTO jobs ({', '.join(row)}) VALUES ({_placeholders(row)})",
                list(row.values()),
            )
            self._log_transition(job.id, None, job.status.value)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.lock:
            rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        return self._to_job(rows[0]) if rows else None

    def claim_next(self, lane: JobPriority, worker_id: str, claim_token: str) -> Optional[Job]:
        """Atomically claim the oldest queued job of a lane.

        Atomicity: the SELECT and UPDATE are one statement, so two claimers
        (threads or processes) can never receive the same row.
        """

        def _claim() -> Optional[Job]:
            now = datetime.now().isoformat()
            with self.lock, self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        worker_id = ?,
                        claim_token = ?,
                        started_at = ?,
                        last_heartbeat = ?,
                        completed_at = NULL,
                        progress = 0,
                        attempt_count = attempt_count + 1
                    WHERE id = (
                        SELECT id FROM jobs
                        WHERE status = ? AND priority = ?
                          AND (scheduled_at IS NULL OR scheduled_at <= ?)
                        ORDER BY scheduled_at ASC, created_at ASC, rowid ASC
                        LIMIT 1
                    )
                    RETURNING *
                    """,
                    (
                        JobStatus.PROCESSING.value,
                        worker_id,
                        claim_token,
                        now,
                        now,
                        JobStatus.QUEUED.value,
                        lane.value,
                        now,
                    ),
                )
                rows = _fetch_dicts(cursor)
                if not rows:
                    return None
                return self._transition_rows(rows, JobStatus.QUEUED)[0]

        return _with_lock_retry(_claim)

    def complete_job(
        self,
        job_id: str,
        claim_token: str,
        result: Dict[str, Any],
        duration_s: float,
    ) -> Optional[Job]:
        def _complete() -> Optional[Job]:
            with self.lock, self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        result = ?,
                        progress = 100,
                        completed_at = ?,
                        actual_duration_s = ?,
                        error = NULL,
                        error_kind = NULL
                    WHERE id = ? AND status = ? AND claim_token = ?
                    RETURNING *
                    """,
                    (
                        JobStatus.COMPLETED.value,
                        json.dumps(result, default=str),
                        datetime.now().isoformat(),
                        duration_s,
                        job_id,
                        JobStatus.PROCESSING.value,
                        claim_token,
                    ),
                )
                rows = _fetch_dicts(cursor)
                return self._transition_rows(rows, JobStatus.PROCESSING)[0] if rows else None

        return _with_lock_retry(_complete)

    def fail_job(
        self,
        job_id: str,
        claim_token: str,
        error: str,
        error_kind: ErrorKind,
        duration_s: float,
        retry_at: Optional[datetime] = None,
    ) -> Optional[Job]:
        """Record a failed attempt.

        Retry logic:
        - retry_at given: RETRYING until the scheduler re-queues it at retry_at
        - otherwise: FAILED (terminal state)
        """
        error_snippet = error[:500] if error else None
        if retry_at is not None:
            sql = """
                UPDATE jobs
                SET status = ?, scheduled_at = ?, error = ?, error_kind = ?,
                    actual_duration_s = ?, worker_id = NULL, claim_token = NULL
                WHERE id = ? AND status = ? AND claim_token = ?
                RETURNING *
            """
            params = (JobStatus.RETRYING.value, retry_at.isoformat())
        else:
            sql = """
                UPDATE jobs
                SET status = ?, completed_at = ?, error = ?, error_kind = ?,
                    actual_duration_s = ?
                WHERE id = ? AND status = ? AND claim_token = ?
                RETURNING *
            """
            params = (JobStatus.FAILED.value, datetime.now().isoformat())
        params += (
            error_snippet,
            error_kind.value,
            duration_s,
            job_id,
            JobStatus.PROCESSING.value,
            claim_token,
        )

        def _fail() -> Optional[Job]:
            with self.lock, self.db.conn:
                rows = _fetch_dicts(self.db.execute(sql, params))
                if not rows:
                    return None
                return self._transition_rows(rows, JobStatus.PROCESSING, error_snippet)[0]

        return _with_lock_retry(_fail)

    def heartbeat(self, job_ids: Iterable[str]) -> int:
        """Update heartbeat timestamp for in-flight jobs.

        Only updates jobs still in 'processing' state.
        """
        job_ids = list(job_ids)
        if not job_ids:
            return 0

        def _beat() -> int:
            with self.lock, self.db.conn:
                cursor = self.db.execute(
                    f"""
                    UPDATE jobs SET last_heartbeat = ?
                    WHERE status = ? AND id IN ({_placeholders(job_ids)})
                    """,
                    [datetime.now().isoformat(), JobStatus.PROCESSING.value, *job_ids],
                )
                return cursor.rowcount

        return _with_lock_retry(_beat)

    def requeue_due(self, now: datetime) -> List[Job]:
        def _requeue() -> List[Job]:
            with self.lock, self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE jobs SET status = ?
                    WHERE status = ? AND scheduled_at <= ?
                    RETURNING *
                    """,
                    (JobStatus.QUEUED.value, JobStatus.RETRYING.value, now.isoformat()),
                )
                return self._transition_rows(_fetch_dicts(cursor), JobStatus.RETRYING)

        return _with_lock_retry(_requeue)

    def find_stuck(self, started_before: datetime, heartbeat_before: datetime) -> List[Job]:
        """PROCESSING jobs past the job timeout or with a stale heartbeat.

        A job that never sent a heartbeat is judged by its start time.
        """
        with self.lock:
            cursor = self.db.execute(
                """
                SELECT * FROM jobs
                WHERE status = ?
                  AND (started_at < ? OR COALESCE(last_heartbeat, started_at) < ?)
                ORDER BY started_at ASC
                """,
                (
                    JobStatus.PROCESSING.value,
                    started_before.isoformat(),
                    heartbeat_before.isoformat(),
                ),
            )
            return [self._to_job(row) for row in _fetch_dicts(cursor)]

    def reap_job(self, job: Job, requeue: bool, error: str, now: datetime) -> Optional[Job]:
        if requeue:
            sql = """
                UPDATE jobs
                SET status = ?, scheduled_at = ?, error = ?, error_kind = ?,
                    worker_id = NULL, claim_token = NULL, started_at = NULL,
                    last_heartbeat = NULL
                WHERE id = ? AND status = ? AND claim_token IS ?
                RETURNING *
            """
            params = (JobStatus.QUEUED.value, now.isoformat())
        else:
            sql = """
                UPDATE jobs
                SET status = ?, completed_at = ?, error = ?, error_kind = ?,
                    claim_token = NULL
                WHERE id = ? AND status = ? AND claim_token IS ?
                RETURNING *
            """
            params = (JobStatus.FAILED.value, now.isoformat())
        params += (
            error[:500],
            ErrorKind.TIMEOUT.value,
            job.id,
            JobStatus.PROCESSING.value,
            job.claim_token,
        )

        def _reap() -> Optional[Job]:
            with self.lock, self.db.conn:
                rows = _fetch_dicts(self.db.execute(sql, params))
                if not rows:
                    return None
                return self._transition_rows(rows, JobStatus.PROCESSING, error)[0]

        return _with_lock_retry(_reap)

    def cancel_jobs(self, video_id: str, job_id: Optional[str] = None) -> List[Job]:
        cancellable = [s.value for s in (JobStatus.QUEUED, JobStatus.RETRYING)]
        sql = f"""
            SELECT id, status FROM jobs
            WHERE video_id = ? AND status IN ({_placeholders(cancellable)})
        """
        params: List[Any] = [video_id, *cancellable]
        if job_id is not None:
            sql += " AND id = ?"
            params.append(job_id)

        def _cancel() -> List[Job]:
            with self.lock, self.db.conn:
                previous = dict(self.db.execute(sql, params).fetchall())
                if not previous:
                    return []
                cursor = self.db.execute(
                    f"""
                    UPDATE jobs
                    SET status = ?, completed_at = ?, error_kind = ?, claim_token = NULL
                    WHERE id IN ({_placeholders(previous)})
                      AND status IN ({_placeholders(cancellable)})
                    RETURNING *
                    """,
                    [
                        JobStatus.CANCELLED.value,
                        datetime.now().isoformat(),
                        ErrorKind.CANCELLED.value,
                        *previous,
                        *cancellable,
                    ],
                )
                jobs = [self._to_job(row) for row in _fetch_dicts(cursor)]
                for job in jobs:
                    self._log_transition(job.id, previous[job.id], job.status.value)
                return jobs

        return _with_lock_retry(_cancel)

    def reset_failed(self, job_id: str) -> Optional[Job]:
        def _reset() -> Optional[Job]:
            with self.lock, self.db.conn:
                cursor = self.db.execute(
                    """
                    UPDATE jobs
                    SET status = ?, attempt_count = 0, progress = 0, scheduled_at = ?,
                        error = NULL, error_kind = NULL, result = NULL,
                        started_at = NULL, completed_at = NULL, last_heartbeat = NULL,
                        worker_id = NULL, claim_token = NULL, actual_duration_s = NULL
                    WHERE id = ? AND status = ?
                    RETURNING *
                    """,
                    (
                        JobStatus.QUEUED.value,
                        datetime.now().isoformat(),
                        job_id,
                        JobStatus.FAILED.value,
                    ),
                )
                rows = _fetch_dicts(cursor)
                return self._transition_rows(rows, JobStatus.FAILED)[0] if rows else None

        return _with_lock_retry(_reset)

    def list_jobs(
        self,
        video_id: Optional[str] = None,
        run_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        lane: Optional[JobPriority] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        clauses, params = [], []
        for column, value in (
            ("video_id", video_id),
            ("run_id", run_id),
            ("status", status),
            ("priority", lane),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(_encode(value))
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.lock:
            rows = _fetch_dicts(self.db.execute(sql, params))
        return [self._to_job(row) for row in rows]

    def find_active_transcode(self, video_id: str, quality: str, format: str) -> Optional[Job]:
        active = [s.value for s in ACTIVE_JOB_STATUSES]
        with self.lock:
            cursor = self.db.execute(
                f"""
                SELECT * FROM jobs
                WHERE video_id = ? AND type = ?
                  AND status IN ({_placeholders(active)})
                  AND json_extract(payload, '$.quality') = ?
                  AND json_extract(payload, '$.format') = ?
                LIMIT 1
                """,
                [video_id, JobType.TRANSCODE.value, *active, quality, format],
            )
            rows = _fetch_dicts(cursor)
        return self._to_job(rows[0]) if rows else None

    def lane_counts(self, lane: JobPriority) -> Dict[str, int]:
        with self.lock:
            rows = self.db.execute(
                "SELECT status, COUNT(*) FROM jobs WHERE priority = ? GROUP BY status",
                [lane.value],
            ).fetchall()
        return {status: count for status, count in rows}

    def lane_timing(self, lane: JobPriority, since: datetime) -> Dict[str, float]:
        with self.lock:
            avg_duration, throughput = self.db.execute(
                """
                SELECT AVG(actual_duration_s),
                       SUM(CASE WHEN completed_at >= ? THEN 1 ELSE 0 END)
                FROM jobs WHERE priority = ? AND status = ?
                """,
                [since.isoformat(), lane.value, JobStatus.COMPLETED.value],
            ).fetchone()
            (avg_wait_days,) = self.db.execute(
                """
                SELECT AVG(julianday(started_at) - julianday(scheduled_at))
                FROM jobs WHERE priority = ? AND started_at IS NOT NULL
                  AND scheduled_at IS NOT NULL
                """,
                [lane.value],
            ).fetchone()
        return {
            "average_processing_time_s": float(avg_duration or 0.0),
            "throughput": float(throughput or 0),
            "average_wait_s": max(float(avg_wait_days or 0.0) * 86400.0, 0.0),
        }

    def count_jobs_by_status(self) -> Dict[str, int]:
        with self.lock:
            rows = self.db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
        return {status: count for status, count in rows}

    def job_type_summary(self) -> List[Dict[str, Any]]:
        with self.lock:
            cursor = self.db.execute(
                """
                SELECT type,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS completed,
                       SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS failed,
                       AVG(actual_duration_s) AS average_duration_s
                FROM jobs GROUP BY type ORDER BY type
                """,
                [JobStatus.COMPLETED.value, JobStatus.FAILED.value],
            )
            return _fetch_dicts(cursor)

    def daily_job_counts(self, since: datetime) -> List[Dict[str, Any]]:
        with self.lock:
            cursor = self.db.execute(
                """
                SELECT substr(created_at, 1, 10) AS date,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS completed,
                       SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS failed,
                       AVG(actual_duration_s) AS average_duration_s
                FROM jobs WHERE created_at >= ?
                GROUP BY date ORDER BY date
                """,
                [JobStatus.COMPLETED.value, JobStatus.FAILED.value, since.isoformat()],
            )
            return _fetch_dicts(cursor)

    def get_transitions(self, job_id: str) -> List[Dict[str, Any]]:
        with self.lock:
            return list(
                self.db["state_transitions"].rows_where(
                    "job_id = ?", [job_id], order_by="id"
                )
            )

    def delete_terminal_before(self, cutoff: datetime) -> int:
        terminal = [s.value for s in TERMINAL_JOB_STATUSES]
        where = (
            f"status IN ({_placeholders(terminal)}) "
            "AND COALESCE(completed_at, created_at) < ?"
        )
        params = [*terminal, cutoff.isoformat()]
        with self.lock, self.db.conn:
            self.db.execute(
                f"DELETE FROM state_transitions WHERE job_id IN (SELECT id FROM jobs WHERE {where})",
                params,
            )
            return self.db.execute(f"DELETE FROM jobs WHERE {where}", params).rowcount

    def delete_jobs(self, video_id: str) -> int:
        with self.lock, self.db.conn:
            self.db.execute(
                "DELETE FROM state_transitions WHERE job_id IN (SELECT id FROM jobs WHERE video_id = ?)",
                [video_id],
            )
            return self.db.execute("DELETE FROM jobs WHERE video_id = ?", [video_id]).rowcount

    def get_lane_flags(self) -> Dict[str, bool]:
        with self.lock:
            rows = self.db.execute("SELECT name, paused FROM lanes").fetchall()
        return {name: bool(paused) for name, paused in rows}

    def set_lane_paused(self, lane: JobPriority, paused: bool) -> None:
        with self.lock, self.db.conn:
            self.db.execute(
                """
                INSERT INTO lanes (name, paused, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET paused = excluded.paused,
                                                updated_at = excluded.updated_at
                """,
                [lane.value, int(paused), datetime.now().isoformat()],
            )

    def record_metrics(self, data: Dict[str, Any]) -> None:
        with self.lock, self.db.conn:
            self.db.execute(
                "INSERT INTO metric_snapshots (timestamp, data) VALUES (?, ?)",
                [datetime.now().isoformat(), json.dumps(data, default=str)],
            )

    def list_metrics(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent snapshots, oldest first."""
        with self.lock:
            rows = self.db.execute(
                "SELECT timestamp, data FROM metric_snapshots ORDER BY id DESC LIMIT ?",
                [limit],
            ).fetchall()
        return [{"timestamp": ts, **json.loads(data)} for ts, data in reversed(rows)]

    def prune_metrics(self, cutoff: datetime) -> int:
        with self.lock, self.db.conn:
            return self.db.execute(
                "DELETE FROM metric_snapshots WHERE timestamp < ?", [cutoff.isoformat()]
            ).rowcount

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail.

        Runs inside the caller's transaction so the audit row commits (or
        rolls back) together with the status change.
        """
        self.db.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                job_id,
                from_state,
                to_state,
                datetime.now().isoformat(),
                worker_id,
                error[:200] if error else None,
            ],
        )
