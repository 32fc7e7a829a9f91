"""
SQLite database for persistent batch job storage.

This module provides the durable store shared by every component of the batch
engine: jobs, their groups, and the download events recorded by the
telemetry sink. The store is the single source of truth for status; one
connection is opened per operation so the same handle can be used from the
worker, reaper and request threads.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from .models import GroupStatus, JobStatus
from .utils import isoformat, parse_datetime, utc_now


# Default database path
DEFAULT_DB_PATH = Path("data/pdf_merge.db")

# Columns that callers may set through update_job / transition_* helpers
_JOB_FIELDS = frozenset({"status", "started_at", "completed_at", "expires_at", "completed", "failed"})
_GROUP_FIELDS = frozenset({"status", "file_path", "file_size", "error_message", "source_errors", "completed_at"})
_COUNTER_FIELDS = frozenset({"completed", "failed"})


class JobDeletionError(RuntimeError):
    """Raised when deleting a job would destroy processed group history."""


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _to_column(value: Any) -> Any:
    """Convert a Python value to its SQLite column representation."""
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, (JobStatus, GroupStatus)):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _assignments(fields: Dict[str, Any], allowed: frozenset) -> Tuple[List[str], List[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")
    columns = [f"{key} = ?" for key in fields]
    values = [_to_column(value) for value in fields.values()]
    return columns, values


def _status_values(statuses: Iterable[Any]) -> List[str]:
    return [_to_column(status) for status in statuses]


class JobStore:
    """
    SQLite store for batch jobs and groups.

    Thread-safe: SQLite handles concurrent access with WAL mode, and state
    transitions are compare-and-set updates so a stale writer cannot regress
    a status.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    webhook_url TEXT NOT NULL,
                    metadata TEXT,
                    total_groups INTEGER NOT NULL,
                    completed INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    expires_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS batch_groups (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL REFERENCES jobs(id),
                    position INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    sources TEXT NOT NULL,
                    status TEXT NOT NULL,
                    file_path TEXT,
                    file_size INTEGER,
                    error_message TEXT,
                    source_errors TEXT,
                    completed_at TEXT,
                    UNIQUE (job_id, name)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS download_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    response_time_ms INTEGER,
                    error_message TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status_created_at
                ON jobs(status, created_at)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_batch_groups_job_id
                ON batch_groups(job_id, position)
            """)

    # ------------------------------------------------------------------ jobs

    def create_job(
        self,
        owner_id: str,
        webhook_url: str,
        groups: Sequence[Tuple[str, Sequence[str]]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a queued job and its pending groups in one transaction.

        Args:
            owner_id: The app that submitted the job
            webhook_url: Where the completion payload is posted
            groups: (name, sources) pairs in submission order
            metadata: Optional author/subject/keywords applied to every output

        Returns:
            The created job as a dictionary, including its groups
        """
        job_id = uuid4().hex
        created_at = utc_now()

        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO jobs (
                    id, owner_id, webhook_url, metadata, total_groups,
                    status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                job_id,
                owner_id,
                webhook_url,
                json.dumps(metadata) if metadata else None,
                len(groups),
                JobStatus.QUEUED.value,
                isoformat(created_at),
            ))

            conn.executemany("""
                INSERT INTO batch_groups (id, job_id, position, name, sources, status)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (uuid4().hex, job_id, position, name, json.dumps(list(sources)), GroupStatus.PENDING.value)
                for position, (name, sources) in enumerate(groups)
            ])

        return self.get_job(job_id)  # type: ignore[return-value]

    def get_job(
        self,
        job_id: str,
        owner_id: Optional[str] = None,
        include_groups: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID.

        Args:
            job_id: The job ID
            owner_id: When given, only return the job if this app owns it
            include_groups: Attach the job's groups in submission order

        Returns:
            Job data dictionary or None if not found
        """
        query = "SELECT * FROM jobs WHERE id = ?"
        params: List[Any] = [job_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)

        with self._get_connection() as conn:
            row = conn.execute(query, params).fetchone()
            if not row:
                return None

            job = self._job_row_to_dict(row)
            if include_groups:
                rows = conn.execute(
                    "SELECT * FROM batch_groups WHERE job_id = ? ORDER BY position ASC", (job_id,)
                ).fetchall()
                job["groups"] = [self._group_row_to_dict(group) for group in rows]
            return job

    def job_exists(self, job_id: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return row is not None

    def next_queued_job_id(self) -> Optional[str]:
        """Return the oldest queued job, or None when the queue is empty."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT id FROM jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
                (JobStatus.QUEUED.value,),
            ).fetchone()
            return row["id"] if row else None

    def list_jobs(
        self,
        statuses: Optional[Iterable[JobStatus]] = None,
        expires_before: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
        include_groups: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        List jobs ordered by creation time (oldest first).

        Args:
            statuses: Only return jobs in one of these statuses
            expires_before: Only return jobs whose expires_at is earlier
            started_before: Only return jobs whose started_at is earlier
            include_groups: Attach each job's groups

        Returns:
            List of job data dictionaries
        """
        clauses: List[str] = []
        params: List[Any] = []

        if statuses is not None:
            values = _status_values(statuses)
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        if expires_before is not None:
            clauses.append("expires_at IS NOT NULL AND expires_at < ?")
            params.append(isoformat(expires_before))

        if started_before is not None:
            clauses.append("started_at IS NOT NULL AND started_at < ?")
            params.append(isoformat(started_before))

        query = "SELECT id FROM jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._get_connection() as conn:
            ids = [row["id"] for row in conn.execute(query, params).fetchall()]

        jobs = [self.get_job(job_id, include_groups=include_groups) for job_id in ids]
        return [job for job in jobs if job is not None]

    def transition_job(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        status: JobStatus,
        **fields: Any,
    ) -> bool:
        """
        Move a job to a new status only if it is currently in an expected one.

        Returns:
            True if the job was updated, False if its status did not match
        """
        expected_values = _status_values(expected)
        columns, values = _assignments({"status": status, **fields}, _JOB_FIELDS)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(columns)} "
                f"WHERE id = ? AND status IN ({', '.join('?' for _ in expected_values)})",
                [*values, job_id, *expected_values],
            )
            return cursor.rowcount > 0

    def update_job(self, job_id: str, **fields: Any) -> None:
        """Update job fields unconditionally."""
        if not fields:
            return
        columns, values = _assignments(fields, _JOB_FIELDS)
        with self._get_connection() as conn:
            conn.execute(f"UPDATE jobs SET {', '.join(columns)} WHERE id = ?", [*values, job_id])

    def increment_job_counter(self, job_id: str, counter: str) -> bool:
        """
        Increment the completed or failed counter of a job.

        The update is guarded so that completed + failed never exceeds
        total_groups.

        Returns:
            True if the counter was incremented
        """
        if counter not in _COUNTER_FIELDS:
            raise ValueError(f"Unknown counter: {counter}")
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {counter} = {counter} + 1 "
                "WHERE id = ? AND completed + failed < total_groups",
                (job_id,),
            )
            return cursor.rowcount > 0

    def reset_job(self, job_id: str) -> None:
        """
        Put a job and all of its groups back to their initial state.

        Used to requeue jobs abandoned in processing; the job restarts every
        group from scratch.
        """
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE jobs SET status = ?, completed = 0, failed = 0,
                    started_at = NULL, completed_at = NULL, expires_at = NULL
                WHERE id = ?
            """, (JobStatus.QUEUED.value, job_id))
            conn.execute("""
                UPDATE batch_groups SET status = ?, file_path = NULL, file_size = NULL,
                    error_message = NULL, source_errors = NULL, completed_at = NULL
                WHERE job_id = ?
            """, (GroupStatus.PENDING.value, job_id))

    def count_jobs_for_owner(self, owner_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM jobs WHERE owner_id = ?", (owner_id,)).fetchone()
            return int(row["n"])

    def delete_job(self, job_id: str) -> bool:
        """
        Delete a job that has not started processing.

        Args:
            job_id: The job ID

        Returns:
            True if deleted, False if not found

        Raises:
            JobDeletionError: If any of the job's groups has left pending
        """
        with self._get_connection() as conn:
            if conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone() is None:
                return False

            processed = conn.execute(
                "SELECT COUNT(*) AS n FROM batch_groups WHERE job_id = ? AND status != ?",
                (job_id, GroupStatus.PENDING.value),
            ).fetchone()
            if processed["n"] > 0:
                raise JobDeletionError(
                    f"Cannot delete job {job_id}: {processed['n']} group(s) already processed"
                )

            conn.execute("DELETE FROM batch_groups WHERE job_id = ?", (job_id,))
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    # ---------------------------------------------------------------- groups

    def get_group(self, job_id: str, name: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM batch_groups WHERE job_id = ? AND name = ?", (job_id, name)
            ).fetchone()
            return self._group_row_to_dict(row) if row else None

    def transition_group(
        self,
        group_id: str,
        expected: Iterable[GroupStatus],
        status: GroupStatus,
        **fields: Any,
    ) -> bool:
        """
        Move a group to a new status only if it is currently in an expected one.

        Returns:
            True if the group was updated, False if its status did not match
        """
        expected_values = _status_values(expected)
        columns, values = _assignments({"status": status, **fields}, _GROUP_FIELDS)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE batch_groups SET {', '.join(columns)} "
                f"WHERE id = ? AND status IN ({', '.join('?' for _ in expected_values)})",
                [*values, group_id, *expected_values],
            )
            return cursor.rowcount > 0

    def clear_group_files(self, job_id: str) -> None:
        """Drop the file reference of every group of a job, keeping the records."""
        with self._get_connection() as conn:
            conn.execute("UPDATE batch_groups SET file_path = NULL WHERE job_id = ?", (job_id,))

    def count_groups_by_status(self) -> Dict[str, int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM batch_groups GROUP BY status"
            ).fetchall()
            return {row["status"]: int(row["n"]) for row in rows}

    # ------------------------------------------------------------- telemetry

    def record_download_event(
        self,
        url: str,
        status_code: int,
        response_time_ms: Optional[int] = None,
        error_message: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO download_events (url, status_code, timestamp, response_time_ms, error_message)
                VALUES (?, ?, ?, ?, ?)
            """, (url, status_code, isoformat(timestamp or utc_now()), response_time_ms, error_message))

    def list_download_events(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM download_events ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [
                {
                    "url": row["url"],
                    "status_code": row["status_code"],
                    "timestamp": parse_datetime(row["timestamp"]),
                    "response_time_ms": row["response_time_ms"],
                    "error_message": row["error_message"],
                }
                for row in rows
            ]

    # --------------------------------------------------------------- helpers

    def _job_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a jobs row to a job data dictionary."""
        return {
            "id": row["id"],
            "owner_id": row["owner_id"],
            "webhook_url": row["webhook_url"],
            "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
            "total_groups": row["total_groups"],
            "completed": row["completed"],
            "failed": row["failed"],
            "status": JobStatus(row["status"]),
            "created_at": parse_datetime(row["created_at"]),
            "started_at": parse_datetime(row["started_at"]),
            "completed_at": parse_datetime(row["completed_at"]),
            "expires_at": parse_datetime(row["expires_at"]),
        }

    def _group_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a groups row to a group data dictionary."""
        return {
            "id": row["id"],
            "job_id": row["job_id"],
            "position": row["position"],
            "name": row["name"],
            "sources": json.loads(row["sources"]),
            "status": GroupStatus(row["status"]),
            "file_path": Path(row["file_path"]) if row["file_path"] else None,
            "file_size": row["file_size"],
            "error_message": row["error_message"],
            "source_errors": json.loads(row["source_errors"]) if row["source_errors"] else [],
            "completed_at": parse_datetime(row["completed_at"]),
        }
