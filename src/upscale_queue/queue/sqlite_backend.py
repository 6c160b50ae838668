"""SQLite implementation of JobRepository.

This module provides the local-first, crash-safe job store using:
- sqlite-utils for schema management and row access
- WAL mode with synchronous=NORMAL (crash-safe, faster writes)
- One transaction per write so a record either fully lands or is absent
- A state_transitions audit table written in the same transaction
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlite_utils import Database

from .backends import JobRepository
from .models import Job, JobStatus, StateTransition

MAX_ERROR_LENGTH = 2048
MAX_DETAIL_LENGTH = 8192
MAX_HOST_NAME_LENGTH = 256
MAX_SNIPPET_LENGTH = 200

JOB_COLUMNS = [
    "job_id",
    "source_video_path",
    "output_path",
    "processing_kind",
    "settings_json",
    "status",
    "created_at",
    "queued_at",
    "started_at",
    "completed_at",
    "last_updated_at",
    "progress_percentage",
    "current_frame",
    "total_frames",
    "estimated_time_remaining_s",
    "last_error",
    "error_detail",
    "retry_count",
    "max_retries",
    "owning_process_id",
    "owning_host_name",
    "output_file_size_bytes",
]

# SQLite schema SQL
SCHEMA_SQL = """
-- Jobs table
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    source_video_path TEXT NOT NULL,
    output_path TEXT NOT NULL,
    processing_kind TEXT NOT NULL,
    settings_json TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    queued_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    last_updated_at TEXT NOT NULL,
    progress_percentage REAL DEFAULT 0,
    current_frame INTEGER DEFAULT 0,
    total_frames INTEGER,
    estimated_time_remaining_s REAL,
    last_error TEXT,
    error_detail TEXT,
    retry_count INTEGER DEFAULT 0,
    max_retries INTEGER DEFAULT 3,
    owning_process_id INTEGER,
    owning_host_name TEXT,
    output_file_size_bytes INTEGER
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteJobRepository(JobRepository):
    """SQLite-based job store with atomic writes.

    Features:
    - WAL mode for concurrent readers (CLI/API) during processing
    - Write-through: every add/update/delete is its own transaction
    - Storage bounds on error text and host name
    - Automatic state transition logging
    """

    def __init__(self, db_path: str):
        """Initialize job database.

        Args:
            db_path: Path to SQLite database file

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = Database(str(self.db_path))

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        self.db.conn.close()

    # ------------------------------------------------------------------
    # row mapping

    @staticmethod
    def _job_to_row(job: Job) -> Dict[str, Any]:
        return {
            "job_id": job.job_id,
            "source_video_path": job.source_video_path,
            "output_path": job.output_path,
            "processing_kind": job.processing_kind.value,
            "settings_json": json.dumps(job.settings),
            "status": job.status.value,
            "created_at": _iso(job.created_at),
            "queued_at": _iso(job.queued_at),
            "started_at": _iso(job.started_at),
            "completed_at": _iso(job.completed_at),
            "last_updated_at": _iso(job.last_updated_at),
            "progress_percentage": job.progress_percentage,
            "current_frame": job.current_frame,
            "total_frames": job.total_frames,
            "estimated_time_remaining_s": job.estimated_time_remaining_s,
            "last_error": _truncate(job.last_error, MAX_ERROR_LENGTH),
            "error_detail": _truncate(job.error_detail, MAX_DETAIL_LENGTH),
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "owning_process_id": job.owning_process_id,
            "owning_host_name": _truncate(job.owning_host_name, MAX_HOST_NAME_LENGTH),
            "output_file_size_bytes": job.output_file_size_bytes,
        }

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        """Convert SQLite row to Job model."""
        return Job(
            job_id=row["job_id"],
            source_video_path=row["source_video_path"],
            output_path=row["output_path"],
            processing_kind=row["processing_kind"],
            settings=json.loads(row["settings_json"]) if row["settings_json"] else {},
            status=JobStatus(row["status"]),
            created_at=_parse_dt(row["created_at"]),
            queued_at=_parse_dt(row["queued_at"]),
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            last_updated_at=_parse_dt(row["last_updated_at"]),
            progress_percentage=row["progress_percentage"] or 0.0,
            current_frame=row["current_frame"] or 0,
            total_frames=row["total_frames"],
            estimated_time_remaining_s=row["estimated_time_remaining_s"],
            last_error=row["last_error"],
            error_detail=row["error_detail"],
            retry_count=row["retry_count"] or 0,
            max_retries=row["max_retries"] if row["max_retries"] is not None else 3,
            owning_process_id=row["owning_process_id"],
            owning_host_name=row["owning_host_name"],
            output_file_size_bytes=row["output_file_size_bytes"],
        )

    def _rows(self, where: Optional[str] = None, params: Iterable = (), order_by: str = "created_at DESC"):
        return [
            self._row_to_job(dict(row))
            for row in self.db["jobs"].rows_where(where, list(params), order_by=order_by)
        ]

    # ------------------------------------------------------------------
    # writes

    def add(self, job: Job) -> None:
        """Insert a new job (atomic).

        Raises:
            sqlite3.IntegrityError: If job_id already exists
        """
        row = self._job_to_row(job)
        placeholders = ", ".join("?" for _ in JOB_COLUMNS)
        with self.db.conn:
            self.db.execute(
                f"INSERT INTO jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})",
                [row[column] for column in JOB_COLUMNS],
            )
            self._log_transition(job.job_id, None, row["status"], row["last_error"])

    def update(self, job: Job) -> bool:
        """Overwrite a job's record; missing rows are left missing.

        Logs a transition when the stored status differs from ``job.status``.
        """
        row = self._job_to_row(job)
        columns = [column for column in JOB_COLUMNS if column != "job_id"]
        assignments = ", ".join(f"{column} = ?" for column in columns)

        with self.db.conn:
            previous = self.db.execute(
                "SELECT status FROM jobs WHERE job_id = ?", [job.job_id]
            ).fetchone()
            if previous is None:
                return False

            self.db.execute(
                f"UPDATE jobs SET {assignments} WHERE job_id = ?",
                [row[column] for column in columns] + [job.job_id],
            )
            if previous[0] != row["status"]:
                self._log_transition(job.job_id, previous[0], row["status"], row["last_error"])
        return True

    def delete(self, job_id: str) -> bool:
        with self.db.conn:
            cursor = self.db.execute("DELETE FROM jobs WHERE job_id = ?", [job_id])
            self.db.execute("DELETE FROM state_transitions WHERE job_id = ?", [job_id])
        return cursor.rowcount > 0

    def delete_by_status(self, *statuses: JobStatus) -> int:
        """Bulk delete jobs (and their audit rows) in any of ``statuses``."""
        if not statuses:
            return 0
        values = [JobStatus(status).value for status in statuses]
        placeholders = ", ".join("?" for _ in values)
        with self.db.conn:
            self.db.execute(
                f"DELETE FROM state_transitions WHERE job_id IN "
                f"(SELECT job_id FROM jobs WHERE status IN ({placeholders}))",
                values,
            )
            cursor = self.db.execute(f"DELETE FROM jobs WHERE status IN ({placeholders})", values)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # reads

    def get_by_id(self, job_id: str) -> Optional[Job]:
        rows = self._rows("job_id = ?", [job_id])
        return rows[0] if rows else None

    def get_by_ids(self, job_ids: Iterable[str]) -> List[Job]:
        job_ids = list(job_ids)
        if not job_ids:
            return []
        placeholders = ", ".join("?" for _ in job_ids)
        found = {job.job_id: job for job in self._rows(f"job_id IN ({placeholders})", job_ids)}
        return [found[job_id] for job_id in job_ids if job_id in found]

    def get_all(self) -> List[Job]:
        return self._rows()

    def get_by_status(self, *statuses: JobStatus) -> List[Job]:
        if not statuses:
            return []
        values = [JobStatus(status).value for status in statuses]
        placeholders = ", ".join("?" for _ in values)
        return self._rows(f"status IN ({placeholders})", values, order_by="created_at ASC")

    def count_by_status(self, status: JobStatus) -> int:
        return self.db["jobs"].count_where("status = ?", [JobStatus(status).value])

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id ASC"
        )
        return [
            StateTransition(
                id=row["id"],
                job_id=row["job_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                error_snippet=row["error_snippet"],
            )
            for row in rows
        ]

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail (caller holds the transaction).

        Args:
            job_id: Job identifier
            from_state: Previous state (None on insert)
            to_state: New state
            error: Error message if applicable
        """
        self.db.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, error_snippet)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                job_id,
                from_state,
                to_state,
                datetime.now().astimezone().isoformat(),
                error[:MAX_SNIPPET_LENGTH] if error else None,
            ],
        )
