"""SQLite implementation of JobStore.

Local-first, crash-safe job storage using:
- sqlite-utils over a single shared connection
- WAL journal with synchronous=FULL (a committed transition survives power loss)
- An RLock serializing every call (worker thread + API threads)
- A state_transitions audit table
- A last_heartbeat column so a live job is never taken for an abandoned one
"""

import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlite_utils import Database

from .backends import JobStore
from .models import JobStatus, QueueJob, TERMINAL_STATUSES


SCHEMA_SQL = """
-- Render jobs
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    label TEXT NOT NULL,
    status TEXT NOT NULL,
    progress REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    payload TEXT NOT NULL,
    output_url TEXT,
    output_file_name TEXT,
    error TEXT,
    encoder_used TEXT,
    last_heartbeat TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);

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

# Columns update() may write; id, label, created_at and payload are immutable
MUTABLE_COLUMNS = frozenset({
    "status",
    "progress",
    "started_at",
    "completed_at",
    "output_url",
    "output_file_name",
    "error",
    "encoder_used",
    "last_heartbeat",
})

# Columns written at most once
WRITE_ONCE_COLUMNS = frozenset({"started_at", "completed_at"})

# Every column except payload, for list/status queries
VIEW_COLUMNS = (
    "id, label, status, progress, created_at, started_at, completed_at, "
    "output_url, output_file_name, error, encoder_used, last_heartbeat"
)


def _timestamp(value: Optional[datetime] = None) -> str:
    # Fixed width keeps lexical order equal to chronological order
    return (value or datetime.now()).isoformat(timespec="microseconds")


def _to_db(column: str, value: Any) -> Any:
    if isinstance(value, JobStatus):
        return value.value
    if isinstance(value, datetime):
        return _timestamp(value)
    return value


class SQLiteJobStore(JobStore):
    """SQLite-backed job store.

    Args:
        db_path: Path to the SQLite database file (parents are created)
        audit: Record every status change in ``state_transitions``
    """

    def __init__(self, db_path: str, audit: bool = True):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.audit = audit

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.db = Database(conn)
        self._lock = threading.RLock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=FULL")
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)
        # Databases created before heartbeats were tracked
        if "last_heartbeat" not in self.db["jobs"].columns_dict:
            self.db["jobs"].add_column("last_heartbeat", str)

    def add(self, job_id: str, label: str, payload: str) -> QueueJob:
        job = QueueJob(id=job_id, label=label, payload=payload)
        with self._lock, self.db.conn:
            self.db.execute(
                """
                INSERT INTO jobs (id, label, status, progress, created_at, payload)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (job.id, job.label, JobStatus.PENDING.value, _timestamp(job.created_at), payload),
            )
            self._log_transition(job.id, None, JobStatus.PENDING.value)
        return job

    def get(self, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        return self._row_to_job(rows[0]) if rows else None

    def get_all(self) -> List[QueueJob]:
        with self._lock:
            rows = list(
                self.db["jobs"].rows_where(
                    select=VIEW_COLUMNS, order_by="created_at DESC, rowid DESC"
                )
            )
        return [self._row_to_job(row) for row in rows]

    def next_pending(self) -> Optional[QueueJob]:
        with self._lock:
            rows = list(
                self.db["jobs"].rows_where(
                    "status = ?",
                    [JobStatus.PENDING.value],
                    order_by="created_at ASC, rowid ASC",
                    limit=1,
                )
            )
        return self._row_to_job(rows[0]) if rows else None

    def update(
        self, job_id: str, expect_status: Optional[JobStatus] = None, **fields: Any
    ) -> bool:
        unknown = set(fields) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update column(s): {', '.join(sorted(unknown))}")
        if not fields:
            return False

        assignments = []
        params: List[Any] = []
        for column, value in fields.items():
            if column in WRITE_ONCE_COLUMNS:
                assignments.append(f"{column} = COALESCE({column}, ?)")
            else:
                assignments.append(f"{column} = ?")
            params.append(_to_db(column, value))

        where = "id = ?"
        params.append(job_id)
        if expect_status is not None:
            where += " AND status = ?"
            params.append(_to_db("status", expect_status))

        with self._lock, self.db.conn:
            before = self._current_status(job_id)
            cursor = self.db.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE {where}", params
            )
            changed = cursor.rowcount > 0
            new_status = fields.get("status")
            if changed and new_status is not None:
                new_status = _to_db("status", new_status)
                if new_status != before:
                    self._log_transition(job_id, before, new_status, fields.get("error"))
        return changed

    def set_progress(self, job_id: str, progress: float) -> bool:
        progress = min(1.0, max(0.0, float(progress)))
        with self._lock, self.db.conn:
            self.db.execute(
                "UPDATE jobs SET progress = ? WHERE id = ? AND status = ? AND progress < ?",
                (progress, job_id, JobStatus.RENDERING.value, progress),
            )
            return self._current_status(job_id) == JobStatus.RENDERING.value

    def cancel(self, job_id: str) -> None:
        with self._lock, self.db.conn:
            before = self._current_status(job_id)
            if before is None or before == JobStatus.CANCELLED.value:
                return
            self.db.execute(
                """
                UPDATE jobs
                SET status = ?, completed_at = COALESCE(completed_at, ?)
                WHERE id = ?
                """,
                (JobStatus.CANCELLED.value, _timestamp(), job_id),
            )
            self._log_transition(job_id, before, JobStatus.CANCELLED.value)

    def delete(self, job_id: str) -> None:
        with self._lock, self.db.conn:
            self.db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    def clear(self) -> int:
        terminal = [status.value for status in TERMINAL_STATUSES]
        placeholders = ", ".join("?" for _ in terminal)
        with self._lock, self.db.conn:
            cursor = self.db.execute(
                f"DELETE FROM jobs WHERE status IN ({placeholders})", terminal
            )
            return cursor.rowcount

    def heartbeat(self, job_id: str) -> bool:
        """Refresh last_heartbeat of a rendering job.

        Returns:
            False if the job is no longer rendering
        """
        with self._lock, self.db.conn:
            cursor = self.db.execute(
                "UPDATE jobs SET last_heartbeat = ? WHERE id = ? AND status = ?",
                (_timestamp(), job_id, JobStatus.RENDERING.value),
            )
            return cursor.rowcount > 0

    def interrupted(self, stale_after_s: float) -> List[QueueJob]:
        """Rendering jobs with no heartbeat for ``stale_after_s`` seconds.

        A job whose heartbeat was never written (or was released by a
        worker that stopped) counts as stale.
        """
        cutoff = _timestamp(datetime.now() - timedelta(seconds=stale_after_s))
        with self._lock:
            rows = list(
                self.db["jobs"].rows_where(
                    "status = ? AND (last_heartbeat IS NULL OR last_heartbeat < ?)",
                    [JobStatus.RENDERING.value, cutoff],
                    order_by="created_at ASC, rowid ASC",
                )
            )
        return [self._row_to_job(row) for row in rows]

    def claim_interrupted(self, job_id: str, stale_after_s: float) -> bool:
        """Take over a stale rendering job by writing a fresh heartbeat.

        Only one caller wins; a job that is heartbeating again is left alone.
        """
        cutoff = _timestamp(datetime.now() - timedelta(seconds=stale_after_s))
        with self._lock, self.db.conn:
            cursor = self.db.execute(
                """
                UPDATE jobs SET last_heartbeat = ?
                WHERE id = ? AND status = ?
                  AND (last_heartbeat IS NULL OR last_heartbeat < ?)
                """,
                (_timestamp(), job_id, JobStatus.RENDERING.value, cutoff),
            )
            return cursor.rowcount > 0

    def transitions(self, job_id: str) -> List[Dict[str, Any]]:
        """Audit trail for one job, oldest first."""
        with self._lock:
            return list(
                self.db["state_transitions"].rows_where(
                    "job_id = ?", [job_id], order_by="id"
                )
            )

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    def _current_status(self, job_id: str) -> Optional[str]:
        row = self.db.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return row[0] if row else None

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> QueueJob:
        """Convert a sqlite-utils row dict to a QueueJob."""
        return QueueJob(
            id=row["id"],
            label=row["label"],
            status=JobStatus(row["status"]),
            progress=row["progress"],
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row.get("started_at") else None,
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row.get("completed_at") else None
            ),
            payload=row.get("payload") or "",
            output_url=row.get("output_url"),
            output_file_name=row.get("output_file_name"),
            error=row.get("error"),
            encoder_used=row.get("encoder_used"),
            last_heartbeat=(
                datetime.fromisoformat(row["last_heartbeat"]) if row.get("last_heartbeat") else None
            ),
        )

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail (caller holds the transaction)."""
        if not self.audit:
            return
        self.db.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, error_snippet)
            VALUES (?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _timestamp(), error[:200] if error else None),
        )
