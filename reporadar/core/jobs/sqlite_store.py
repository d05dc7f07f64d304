"""
SQLite-backed job store for single-host deployments and tests.

The full job record is stored as JSON; the columns used for dispatch
ordering, filtering and compare-and-set are duplicated beside it with
timestamps as epoch seconds so comparisons are numeric.

Each operation opens its own connection. Claims run inside a
``BEGIN IMMEDIATE`` transaction, which takes the database write lock before
reading, so two workers (in one process or several) cannot claim the same
row.
"""

import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Sequence

from reporadar.core.exceptions import StoreConnectionError
from reporadar.core.jobs.models import (
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    QueueStats,
)
from reporadar.core.logging import get_logger

logger = get_logger(__name__)


def _epoch(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value else None


def _placeholders(count: int) -> str:
    return ", ".join("?" * count)


class SQLiteJobStore:
    """
    SQLite job store.

    Suitable for one host; several processes may share the file.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        run_at REAL NOT NULL,
        created_at REAL NOT NULL,
        completed_at REAL,
        lease_token TEXT,
        lease_expires_at REAL,
        record TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_dispatch
        ON jobs(status, priority DESC, created_at ASC);
    CREATE INDEX IF NOT EXISTS idx_jobs_type ON jobs(type);
    CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(status, lease_expires_at);
    CREATE INDEX IF NOT EXISTS idx_jobs_completed ON jobs(completed_at);
    """

    def __init__(self, db_path: Path, busy_timeout: float = 30.0) -> None:
        """
        Initialize the SQLite job store.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds to wait for the write lock.
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._initialized = False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection in autocommit mode and close it afterwards."""
        try:
            conn = sqlite3.connect(
                self.db_path, timeout=self.busy_timeout, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StoreConnectionError(
                f"Cannot open job database {self.db_path}: {e}"
            ) from e
        conn.row_factory = sqlite3.Row
        with closing(conn):
            yield conn

    async def initialize(self) -> None:
        """Create the schema."""
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)
        self._initialized = True
        logger.debug("SQLite job store ready", path=str(self.db_path))

    async def close(self) -> None:
        self._initialized = False

    @staticmethod
    def _row_values(job: Job) -> List[Any]:
        return [
            job.status.value,
            job.priority,
            _epoch(job.run_at),
            _epoch(job.completed_at),
            job.lease_token,
            _epoch(job.lease_expires_at),
            job.to_json(),
        ]

    async def add(self, job: Job) -> None:
        """Insert a new job."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    id, type, created_at, status, priority, run_at,
                    completed_at, lease_token, lease_expires_at, record
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [job.id, job.type, _epoch(job.created_at), *self._row_values(job)],
            )

    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return Job.from_json(row["record"]) if row else None

    def _write(
        self,
        conn: sqlite3.Connection,
        job: Job,
        expected: Iterable[JobStatus],
        token: Optional[str] = None,
    ) -> bool:
        statuses = [s.value for s in expected]
        query = f"""
            UPDATE jobs SET
                status = ?, priority = ?, run_at = ?, completed_at = ?,
                lease_token = ?, lease_expires_at = ?, record = ?
            WHERE id = ? AND status IN ({_placeholders(len(statuses))})
        """
        params = [*self._row_values(job), job.id, *statuses]
        if token is not None:
            query += " AND lease_token = ?"
            params.append(token)
        cursor = conn.execute(query, params)
        return cursor.rowcount == 1

    async def update(
        self,
        job: Job,
        expected: Iterable[JobStatus],
        token: Optional[str] = None,
    ) -> bool:
        """Compare-and-set write of the job record."""
        with self._connect() as conn:
            return self._write(conn, job, expected, token)

    async def renew_lease(
        self, job_id: str, token: str, lease_expires_at: datetime
    ) -> bool:
        """Extend the lease of a job still held under ``token``."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    """
                    SELECT record FROM jobs
                    WHERE id = ? AND status = ? AND lease_token = ?
                    """,
                    (job_id, JobStatus.PROCESSING.value, token),
                ).fetchone()
                renewed = False
                if row:
                    job = Job.from_json(row["record"])
                    job.lease_expires_at = lease_expires_at
                    renewed = self._write(conn, job, [JobStatus.PROCESSING], token)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return renewed

    async def claim(
        self,
        worker_id: str,
        job_types: Sequence[str],
        now: datetime,
        lease_seconds: float,
    ) -> Optional[Job]:
        """Claim the highest-priority, oldest eligible job."""
        if not job_types:
            return None

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"""
                    SELECT record FROM jobs
                    WHERE status = ? AND run_at <= ?
                      AND type IN ({_placeholders(len(job_types))})
                    ORDER BY priority DESC, created_at ASC, rowid ASC
                    LIMIT 1
                    """,
                    [JobStatus.QUEUED.value, now.timestamp(), *job_types],
                ).fetchone()

                if not row:
                    conn.execute("COMMIT")
                    return None

                job = Job.from_json(row["record"])
                job.mark_processing(
                    worker_id=worker_id,
                    lease_expires_at=now + timedelta(seconds=lease_seconds),
                    now=now,
                )
                self._write(conn, job, [JobStatus.QUEUED])
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return job

    async def promote_delayed(self, now: datetime) -> int:
        # Eligibility is evaluated against run_at at claim time.
        return 0

    async def find_expired(self, now: datetime) -> List[Job]:
        """Processing jobs whose lease ran out."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT record FROM jobs
                WHERE status = ? AND lease_expires_at <= ?
                ORDER BY lease_expires_at ASC
                """,
                (JobStatus.PROCESSING.value, now.timestamp()),
            ).fetchall()
        return [Job.from_json(row["record"]) for row in rows]

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs newest first."""
        query = "SELECT record FROM jobs"
        conditions = []
        params: List[Any] = []

        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if job_type is not None:
            conditions.append("type = ?")
            params.append(job_type)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Job.from_json(row["record"]) for row in rows]

    async def stats(self, now: datetime) -> QueueStats:
        """Count jobs by state; queued jobs not yet due count as delayed."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT status, (status = ? AND run_at > ?) AS is_delayed,
                       COUNT(*) AS n
                FROM jobs
                GROUP BY status, is_delayed
                """,
                (JobStatus.QUEUED.value, now.timestamp()),
            ).fetchall()

        stats = QueueStats()
        for row in rows:
            status = JobStatus(row["status"])
            count = row["n"]
            if status == JobStatus.QUEUED:
                if row["is_delayed"]:
                    stats.delayed += count
                else:
                    stats.waiting += count
            elif status == JobStatus.PROCESSING:
                stats.active += count
            elif status == JobStatus.COMPLETED:
                stats.completed += count
            elif status == JobStatus.FAILED:
                stats.failed += count
            elif status == JobStatus.CANCELLED:
                stats.cancelled += count
        return stats

    async def delete_terminal(self, older_than: datetime) -> int:
        """Delete terminal jobs completed before ``older_than``."""
        statuses = [s.value for s in TERMINAL_STATUSES]
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM jobs
                WHERE status IN ({_placeholders(len(statuses))})
                  AND completed_at < ?
                """,
                [*statuses, older_than.timestamp()],
            )
            return cursor.rowcount
