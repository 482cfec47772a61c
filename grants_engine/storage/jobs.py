"""
Storage layer for Job records.

Handles:
- Creating jobs (one non-terminal job per source)
- State transitions, refusing to reopen terminal jobs
- Per-batch counter updates from the processor
- Queries for the API and the dashboard
"""

import sqlite3
import uuid
from datetime import datetime
from typing import Optional

import structlog

from grants_engine.core.models import Job, JobStatus, JobTrigger
from grants_engine.errors import InvalidTransitionError, NotFoundError, SourceBusyError

from .db import Database, from_db_time, to_db_time

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class JobStore:
    """
    Persistent storage for Job objects.

    Usage:
        store = JobStore(db)
        job = store.create("grants-gov", JobTrigger.MANUAL, now)
        store.mark_running(job.id, now)
        store.finish(job.id, JobStatus.SUCCESS, now, duration_ms=1200, attempts=1)
    """

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        source_id: str,
        trigger: JobTrigger,
        now: datetime,
        status: JobStatus = JobStatus.PENDING,
    ) -> Job:
        """
        Create a job for a source.

        Raises:
            SourceBusyError: if the source already has a PENDING/RUNNING job
        """
        job = Job(
            id=uuid.uuid4().hex,
            source_id=source_id,
            status=status,
            trigger=trigger,
            created_at=now,
            started_at=now if status == JobStatus.RUNNING else None,
        )

        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (id, source_id, status, trigger, created_at, started_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.source_id,
                        job.status.value,
                        job.trigger.value,
                        to_db_time(job.created_at),
                        to_db_time(job.started_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "idx_jobs_one_active_per_source" in str(e) or "jobs.source_id" in str(e):
                raise SourceBusyError(f"Source {source_id} already has an active job") from e
            raise

        logger.debug("job_created", job_id=job.id, source_id=source_id, trigger=trigger.value)
        return job

    def get(self, job_id: str) -> Job:
        """
        Retrieve job by ID.

        Raises:
            NotFoundError: if the job does not exist
        """
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()

        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return self._row_to_job(row)

    def mark_running(self, job_id: str, now: datetime) -> None:
        """PENDING -> RUNNING."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET status = ?, started_at = ? WHERE id = ? AND status = ?",
                (JobStatus.RUNNING.value, to_db_time(now), job_id, JobStatus.PENDING.value),
            )
            if cursor.rowcount == 0:
                self._raise_transition(conn, job_id, JobStatus.RUNNING)

    def finish(
        self,
        job_id: str,
        status: JobStatus,
        now: datetime,
        duration_ms: int,
        attempts: int,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        """
        Move a job to a terminal state.

        Raises:
            InvalidTransitionError: if the job is already terminal
            NotFoundError: if the job does not exist
        """
        if not status.is_terminal:
            raise InvalidTransitionError(f"{status.value} is not a terminal status")

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs SET
                    status = ?,
                    finished_at = ?,
                    duration_ms = ?,
                    attempts = ?,
                    error = ?,
                    error_type = ?
                WHERE id = ? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                """,
                (
                    status.value,
                    to_db_time(now),
                    duration_ms,
                    attempts,
                    error,
                    error_type,
                    job_id,
                    *ACTIVE_STATUSES,
                ),
            )
            if cursor.rowcount == 0:
                self._raise_transition(conn, job_id, status)

    def record_progress(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        found: int,
        inserted: int,
        updated: int,
    ) -> None:
        """Add batch counts to a job, inside the caller's transaction."""
        conn.execute(
            """
            UPDATE jobs SET
                total_found = total_found + ?,
                total_inserted = total_inserted + ?,
                total_updated = total_updated + ?
            WHERE id = ?
            """,
            (found, inserted, updated, job_id),
        )

    def fail_orphaned(self, now: datetime, error_type: str = "interrupted") -> list[str]:
        """
        Fail every non-terminal job.

        Used at startup: a job still PENDING/RUNNING belongs to a process
        that no longer exists.

        Returns:
            IDs of the jobs that were failed
        """
        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT id, started_at, created_at FROM jobs WHERE status IN ({_placeholders(ACTIVE_STATUSES)})",
                ACTIVE_STATUSES,
            ).fetchall()

            for row in rows:
                started = from_db_time(row["started_at"]) or from_db_time(row["created_at"])
                duration_ms = max(0, int((now - started).total_seconds() * 1000))
                conn.execute(
                    """
                    UPDATE jobs SET status = ?, finished_at = ?, duration_ms = ?,
                        error = ?, error_type = ?
                    WHERE id = ?
                    """,
                    (
                        JobStatus.FAILED.value,
                        to_db_time(now),
                        duration_ms,
                        "Job interrupted by engine shutdown",
                        error_type,
                        row["id"],
                    ),
                )

        job_ids = [row["id"] for row in rows]
        if job_ids:
            logger.warning("orphaned_jobs_failed", count=len(job_ids))
        return job_ids

    def active(self, source_id: Optional[str] = None) -> list[Job]:
        """Non-terminal jobs, optionally for one source."""
        query = f"SELECT * FROM jobs WHERE status IN ({_placeholders(ACTIVE_STATUSES)})"
        params: list = list(ACTIVE_STATUSES)
        if source_id is not None:
            query += " AND source_id = ?"
            params.append(source_id)
        query += " ORDER BY created_at"

        with self.db.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def list(
        self,
        source_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = 50,
    ) -> list[Job]:
        """
        List jobs, newest first.

        Args:
            source_id: Only jobs of this source
            status: Only jobs in this status
            since: Only jobs created at or after this time
            until: Only jobs created at or before this time
            limit: Maximum number of jobs (None = all)

        Returns:
            List of Job objects
        """
        clauses = []
        params: list = []

        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(to_db_time(since))
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(to_db_time(until))

        query = "SELECT * FROM jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.db.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def last_status_by_source(self) -> dict[str, JobStatus]:
        """Status of the most recent job of every source that has one."""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT source_id, status FROM jobs AS j
                WHERE rowid = (
                    SELECT rowid FROM jobs
                    WHERE source_id = j.source_id
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT 1
                )
                """
            ).fetchall()
        return {row["source_id"]: JobStatus(row["status"]) for row in rows}

    def _raise_transition(self, conn: sqlite3.Connection, job_id: str, target: JobStatus):
        row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Job not found: {job_id}")
        raise InvalidTransitionError(
            f"Job {job_id} cannot move from {row['status']} to {target.value}"
        )

    def _row_to_job(self, row) -> Job:
        return Job(
            id=row["id"],
            source_id=row["source_id"],
            status=JobStatus(row["status"]),
            trigger=JobTrigger(row["trigger"]),
            created_at=from_db_time(row["created_at"]),
            started_at=from_db_time(row["started_at"]),
            finished_at=from_db_time(row["finished_at"]),
            duration_ms=row["duration_ms"],
            attempts=row["attempts"],
            total_found=row["total_found"],
            total_inserted=row["total_inserted"],
            total_updated=row["total_updated"],
            error=row["error"],
            error_type=row["error_type"],
        )


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)
