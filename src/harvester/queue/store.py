"""Durable job queue backed by the ``jobs`` table.

Every state change is a single conditional UPDATE so that workers, the
health monitor and the recovery service can act on the same rows without an
external lock: whichever statement matches first wins, the others update
zero rows and treat that as a no-op.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable

from harvester.db.models import Job, JobStatus, format_ts, utcnow
from harvester.db.repository import new_id

logger = logging.getLogger("Harvester.Queue")

_JOB_COLUMNS = """
    id, job_type, source_id, page_id, status, priority, attempts, max_attempts,
    job_key, payload, worker_id, error_message, scheduled_at, started_at,
    completed_at, created_at
"""


class JobStore:
    """Enqueue, complete, fail, and sweep jobs.

    Args:
        conn: Open connection (one per thread/process).
        retry_base_seconds: First retry delay; doubles with every attempt.
        clock: Returns the current aware UTC datetime (injectable for tests).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        retry_base_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._conn = conn
        self._retry_base = retry_base_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: str,
        *,
        source_id: str | None = None,
        page_id: str | None = None,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        job_key: str | None = None,
        max_attempts: int = 3,
        scheduled_at: datetime | None = None,
    ) -> Job | None:
        """Insert a pending job, or return the existing one with the same *job_key*.

        Args:
            job_type: One of JobType.ALL.
            source_id: Owning source, used for aggregation and cancellation.
            page_id: Page the job acts on, if any.
            payload: JSON-serialisable job arguments.
            priority: Higher values are claimed first.
            job_key: Idempotency key; a second enqueue with the same key is a no-op.
            max_attempts: Attempts before a failure becomes terminal.
            scheduled_at: Earliest claim time (defaults to now).

        Returns:
            The stored Job, or None if the keyed row vanished before it could be read back.
        """
        now = self._clock()
        job_id = new_id()
        self._conn.execute(
            """
            INSERT OR IGNORE INTO jobs (
                id, job_type, source_id, page_id, status, priority, max_attempts,
                job_key, payload, scheduled_at, created_at
            ) VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                job_type,
                source_id,
                page_id,
                priority,
                max_attempts,
                job_key,
                json.dumps(payload or {}),
                format_ts(scheduled_at or now),
                format_ts(now),
            ),
        )
        self._conn.commit()
        job = self.get(job_id)
        if job is None and job_key is not None:
            job = self.get_by_key(job_key)
            logger.debug("Job key %s already queued as %s", job_key, job.id if job else None)
        return job

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        row = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return _row_to_job(row) if row else None

    def get_by_key(self, job_key: str) -> Job | None:
        row = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_key = ?", (job_key,)
        ).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        *,
        status: str | None = None,
        source_id: str | None = None,
        page_id: str | None = None,
        limit: int = 1000,
    ) -> list[Job]:
        """Return jobs matching the filters, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("status", status), ("source_id", source_id), ("page_id", page_id)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY created_at, rowid LIMIT ?",
            [*params, limit],
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def count_by_status(self) -> dict[str, int]:
        counts = {
            JobStatus.PENDING: 0,
            JobStatus.PROCESSING: 0,
            JobStatus.COMPLETED: 0,
            JobStatus.FAILED: 0,
        }
        for row in self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status"
        ).fetchall():
            counts[row["status"]] = row["n"]
        return counts

    def oldest_pending_created_at(self) -> str | None:
        row = self._conn.execute(
            "SELECT MIN(created_at) FROM jobs WHERE status = 'pending'"
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Worker transitions (conditional on still holding the job)
    # ------------------------------------------------------------------

    def complete(self, job_id: str, worker_id: str | None = None) -> bool:
        """Mark a processing job completed. False if the worker no longer owns it."""
        now = format_ts(self._clock())
        sql = "UPDATE jobs SET status = 'completed', completed_at = ?, error_message = NULL WHERE id = ? AND status = 'processing'"
        params: list[Any] = [now, job_id]
        if worker_id is not None:
            sql += " AND worker_id = ?"
            params.append(worker_id)
        cur = self._conn.execute(sql, params)
        self._conn.commit()
        return cur.rowcount == 1

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        retry: bool = True,
        worker_id: str | None = None,
    ) -> str | None:
        """Record a failed attempt.

        With attempts left (and *retry*), the job goes back to pending with an
        exponential delay of ``retry_base_seconds * 2**(attempts-1)``; otherwise
        it becomes terminally failed.

        Returns:
            The new status, or None if the job was not held by this worker.
        """
        job = self.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return None
        if worker_id is not None and job.worker_id != worker_id:
            return None

        now = self._clock()
        if retry and job.attempts < job.max_attempts:
            delay = self._retry_base * (2 ** max(0, job.attempts - 1))
            cur = self._conn.execute(
                """
                UPDATE jobs SET status = 'pending', started_at = NULL, worker_id = NULL,
                    error_message = ?, scheduled_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (error, format_ts(now + timedelta(seconds=delay)), job_id),
            )
            new_status = JobStatus.PENDING
        else:
            cur = self._conn.execute(
                """
                UPDATE jobs SET status = 'failed', error_message = ?, completed_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (error, format_ts(now), job_id),
            )
            new_status = JobStatus.FAILED
        self._conn.commit()
        return new_status if cur.rowcount == 1 else None

    # ------------------------------------------------------------------
    # Sweeps (health monitor / recovery / orchestrator)
    # ------------------------------------------------------------------

    def find_stalled(self, cutoff: str, limit: int = 500) -> list[Job]:
        """Processing jobs whose started_at is older than *cutoff*."""
        rows = self._conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
            WHERE status = 'processing' AND started_at < ?
            ORDER BY started_at LIMIT ?
            """,
            (cutoff, limit),
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def reset_stalled(self, cutoff: str, reason: str, limit: int = 500) -> list[Job]:
        """Return stalled jobs to the front of the eligible set.

        Each reset is conditional on the job still being stalled, so running
        two sweeps concurrently resets every job once. ``attempts`` is left
        untouched.

        Returns:
            The jobs this call actually reset.
        """
        now = format_ts(self._clock())
        reset: list[Job] = []
        for job in self.find_stalled(cutoff, limit):
            cur = self._conn.execute(
                """
                UPDATE jobs SET status = 'pending', started_at = NULL, worker_id = NULL,
                    error_message = ?, scheduled_at = ?
                WHERE id = ? AND status = 'processing' AND started_at < ?
                """,
                (reason, now, job.id, cutoff),
            )
            if cur.rowcount == 1:
                reset.append(job)
        self._conn.commit()
        return reset

    def force_reset_processing(self, cutoff: str, reason: str) -> int:
        """Unconditionally push every processing job older than *cutoff* back to pending."""
        cur = self._conn.execute(
            """
            UPDATE jobs SET status = 'pending', started_at = NULL, worker_id = NULL,
                error_message = ?, scheduled_at = ?
            WHERE status = 'processing' AND started_at < ?
            """,
            (reason, format_ts(self._clock()), cutoff),
        )
        self._conn.commit()
        return cur.rowcount

    def expedite_stale(self, cutoff: str, limit: int = 50) -> int:
        """Pull forward deferred jobs behind pages that have waited since before *cutoff*."""
        now = format_ts(self._clock())
        cur = self._conn.execute(
            """
            UPDATE jobs SET scheduled_at = ?
            WHERE id IN (
                SELECT j.id FROM jobs j JOIN pages p ON p.id = j.page_id
                WHERE j.status = 'pending' AND j.scheduled_at > ?
                  AND p.status = 'pending' AND p.created_at < ?
                ORDER BY p.created_at LIMIT ?
            )
            """,
            (now, now, cutoff, limit),
        )
        self._conn.commit()
        return cur.rowcount

    def cancel_for_source(self, source_id: str, reason: str = "cancelled") -> int:
        """Fail every pending/processing job of a source so no worker continues it."""
        cur = self._conn.execute(
            """
            UPDATE jobs SET status = 'failed', error_message = ?, completed_at = ?
            WHERE source_id = ? AND status IN ('pending', 'processing')
            """,
            (reason, format_ts(self._clock()), source_id),
        )
        self._conn.commit()
        return cur.rowcount


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        job_type=row["job_type"],
        source_id=row["source_id"],
        page_id=row["page_id"],
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        job_key=row["job_key"],
        payload=row["payload"],
        worker_id=row["worker_id"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
    )
