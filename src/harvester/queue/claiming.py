"""Atomic job claiming for concurrent workers.

A job is claimed with a conditional UPDATE (``... WHERE status = 'pending'``).
SQLite applies the statement atomically, so when several workers race for the
same row exactly one of them sees ``rowcount == 1``; the others lose the race
and simply move on. No lock table or external coordinator is involved.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from harvester.db.models import Job, format_ts, parse_ts, utcnow
from harvester.errors import ClaimConflict, StorageFailure
from harvester.queue.store import JobStore

logger = logging.getLogger("Harvester.Claiming")

_BASE_BACKOFF_SECONDS = 0.1
_LATENCY_WINDOW = 100


@dataclass
class ClaimingStats:
    """Snapshot returned by ``JobClaimer.get_claiming_stats``."""

    total_pending: int
    total_processing: int
    avg_claim_latency_ms: float
    avg_queue_wait_ms: float
    claim_success_rate: float


class JobClaimer:
    """Hands pending jobs to exactly one worker each.

    Args:
        conn: Open connection owned by the calling worker.
        clock: Returns the current aware UTC datetime (injectable for tests).
        sleep: Sleep function used between retries (injectable for tests).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._conn = conn
        self._store = JobStore(conn, clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._latencies: deque[float] = deque(maxlen=_LATENCY_WINDOW)
        self._attempted = 0
        self._claimed = 0

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim_batch(
        self, max_jobs: int, job_types: list[str] | tuple[str, ...], worker_id: str
    ) -> list[Job]:
        """Claim up to *max_jobs* due jobs of *job_types*, highest priority then oldest first.

        Args:
            max_jobs: Upper bound on jobs returned.
            job_types: Job types this worker can run.
            worker_id: Identifier stored on every claimed job.

        Returns:
            The claimed jobs (status ``processing``), in claim order. Jobs lost
            to another worker between selection and update are left out.

        Raises:
            StorageFailure: If the database is unavailable.
        """
        if max_jobs < 1 or not job_types:
            return []
        started = time.perf_counter()
        now = format_ts(self._clock())
        placeholders = ",".join("?" * len(job_types))
        try:
            candidates = self._conn.execute(
                f"""
                SELECT id FROM jobs
                WHERE status = 'pending' AND scheduled_at <= ? AND job_type IN ({placeholders})
                ORDER BY priority DESC, created_at ASC, rowid ASC
                LIMIT ?
                """,
                [now, *job_types, max_jobs],
            ).fetchall()

            claimed_ids: list[str] = []
            for row in candidates:
                self._attempted += 1
                try:
                    self._try_claim(row["id"], worker_id, now)
                except ClaimConflict:
                    logger.debug("Job %s claimed by another worker", row["id"])
                    continue
                claimed_ids.append(row["id"])
                self._claimed += 1
        except sqlite3.OperationalError as exc:
            self._conn.rollback()
            raise StorageFailure(f"Claim batch failed: {exc}") from exc
        finally:
            self._latencies.append((time.perf_counter() - started) * 1000)

        jobs = [self._store.get(job_id) for job_id in claimed_ids]
        if jobs:
            logger.info(
                "Worker %s claimed %d job(s)",
                worker_id,
                len(jobs),
                extra={"worker_id": worker_id, "claimed": len(jobs)},
            )
        return [j for j in jobs if j is not None]

    def claim_with_retry(
        self, job_id: str, max_retries: int = 3, worker_id: str = "worker"
    ) -> bool:
        """Claim one known job, retrying storage errors with exponential backoff.

        Backoff is 100ms, 200ms, 400ms, ... between attempts. Losing the race to
        another worker returns False straight away: the job is no longer
        pending, so retrying cannot succeed.

        Args:
            job_id: Job to claim.
            max_retries: Total attempts before giving up.
            worker_id: Identifier stored on the job when claimed.

        Returns:
            True if this call claimed the job.
        """
        for attempt in range(1, max_retries + 1):
            started = time.perf_counter()
            self._attempted += 1
            try:
                self._try_claim(job_id, worker_id, format_ts(self._clock()))
            except ClaimConflict:
                logger.debug("Job %s already claimed", job_id)
                return False
            except sqlite3.OperationalError as exc:
                self._conn.rollback()
                if attempt == max_retries:
                    logger.warning(
                        "Giving up on claiming job %s after %d attempts: %s",
                        job_id,
                        attempt,
                        exc,
                    )
                    return False
                self._sleep(_BASE_BACKOFF_SECONDS * (2 ** (attempt - 1)))
                continue
            finally:
                self._latencies.append((time.perf_counter() - started) * 1000)
            self._claimed += 1
            return True
        return False

    def release_bulk(self, job_ids: list[str], reason: str, delay_seconds: float = 0.0) -> int:
        """Return jobs to ``pending`` (drain / rollback). Completed jobs are left alone.

        Args:
            job_ids: Jobs to release.
            reason: Stored in ``error_message``.
            delay_seconds: Pushes ``scheduled_at`` this far past now.

        Returns:
            Number of jobs released.
        """
        if not job_ids:
            return 0
        scheduled = format_ts(self._clock() + timedelta(seconds=delay_seconds))
        placeholders = ",".join("?" * len(job_ids))
        try:
            cur = self._conn.execute(
                f"""
                UPDATE jobs SET status = 'pending', started_at = NULL, worker_id = NULL,
                    error_message = ?, scheduled_at = ?
                WHERE id IN ({placeholders}) AND status != 'completed'
                """,
                [reason, scheduled, *job_ids],
            )
            self._conn.commit()
        except sqlite3.OperationalError as exc:
            self._conn.rollback()
            raise StorageFailure(f"Bulk release failed: {exc}") from exc
        logger.info("Released %d job(s): %s", cur.rowcount, reason)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_claiming_stats(self) -> ClaimingStats:
        """Queue depth, claim latency, queue wait over the last hour, and success rate."""
        counts = {
            row["status"]: row["n"]
            for row in self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM jobs WHERE status IN ('pending', 'processing') GROUP BY status"
            ).fetchall()
        }
        since = format_ts(self._clock() - timedelta(hours=1))
        waits = [
            (parse_ts(r["started_at"]) - parse_ts(r["created_at"])).total_seconds() * 1000
            for r in self._conn.execute(
                "SELECT created_at, started_at FROM jobs WHERE started_at IS NOT NULL AND started_at >= ?",
                (since,),
            ).fetchall()
        ]
        return ClaimingStats(
            total_pending=counts.get("pending", 0),
            total_processing=counts.get("processing", 0),
            avg_claim_latency_ms=(
                sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
            ),
            avg_queue_wait_ms=sum(waits) / len(waits) if waits else 0.0,
            claim_success_rate=self._claimed / self._attempted if self._attempted else 1.0,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _try_claim(self, job_id: str, worker_id: str, now: str) -> None:
        cur = self._conn.execute(
            """
            UPDATE jobs SET status = 'processing', started_at = ?, attempts = attempts + 1,
                worker_id = ?
            WHERE id = ? AND status = 'pending'
            """,
            (now, worker_id, job_id),
        )
        self._conn.commit()
        if cur.rowcount != 1:
            raise ClaimConflict(job_id)
