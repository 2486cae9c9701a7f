"""Health monitor: periodic sweep for orphaned, stalled and backed-up work.

Each check produces issues (what looks wrong) and actions (what was done
about it). Every action is idempotent, so the monitor, the recovery service
and normal workers can run concurrently against the same rows.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable

from harvester import events
from harvester.config import HealthCfg
from harvester.crawl.status import StatusAggregator
from harvester.db.models import JobType, Page, format_ts, ts_ago, utcnow
from harvester.db.repository import Repository
from harvester.errors import SourceNotFound
from harvester.events import EventBus
from harvester.queue.store import JobStore

logger = logging.getLogger("Harvester.Health")

RECOVERY_PRIORITY = 10

QUEUE_HEALTHY = "healthy"
QUEUE_BUSY = "busy"
QUEUE_OVERLOADED = "overloaded"


@dataclass
class QueueStatus:
    pending: int = 0
    processing: int = 0
    state: str = QUEUE_HEALTHY
    oldest_pending_at: str | None = None


@dataclass
class HealthReport:
    """Outcome of one health sweep; the externally visible health signal."""

    healthy: bool
    issues: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    orphaned_pages: int = 0
    stalled_jobs: int = 0
    stalled_pages: int = 0
    queue_status: QueueStatus = field(default_factory=QueueStatus)
    timestamp: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def queue_state(pending: int, cfg: HealthCfg) -> str:
    if pending > cfg.backlog_overloaded:
        return QUEUE_OVERLOADED
    if pending > cfg.backlog_busy:
        return QUEUE_BUSY
    return QUEUE_HEALTHY


def spawn_recovery_jobs(
    store: JobStore, pages: list[Page], now: datetime, max_attempts: int = 3
) -> list[str]:
    """Queue an elevated-priority crawl job per page. Returns the new job ids.

    The key carries a recovery marker plus the sweep timestamp, so it never
    collides with the page's original ``crawl:`` key.
    """
    stamp = format_ts(now)
    spawned: list[str] = []
    for page in pages:
        job = store.enqueue(
            JobType.CRAWL_PAGE,
            source_id=page.source_id,
            page_id=page.id,
            payload={"url": page.url, "recovery": True},
            priority=RECOVERY_PRIORITY,
            job_key=f"recovery:{page.id}:{stamp}",
            max_attempts=max_attempts,
        )
        if job is not None:
            spawned.append(job.id)
    return spawned


def reset_stalled_pages(repo: Repository, pages: list[Page], now: datetime, timeout: int) -> int:
    """Return timed-out in_progress pages to pending, or fail them once retries are spent."""
    stamp = format_ts(now)
    error = f"Page in progress for more than {timeout}s"
    reset = 0
    for page in pages:
        if page.retry_count + 1 >= page.max_retries:
            changed = repo.fail_page(page.id, error, stamp)
        else:
            changed = repo.reset_page(page.id, stamp, error=error, bump_retry=True)
        if changed:
            reset += 1
    return reset


class HealthMonitor:
    """Detect and correct partial failures in the pipeline.

    Args:
        conn: Open database connection.
        config: Timeouts and backlog thresholds.
        bus: Event bus for ``health_check`` events.
        on_backlog: Called with the queue status when the queue is busy or
            overloaded (typically triggers an extra processing pass).
        max_attempts: Attempts given to spawned recovery jobs.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: HealthCfg | None = None,
        *,
        bus: EventBus | None = None,
        on_backlog: Callable[[QueueStatus], None] | None = None,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or HealthCfg()
        self._bus = bus or EventBus(conn)
        self._repo = Repository(conn)
        self._store = JobStore(conn, clock=clock)
        self._aggregator = StatusAggregator(conn, self._bus, clock=clock)
        self._on_backlog = on_backlog
        self._max_attempts = max_attempts
        self._clock = clock

    def run_health_check(self) -> HealthReport:
        """Run every check once and return the report."""
        cfg = self._config
        now = self._clock()
        report = HealthReport(healthy=True, timestamp=format_ts(now))
        touched: set[str] = set()

        orphans = self._repo.find_orphaned_pages(ts_ago(now, cfg.orphan_grace))
        if orphans:
            report.orphaned_pages = len(orphans)
            report.issues.append(f"{len(orphans)} orphaned page(s) without an active job")
            spawned = spawn_recovery_jobs(self._store, orphans, now, self._max_attempts)
            report.actions.append(f"Spawned {len(spawned)} recovery job(s) for orphaned pages")

        reason = f"Reset by health monitor: processing exceeded {cfg.job_timeout}s"
        stalled_jobs = self._store.reset_stalled(ts_ago(now, cfg.job_timeout), reason)
        if stalled_jobs:
            report.stalled_jobs = len(stalled_jobs)
            report.issues.append(f"{len(stalled_jobs)} job(s) processing past {cfg.job_timeout}s")
            report.actions.append(f"Reset {len(stalled_jobs)} stalled job(s) to pending")
            touched.update(j.source_id for j in stalled_jobs if j.source_id)

        stalled_pages = self._repo.find_stalled_pages(ts_ago(now, cfg.job_timeout))
        if stalled_pages:
            report.stalled_pages = reset_stalled_pages(self._repo, stalled_pages, now, cfg.job_timeout)
            report.issues.append(f"{len(stalled_pages)} page(s) in progress past {cfg.job_timeout}s")
            report.actions.append(f"Reset {report.stalled_pages} stalled page(s)")
            touched.update(p.source_id for p in stalled_pages)

        counts = self._store.count_by_status()
        pending = counts["pending"]
        report.queue_status = QueueStatus(
            pending=pending,
            processing=counts["processing"],
            state=queue_state(pending, cfg),
            oldest_pending_at=self._store.oldest_pending_created_at(),
        )
        if report.queue_status.state != QUEUE_HEALTHY:
            report.issues.append(f"Queue {report.queue_status.state}: {pending} pending job(s)")
            if self._on_backlog is not None:
                self._on_backlog(report.queue_status)
                report.actions.append("Triggered extra processing pass")

        report.healthy = not (
            report.orphaned_pages
            or report.stalled_jobs
            or report.stalled_pages
            or report.queue_status.state == QUEUE_OVERLOADED
        )

        for source_id in sorted(touched):
            try:
                self._aggregator.aggregate_status(source_id)
            except SourceNotFound:
                logger.debug("Skipping aggregation of removed source %s", source_id)

        level = logging.INFO if report.healthy else logging.WARNING
        logger.log(
            level,
            "Health check: %s (%d issue(s), %d action(s))",
            "healthy" if report.healthy else "unhealthy",
            len(report.issues),
            len(report.actions),
            extra={"health_report": report.to_dict()},
        )
        self._bus.publish(events.HEALTH_CHECK, metadata=report.to_dict())
        return report
