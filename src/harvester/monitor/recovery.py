"""On-demand recovery: respawn orphaned work, reset timeouts, retry failed pages.

Runs the same detection as the health monitor but independently of its
schedule. Whenever something was spawned or reset, an immediate processing
pass is triggered and the affected sources are re-aggregated.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable

from harvester import events
from harvester.config import HarvesterConfig
from harvester.crawl.status import StatusAggregator
from harvester.db.models import format_ts, ts_ago, utcnow
from harvester.db.repository import Repository
from harvester.errors import HarvesterError, SourceNotFound
from harvester.events import EventBus
from harvester.monitor.health import reset_stalled_pages, spawn_recovery_jobs
from harvester.queue.store import JobStore

logger = logging.getLogger("Harvester.Recovery")

FAILED_RETRY_LIMIT = 100
STALE_REFRESH_LIMIT = 50


@dataclass
class RecoveryReport:
    """Counters of one recovery run.

    ``stalled_jobs_recovered`` counts job rows reset after the processing
    timeout; ``timeout_jobs_reset`` counts in-progress pages reset (or
    failed) after the same timeout.
    """

    orphaned_pages_found: int = 0
    jobs_spawned: int = 0
    stalled_jobs_recovered: int = 0
    timeout_jobs_reset: int = 0
    failed_pages_retried: int = 0
    stale_pages_refreshed: int = 0
    errors: list[str] = field(default_factory=list)
    timestamp: str = ""

    @property
    def changed(self) -> bool:
        return bool(
            self.jobs_spawned
            or self.stalled_jobs_recovered
            or self.timeout_jobs_reset
            or self.failed_pages_retried
            or self.stale_pages_refreshed
        )

    def to_dict(self) -> dict:
        return asdict(self)


class RecoveryService:
    """Repair partial failures so the pipeline converges.

    Args:
        conn: Open database connection.
        config: Loaded configuration (health timeouts, queue attempts).
        bus: Event bus for ``recovery_run`` events.
        trigger: Called once after a run that changed anything, to start an
            immediate processing pass.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: HarvesterConfig | None = None,
        *,
        bus: EventBus | None = None,
        trigger: Callable[[], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._conn = conn
        self._config = config or HarvesterConfig()
        self._bus = bus or EventBus(conn)
        self._repo = Repository(conn)
        self._store = JobStore(conn, clock=clock)
        self._aggregator = StatusAggregator(conn, self._bus, clock=clock)
        self._trigger = trigger
        self._clock = clock

    def run_recovery(self) -> RecoveryReport:
        """Run every recovery step once. A failing step is reported, not raised."""
        health = self._config.health
        max_attempts = self._config.queue.max_attempts
        now = self._clock()
        report = RecoveryReport(timestamp=format_ts(now))
        touched: set[str] = set()

        def _step(name: str, action: Callable[[], None]) -> None:
            try:
                action()
            except (sqlite3.Error, HarvesterError) as exc:
                self._conn.rollback()
                report.errors.append(f"{name}: {exc}")
                logger.exception("Recovery step '%s' failed", name)

        def _stalled_jobs() -> None:
            reason = "Reset by recovery service: job was stalled"
            jobs = self._store.reset_stalled(ts_ago(now, health.job_timeout), reason)
            report.stalled_jobs_recovered = len(jobs)
            touched.update(j.source_id for j in jobs if j.source_id)

        def _stalled_pages() -> None:
            pages = self._repo.find_stalled_pages(ts_ago(now, health.job_timeout))
            report.timeout_jobs_reset = reset_stalled_pages(self._repo, pages, now, health.job_timeout)
            touched.update(p.source_id for p in pages)

        def _orphans() -> None:
            pages = self._repo.find_orphaned_pages(ts_ago(now, health.orphan_grace))
            report.orphaned_pages_found = len(pages)
            report.jobs_spawned += len(spawn_recovery_jobs(self._store, pages, now, max_attempts))
            touched.update(p.source_id for p in pages)

        def _failed_pages() -> None:
            pages = self._repo.find_retryable_failed_pages(FAILED_RETRY_LIMIT)
            stamp = format_ts(now)
            retried = [
                p
                for p in pages
                if self._repo.reset_page(p.id, stamp, error=p.error_message, bump_retry=True)
            ]
            report.failed_pages_retried = len(retried)
            report.jobs_spawned += len(spawn_recovery_jobs(self._store, retried, now, max_attempts))
            touched.update(p.source_id for p in retried)

        def _stale_pending() -> None:
            report.stale_pages_refreshed = self._store.expedite_stale(
                ts_ago(now, health.stale_pending), STALE_REFRESH_LIMIT
            )

        _step("stalled_jobs", _stalled_jobs)
        _step("stalled_pages", _stalled_pages)
        _step("orphaned_pages", _orphans)
        _step("failed_pages", _failed_pages)
        _step("stale_pending", _stale_pending)

        for source_id in sorted(touched):
            try:
                self._aggregator.aggregate_status(source_id)
            except SourceNotFound:
                logger.debug("Skipping aggregation of removed source %s", source_id)

        if report.changed:
            logger.warning(
                "Recovery spawned %d job(s), reset %d stalled job(s) and %d timed-out page(s), "
                "retried %d failed page(s)",
                report.jobs_spawned,
                report.stalled_jobs_recovered,
                report.timeout_jobs_reset,
                report.failed_pages_retried,
                extra={"recovery_report": report.to_dict()},
            )
            if self._trigger is not None:
                self._trigger()
        else:
            logger.debug("Recovery found nothing to do")

        self._bus.publish(events.RECOVERY_RUN, metadata=report.to_dict())
        return report
