"""Crawl orchestrator: owns the health, queue and recovery timers.

One ``CrawlOrchestrator`` is constructed at process start. ``start()`` spawns
three daemon threads that each wait on a shared stop event; ``stop()`` (or
leaving the context manager) sets it and joins them. Every thread opens its
own database connection.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator

from harvester import events
from harvester.config import HarvesterConfig
from harvester.crawl.robots import RobotsChecker
from harvester.crawl.worker import Worker
from harvester.db.connection import Database
from harvester.db.models import ts_ago, utcnow
from harvester.db.repository import new_id
from harvester.errors import StorageFailure
from harvester.events import EventBus
from harvester.monitor.health import QUEUE_OVERLOADED, HealthMonitor, HealthReport, QueueStatus
from harvester.monitor.recovery import RecoveryReport, RecoveryService
from harvester.queue.store import JobStore

logger = logging.getLogger("Harvester.Orchestrator")

EMERGENCY_RESET_REASON = "Emergency reset by orchestrator"

WorkerFactory = Callable[[sqlite3.Connection, str], Worker]


class CrawlOrchestrator:
    """Supervise the pipeline on fixed intervals.

    Args:
        db: Database whose ``connect()`` is called once per thread or pass.
        config: Loaded configuration (intervals in the ``health`` section).
        worker_factory: Builds a Worker for a connection and worker id.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        db: Database,
        config: HarvesterConfig | None = None,
        *,
        worker_factory: WorkerFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._config = config or HarvesterConfig()
        self._clock = clock
        self._robots = (
            RobotsChecker.from_config(self._config.crawl) if self._config.crawl.respect_robots else None
        )
        self._worker_factory = worker_factory or self._default_worker
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._threads: list[threading.Thread] = []
        self._executor: ThreadPoolExecutor | None = None
        self._scale_futures: list[Future] = []
        self._scale_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Start the three timer threads."""
        if self.is_running:
            raise RuntimeError("Orchestrator is already running")
        self._stop.clear()
        health = self._config.health
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, health.scale_out_workers), thread_name_prefix="harvester-scale"
        )
        self._threads = [
            threading.Thread(
                target=self._timer,
                args=("health", health.health_interval, self.run_health_tick),
                name="harvester-health",
                daemon=True,
            ),
            threading.Thread(target=self._queue_loop, name="harvester-queue", daemon=True),
            threading.Thread(
                target=self._timer,
                args=("recovery", health.recovery_interval, self.run_recovery_tick),
                name="harvester-recovery",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Orchestrator started (health %.0fs, queue %.0fs, recovery %.0fs)",
            health.health_interval,
            health.queue_interval,
            health.recovery_interval,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Signal every timer to stop and wait for them."""
        self._stop.set()
        self._wake.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Orchestrator stopped")

    def __enter__(self) -> CrawlOrchestrator:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def run_health_tick(self) -> HealthReport:
        with self._connection() as conn:
            monitor = HealthMonitor(
                conn,
                self._config.health,
                on_backlog=self._on_backlog,
                max_attempts=self._config.queue.max_attempts,
                clock=self._clock,
            )
            return monitor.run_health_check()

    def run_queue_tick(self) -> int:
        """Run one processing pass on a fresh connection. Returns jobs handled."""
        return self._run_pass(f"orchestrator-{new_id()[:8]}")

    def run_recovery_tick(self) -> RecoveryReport:
        with self._connection() as conn:
            service = RecoveryService(
                conn, self._config, trigger=self.trigger_processing, clock=self._clock
            )
            return service.run_recovery()

    def trigger_processing(self) -> None:
        """Wake the queue timer for an immediate pass."""
        self._wake.set()

    def emergency_reset(self) -> int:
        """Force every processing job older than the job timeout back to pending.

        Returns:
            Number of jobs reset.
        """
        timeout = self._config.health.job_timeout
        with self._connection() as conn:
            count = JobStore(conn, clock=self._clock).force_reset_processing(
                ts_ago(self._clock(), timeout), EMERGENCY_RESET_REASON
            )
            EventBus(conn).publish(
                events.EMERGENCY_RESET, metadata={"jobs_reset": count, "timeout": timeout}
            )
        logger.warning("Emergency reset returned %d job(s) to pending", count)
        self.trigger_processing()
        return count

    def scale_out(self, workers: int | None = None) -> list[Future]:
        """Run extra concurrent processing passes, each with its own connection.

        Does nothing while a previous scale-out is still running, or when the
        orchestrator has not been started.
        """
        count = workers or self._config.health.scale_out_workers
        with self._scale_lock:
            if self._executor is None:
                logger.debug("Scale-out requested while stopped; ignoring")
                return []
            if any(not f.done() for f in self._scale_futures):
                logger.debug("Scale-out already in progress")
                return []
            self._scale_futures = [
                self._executor.submit(self._run_pass, f"scale-{i}-{new_id()[:8]}")
                for i in range(count)
            ]
            logger.info("Scaling out with %d extra processing pass(es)", count)
            return list(self._scale_futures)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_backlog(self, status: QueueStatus) -> None:
        if status.state == QUEUE_OVERLOADED:
            self.scale_out()
        else:
            self.trigger_processing()

    def _timer(self, name: str, interval: float, tick: Callable[[], object]) -> None:
        while not self._stop.is_set():
            try:
                tick()
            except Exception:
                logger.exception("%s tick failed", name.capitalize())
            self._stop.wait(interval)

    def _queue_loop(self) -> None:
        conn = self._db.connect()
        try:
            worker = self._worker_factory(conn, f"orchestrator-{new_id()[:8]}")
            interval = self._config.health.queue_interval
            while not self._stop.is_set():
                try:
                    handled = worker.run_once()
                except StorageFailure as exc:
                    logger.warning("Queue tick could not claim jobs: %s", exc)
                    handled = 0
                except Exception:
                    logger.exception("Queue tick failed")
                    handled = 0
                if handled == 0:
                    self._wake.wait(interval)
                    self._wake.clear()
        finally:
            conn.close()

    def _run_pass(self, worker_id: str) -> int:
        with self._connection() as conn:
            return self._worker_factory(conn, worker_id).run_once()

    def _default_worker(self, conn: sqlite3.Connection, worker_id: str) -> Worker:
        return Worker(conn, self._config, robots=self._robots, worker_id=worker_id, clock=self._clock)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._db.connect()
        try:
            yield conn
        finally:
            conn.close()
