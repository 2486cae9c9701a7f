"""Source status aggregation.

A source's crawl status is never written by workers directly. It is derived
from the statuses of its pages plus the recrawl overlay, and recomputed from
scratch on every page outcome:

    pending -> in_progress -> ready_for_training -> training -> trained
                                                \\-> failed

``recrawling`` overlays any of these while a recrawl is in flight and exits
to ``ready_for_training`` (at least one page completed) or ``failed``.

The training axis lives in its own columns; see
``Repository.write_crawl_state`` for how the two axes are combined.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from harvester import events
from harvester.db.models import (
    ContentStats,
    CrawlState,
    PageStatus,
    SourceStatus,
    TrainingStatus,
    format_ts,
    utcnow,
)
from harvester.db.repository import Repository
from harvester.errors import SourceNotFound
from harvester.events import EventBus

logger = logging.getLogger("Harvester.Status")

TRAINING_STARTED = "training_started"
TRAINING_COMPLETED = "training_completed"
TRAINING_FAILED = "training_failed"

_TRAINING_EVENTS = {
    TRAINING_STARTED: TrainingStatus.TRAINING,
    TRAINING_COMPLETED: TrainingStatus.TRAINED,
    TRAINING_FAILED: TrainingStatus.FAILED,
}

# Statuses a non-recrawling source never leaves for pending/in_progress.
_SETTLED_STATUSES = frozenset(
    {
        SourceStatus.READY_FOR_TRAINING,
        SourceStatus.TRAINING,
        SourceStatus.TRAINED,
        SourceStatus.FAILED,
    }
)


@dataclass
class AggregationResult:
    """Outcome of one aggregation pass.

    ``previous_status`` is informational and excluded from equality, so two
    passes over unchanged pages compare equal.
    """

    source_id: str
    status: str
    progress: int
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    pending_jobs: int
    in_progress_jobs: int
    compression_stats: ContentStats
    error_summary: str | None = None
    previous_status: str | None = field(default=None, compare=False)

    @property
    def changed(self) -> bool:
        return self.previous_status != self.status


def compute_progress(total: int, settled: int) -> int:
    if total <= 0:
        return 0
    return round(100 * settled / total)


def derive_status(counts: dict[str, int], is_recrawling: bool) -> str:
    """Crawl status implied by page *counts* (keys are PageStatus values)."""
    pending = counts.get(PageStatus.PENDING, 0)
    in_progress = counts.get(PageStatus.IN_PROGRESS, 0)
    completed = counts.get(PageStatus.COMPLETED, 0)
    failed = counts.get(PageStatus.FAILED, 0)
    total = pending + in_progress + completed + failed

    if is_recrawling:
        if pending or in_progress:
            return SourceStatus.RECRAWLING
        return SourceStatus.READY_FOR_TRAINING if completed else SourceStatus.FAILED

    if total == 0:
        return SourceStatus.PENDING
    if completed + failed == total:
        return SourceStatus.READY_FOR_TRAINING
    if in_progress or completed or failed:
        return SourceStatus.IN_PROGRESS
    return SourceStatus.PENDING


class StatusAggregator:
    """Recompute and persist the aggregate status of sources.

    Args:
        conn: Open database connection.
        bus: Event bus for ``status_aggregated`` / ``source_status_changed``.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        bus: EventBus | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = Repository(conn)
        self._bus = bus or EventBus(conn)
        self._clock = clock

    def aggregate_status(self, source_id: str, event_type: str | None = None) -> AggregationResult:
        """Roll page outcomes up into the source record.

        Args:
            source_id: Source to recompute.
            event_type: What triggered the pass. The ``training_*`` events
                move the training axis before recomputing; anything else is
                only recorded on the ``status_aggregated`` event.

        Returns:
            AggregationResult with the stored status and counters.

        Raises:
            SourceNotFound: If the source does not exist or was deleted.
        """
        now = format_ts(self._clock())

        training_status = _TRAINING_EVENTS.get(event_type or "")
        if training_status is not None:
            if not self._repo.write_training_state(source_id, training_status, now):
                raise SourceNotFound(source_id)

        source = self._repo.get_source(source_id)
        if source is None:
            raise SourceNotFound(source_id)

        counts = self._repo.count_pages_by_status(source_id)
        total = sum(counts.values())
        completed = counts[PageStatus.COMPLETED]
        failed = counts[PageStatus.FAILED]
        all_settled = total > 0 and completed + failed == total

        status = derive_status(counts, source.recrawl.is_recrawling)
        if source.recrawl.is_recrawling and status != SourceStatus.RECRAWLING:
            if self._repo.clear_recrawl(source_id):
                logger.info("Recrawl of source %s finished as %s", source_id, status)
        elif not source.recrawl.is_recrawling and source.status in _SETTLED_STATUSES:
            # Settled sources only move again through a recrawl. The training
            # CASE in write_crawl_state restores training/trained/failed.
            if (
                source.status == SourceStatus.FAILED
                and source.training.status != TrainingStatus.FAILED
            ):
                status = SourceStatus.FAILED
            elif status in (SourceStatus.PENDING, SourceStatus.IN_PROGRESS):
                status = SourceStatus.READY_FOR_TRAINING

        state = CrawlState(
            status=status,
            progress=compute_progress(total, completed + failed),
            total_jobs=total,
            completed_jobs=completed,
            failed_jobs=failed,
            last_crawled_at=now if all_settled else None,
            error_summary=self._error_summary(source_id, failed, total),
        )
        stats = self._repo.page_content_stats(source_id)
        stored = self._repo.write_crawl_state(source_id, state, stats, now)

        result = AggregationResult(
            source_id=source_id,
            status=stored,
            progress=state.progress,
            total_jobs=total,
            completed_jobs=completed,
            failed_jobs=failed,
            pending_jobs=counts[PageStatus.PENDING],
            in_progress_jobs=counts[PageStatus.IN_PROGRESS],
            compression_stats=stats,
            error_summary=state.error_summary,
            previous_status=source.status,
        )

        self._bus.publish(
            events.STATUS_AGGREGATED,
            source_id=source_id,
            metadata={
                "trigger": event_type,
                "status": stored,
                "progress": result.progress,
                "completed": completed,
                "failed": failed,
                "total": total,
            },
        )
        if result.changed:
            logger.info("Source %s: %s -> %s", source_id, source.status, stored)
            self._bus.publish(
                events.SOURCE_STATUS_CHANGED,
                source_id=source_id,
                metadata={"from": source.status, "to": stored, "progress": result.progress},
            )
        return result

    def _error_summary(self, source_id: str, failed: int, total: int) -> str | None:
        if not failed:
            return None
        messages = self._repo.page_errors(source_id)
        summary = f"{failed} of {total} page(s) failed"
        if messages:
            summary += ": " + "; ".join(messages)
        return summary
