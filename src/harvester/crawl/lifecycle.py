"""Source cancellation, soft deletion and restore."""

from __future__ import annotations

import logging
import sqlite3

from harvester import events
from harvester.db.models import format_ts, utcnow
from harvester.db.repository import Repository
from harvester.errors import SourceNotFound
from harvester.events import EventBus
from harvester.queue.store import JobStore

logger = logging.getLogger("Harvester.Lifecycle")


def cancel_source(
    conn: sqlite3.Connection,
    source_id: str,
    *,
    reason: str = "cancelled",
    bus: EventBus | None = None,
) -> int:
    """Flag *source_id* for removal and fail its open jobs. Returns jobs cancelled.

    Cancellation is cooperative: a worker mid-job loses ownership and its
    completion becomes a no-op.
    """
    repo = Repository(conn)
    if repo.get_source(source_id) is None:
        raise SourceNotFound(source_id)
    repo.set_pending_removal(source_id, True)
    cancelled = JobStore(conn).cancel_for_source(source_id, reason)
    (bus or EventBus(conn)).publish(
        events.SOURCE_CANCELLED,
        source_id=source_id,
        metadata={"reason": reason, "jobs_cancelled": cancelled},
    )
    logger.info("Cancelled source %s (%d job(s))", source_id, cancelled)
    return cancelled


def soft_delete_source(
    conn: sqlite3.Connection, source_id: str, *, bus: EventBus | None = None
) -> bool:
    """Soft-delete *source_id*. Its rows stay until an explicit purge."""
    repo = Repository(conn)
    if repo.get_source(source_id) is None:
        raise SourceNotFound(source_id)
    cancelled = JobStore(conn).cancel_for_source(source_id, "source deleted")
    deleted = repo.soft_delete_source(source_id, format_ts(utcnow()))
    if deleted:
        (bus or EventBus(conn)).publish(
            events.SOURCE_DELETED,
            source_id=source_id,
            metadata={"jobs_cancelled": cancelled},
        )
        logger.info("Soft-deleted source %s", source_id)
    return deleted


def restore_source(
    conn: sqlite3.Connection, source_id: str, *, bus: EventBus | None = None
) -> bool:
    """Undo a soft delete. Pending pages are picked up again by the next recovery sweep."""
    repo = Repository(conn)
    if repo.get_source(source_id, include_deleted=True) is None:
        raise SourceNotFound(source_id)
    restored = repo.restore_source(source_id)
    if restored:
        (bus or EventBus(conn)).publish(events.SOURCE_RESTORED, source_id=source_id)
        logger.info("Restored source %s", source_id)
    return restored
