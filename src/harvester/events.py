"""Workflow event stream.

Components publish status changes as rows in the append-only
``workflow_events`` table. External consumers poll it by id; in-process
consumers may also subscribe for synchronous callbacks.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Callable

from harvester.db.models import WorkflowEvent
from harvester.db.repository import Repository

logger = logging.getLogger("Harvester.Events")

Subscriber = Callable[[WorkflowEvent], None]

# Event types published by the pipeline.
CRAWL_INITIATED = "crawl_initiated"
RECRAWL_STARTED = "recrawl_started"
PAGE_COMPLETED = "page_completed"
PAGE_FAILED = "page_failed"
PAGE_PROCESSED = "page_processed"
EMBEDDINGS_GENERATED = "embeddings_generated"
STATUS_AGGREGATED = "status_aggregated"
SOURCE_STATUS_CHANGED = "source_status_changed"
HEALTH_CHECK = "health_check"
RECOVERY_RUN = "recovery_run"
EMERGENCY_RESET = "emergency_reset"
SOURCE_CANCELLED = "source_cancelled"
SOURCE_DELETED = "source_deleted"
SOURCE_RESTORED = "source_restored"


class EventBus:
    """Publish workflow events to storage and to in-process subscribers.

    Subscribers run synchronously after the row is committed. A failing
    subscriber is logged and skipped; it never affects the publisher.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._repo = Repository(conn)
        self._subscribers: list[tuple[str | None, Subscriber]] = []

    def subscribe(self, callback: Subscriber, event_type: str | None = None) -> None:
        """Register *callback* for *event_type* (or every event when None)."""
        self._subscribers.append((event_type, callback))

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(t, cb) for t, cb in self._subscribers if cb != callback]

    def publish(
        self,
        event_type: str,
        *,
        source_id: str | None = None,
        page_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        """Append an event and notify subscribers. Returns the stored event."""
        event = WorkflowEvent(
            event_type=event_type,
            source_id=source_id,
            page_id=page_id,
            metadata=json.dumps(metadata or {}, default=str),
        )
        self._repo.append_event(event)
        for wanted, callback in list(self._subscribers):
            if wanted is not None and wanted != event_type:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event_type)
        return event

    def poll(
        self,
        after_id: int = 0,
        *,
        source_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Return stored events newer than *after_id*, oldest first."""
        return self._repo.list_events(
            after_id=after_id, source_id=source_id, event_type=event_type, limit=limit
        )
