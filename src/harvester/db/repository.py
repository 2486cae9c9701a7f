"""Repository pattern for Harvester database operations.

Single interface for: sources (with their typed state sub-records), pages,
chunks, embeddings (plain table + sqlite-vec mirror), and workflow events.
Jobs live in harvester.queue.store because claiming needs its own
conditional-update discipline.
"""

from __future__ import annotations

import json
import sqlite3
import uuid

from harvester.db.models import (
    Chunk,
    ContentStats,
    CrawlState,
    Embedding,
    Page,
    PageStatus,
    RecrawlState,
    Source,
    TrainingState,
    TrainingStatus,
    WorkflowEvent,
    format_ts,
    utcnow,
)

_SOURCE_COLUMNS = """
    id, url, crawl_status, progress, total_jobs, completed_jobs, failed_jobs,
    total_content_size, compressed_content_size, unique_chunks, duplicate_chunks,
    global_compression_ratio, error_summary, last_crawled_at,
    training_status, training_started_at, trained_at,
    is_recrawling, recrawl_started_at, recrawl_target_url, recrawl_initiated_by,
    pending_removal, deleted_at, metadata, created_at, updated_at
"""

_CHUNK_COLUMNS = """
    id, source_id, page_id, chunk_index, content, content_compressed, compression,
    token_count, content_hash, start_offset, end_offset, heading, section,
    metadata, created_at
"""


def new_id() -> str:
    return str(uuid.uuid4())


class Repository:
    """Data access layer for Harvester entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use; every write commits immediately so that
    concurrent workers observe it.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see harvester.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> None:
        """Insert a new source record.

        Args:
            source: Source dataclass instance to persist.
        """
        now = format_ts(utcnow())
        self._conn.execute(
            """
            INSERT INTO sources (id, url, crawl_status, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (source.id, source.url, source.crawl.status, source.metadata, now, now),
        )
        self._conn.commit()

    def get_source(self, source_id: str, *, include_deleted: bool = False) -> Source | None:
        """Return a source by ID, or None if not found.

        Args:
            source_id: UUID of the source.
            include_deleted: Also return soft-deleted sources.

        Returns:
            Source instance or None.
        """
        sql = f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = self._conn.execute(sql, (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, *, include_deleted: bool = False) -> list[Source]:
        """Return sources ordered by creation time (oldest first)."""
        sql = f"SELECT {_SOURCE_COLUMNS} FROM sources"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        sql += " ORDER BY created_at"
        return [_row_to_source(r) for r in self._conn.execute(sql).fetchall()]

    def write_crawl_state(
        self, source_id: str, state: CrawlState, stats: ContentStats, updated_at: str
    ) -> str:
        """Persist a recomputed crawl state and return the stored status.

        The training axis wins inside the same statement: a source whose
        training has started, finished or failed keeps that status when the
        crawl-derived status is ``ready_for_training``. A recompute that
        raced with a training update therefore cannot clobber it.
        """
        self._conn.execute(
            """
            UPDATE sources SET
                crawl_status = CASE
                    WHEN :status = 'ready_for_training'
                         AND training_status IN ('training', 'trained', 'failed')
                    THEN training_status
                    ELSE :status
                END,
                progress = :progress,
                total_jobs = :total,
                completed_jobs = :completed,
                failed_jobs = :failed,
                error_summary = :error_summary,
                last_crawled_at = COALESCE(:last_crawled_at, last_crawled_at),
                total_content_size = :total_size,
                compressed_content_size = :compressed_size,
                unique_chunks = :unique_chunks,
                duplicate_chunks = :duplicate_chunks,
                global_compression_ratio = :ratio,
                updated_at = :updated_at
            WHERE id = :id
            """,
            {
                "id": source_id,
                "status": state.status,
                "progress": state.progress,
                "total": state.total_jobs,
                "completed": state.completed_jobs,
                "failed": state.failed_jobs,
                "error_summary": state.error_summary,
                "last_crawled_at": state.last_crawled_at,
                "total_size": stats.total_content_size,
                "compressed_size": stats.compressed_content_size,
                "unique_chunks": stats.unique_chunks,
                "duplicate_chunks": stats.duplicate_chunks,
                "ratio": stats.global_compression_ratio,
                "updated_at": updated_at,
            },
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT crawl_status FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return row["crawl_status"]

    def write_training_state(self, source_id: str, status: str, updated_at: str) -> bool:
        """Move the training axis and mirror it into crawl_status when crawling is done.

        Returns True if the source exists.
        """
        started = updated_at if status == TrainingStatus.TRAINING else None
        trained = updated_at if status == TrainingStatus.TRAINED else None
        cur = self._conn.execute(
            """
            UPDATE sources SET
                training_status = :status,
                training_started_at = COALESCE(:started, training_started_at),
                trained_at = COALESCE(:trained, trained_at),
                crawl_status = CASE
                    WHEN :status != 'idle'
                         AND crawl_status IN ('ready_for_training', 'training', 'trained')
                    THEN :status
                    ELSE crawl_status
                END,
                updated_at = :updated_at
            WHERE id = :id AND deleted_at IS NULL
            """,
            {
                "id": source_id,
                "status": status,
                "started": started,
                "trained": trained,
                "updated_at": updated_at,
            },
        )
        self._conn.commit()
        return cur.rowcount == 1

    def begin_recrawl(
        self, source_id: str, state: RecrawlState, page_ids: list[str], now: str
    ) -> int:
        """Reset *page_ids* and enter the recrawl overlay in one transaction.

        Reset pages get a fresh pending state (retry_count 0). Entering the
        overlay also resets the training axis to idle.

        Pages are reset before the overlay is set, so an aggregation that
        sees the overlay never sees the previous crawl's completed pages.

        Returns:
            Number of pages reset.
        """
        with self._conn:
            reset = self._reset_recrawl_pages(source_id, page_ids, now)
            self._set_recrawl_columns(source_id, state, now)
        return reset

    def _set_recrawl_columns(self, source_id: str, state: RecrawlState, updated_at: str) -> None:
        self._conn.execute(
            """
            UPDATE sources SET
                is_recrawling = ?,
                recrawl_started_at = ?,
                recrawl_target_url = ?,
                recrawl_initiated_by = ?,
                training_status = CASE WHEN ? THEN 'idle' ELSE training_status END,
                crawl_status = CASE WHEN ? THEN 'recrawling' ELSE crawl_status END,
                updated_at = ?
            WHERE id = ?
            """,
            (
                int(state.is_recrawling),
                state.started_at,
                state.target_url,
                state.initiated_by,
                int(state.is_recrawling),
                int(state.is_recrawling),
                updated_at,
                source_id,
            ),
        )

    def clear_recrawl(self, source_id: str) -> bool:
        """Leave the recrawl overlay. Returns True only for the caller that cleared it."""
        cur = self._conn.execute(
            "UPDATE sources SET is_recrawling = 0 WHERE id = ? AND is_recrawling = 1",
            (source_id,),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def merge_source_metadata(self, source_id: str, patch: dict) -> None:
        """Merge *patch* into the source's free-form metadata (never overwrites it)."""
        self._conn.execute(
            "UPDATE sources SET metadata = json_patch(metadata, ?) WHERE id = ?",
            (json.dumps(patch), source_id),
        )
        self._conn.commit()

    def set_pending_removal(self, source_id: str, flag: bool = True) -> bool:
        cur = self._conn.execute(
            "UPDATE sources SET pending_removal = ?, updated_at = ? WHERE id = ?",
            (int(flag), format_ts(utcnow()), source_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def soft_delete_source(self, source_id: str, deleted_at: str) -> bool:
        cur = self._conn.execute(
            "UPDATE sources SET deleted_at = ?, pending_removal = 1 WHERE id = ? AND deleted_at IS NULL",
            (deleted_at, source_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def restore_source(self, source_id: str) -> bool:
        cur = self._conn.execute(
            "UPDATE sources SET deleted_at = NULL, pending_removal = 0 WHERE id = ? AND deleted_at IS NOT NULL",
            (source_id,),
        )
        self._conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def add_pages(self, source_id: str, urls: list[str], max_retries: int = 3) -> list[Page]:
        """Insert one pending page per URL (existing URLs are kept) and return them all.

        Args:
            source_id: UUID of the owning source.
            urls: Normalized page URLs, in discovery order.
            max_retries: Retry budget recorded on each new page.

        Returns:
            The pages for *urls*, in the same order.
        """
        now = format_ts(utcnow())
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO pages (id, source_id, url, max_retries, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [(new_id(), source_id, url, max_retries, now, now) for url in urls],
        )
        self._conn.commit()
        by_url = {p.url: p for p in self.list_pages(source_id)}
        return [by_url[u] for u in urls if u in by_url]

    def get_page(self, page_id: str) -> Page | None:
        row = self._conn.execute("SELECT * FROM pages WHERE id = ?", (page_id,)).fetchone()
        return _row_to_page(row) if row else None

    def list_pages(self, source_id: str, status: str | None = None) -> list[Page]:
        """Return the pages of *source_id*, optionally filtered by crawl status."""
        sql = "SELECT * FROM pages WHERE source_id = ?"
        params: list = [source_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at, rowid"
        return [_row_to_page(r) for r in self._conn.execute(sql, params).fetchall()]

    def count_pages_by_status(self, source_id: str) -> dict[str, int]:
        """Return {status: count} for every crawl status (missing statuses are 0)."""
        counts = {
            PageStatus.PENDING: 0,
            PageStatus.IN_PROGRESS: 0,
            PageStatus.COMPLETED: 0,
            PageStatus.FAILED: 0,
        }
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM pages WHERE source_id = ? GROUP BY status",
            (source_id,),
        ).fetchall()
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def page_content_stats(self, source_id: str) -> ContentStats:
        """Sum size/compression/chunk metrics over the completed pages of a source."""
        row = self._conn.execute(
            """
            SELECT COALESCE(SUM(content_size), 0)       AS total_size,
                   COALESCE(SUM(LENGTH(content_compressed)), 0) AS compressed_size,
                   COALESCE(AVG(NULLIF(compression_ratio, 0)), 0) AS ratio,
                   COALESCE(SUM(chunks_created), 0)     AS chunks,
                   COALESCE(SUM(duplicates_found), 0)   AS duplicates
            FROM pages WHERE source_id = ? AND status = 'completed'
            """,
            (source_id,),
        ).fetchone()
        return ContentStats(
            total_content_size=row["total_size"],
            compressed_content_size=row["compressed_size"],
            unique_chunks=max(0, row["chunks"] - row["duplicates"]),
            duplicate_chunks=row["duplicates"],
            global_compression_ratio=round(float(row["ratio"]), 4),
        )

    def page_errors(self, source_id: str, limit: int = 5) -> list[str]:
        """Return distinct error messages of failed pages (for the source error summary)."""
        rows = self._conn.execute(
            """
            SELECT DISTINCT error_message FROM pages
            WHERE source_id = ? AND status = 'failed' AND error_message IS NOT NULL
            LIMIT ?
            """,
            (source_id, limit),
        ).fetchall()
        return [r["error_message"] for r in rows]

    def start_page(self, page_id: str, now: str) -> bool:
        """Mark a page in_progress. False if the page is already settled."""
        cur = self._conn.execute(
            """
            UPDATE pages SET status = 'in_progress', started_at = ?, updated_at = ?
            WHERE id = ? AND status IN ('pending', 'in_progress')
            """,
            (now, now, page_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def complete_page(
        self,
        page_id: str,
        *,
        content: str | None,
        content_compressed: bytes | None,
        compression: str,
        content_size: int,
        compression_ratio: float,
        processing_time_ms: int,
        now: str,
    ) -> bool:
        cur = self._conn.execute(
            """
            UPDATE pages SET
                status = 'completed', content = ?, content_compressed = ?, compression = ?,
                content_size = ?, compression_ratio = ?, processing_time_ms = ?,
                error_message = NULL, completed_at = ?, updated_at = ?
            WHERE id = ? AND status = 'in_progress'
            """,
            (
                content,
                content_compressed,
                compression,
                content_size,
                compression_ratio,
                processing_time_ms,
                now,
                now,
                page_id,
            ),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def fail_page(self, page_id: str, error: str, now: str) -> bool:
        """Mark a page failed. Returns False if it was already completed."""
        cur = self._conn.execute(
            """
            UPDATE pages SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
            WHERE id = ? AND status != 'completed'
            """,
            (error, now, now, page_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def reset_page(
        self, page_id: str, now: str, *, error: str | None = None, bump_retry: bool = False
    ) -> bool:
        """Put a page back to pending. Returns False if it was already completed."""
        cur = self._conn.execute(
            """
            UPDATE pages SET
                status = 'pending', started_at = NULL, error_message = ?,
                retry_count = retry_count + ?, updated_at = ?
            WHERE id = ? AND status != 'completed'
            """,
            (error, 1 if bump_retry else 0, now, page_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def _reset_recrawl_pages(self, source_id: str, page_ids: list[str], now: str) -> int:
        if not page_ids:
            return 0
        placeholders = ",".join("?" * len(page_ids))
        cur = self._conn.execute(
            f"""
            UPDATE pages SET
                status = 'pending', processing_status = 'pending', retry_count = 0,
                started_at = NULL, completed_at = NULL, error_message = NULL, updated_at = ?
            WHERE source_id = ? AND id IN ({placeholders})
            """,
            [now, source_id, *page_ids],
        )
        return cur.rowcount

    def set_processing_status(
        self,
        page_id: str,
        status: str,
        now: str,
        *,
        chunks_created: int | None = None,
        duplicates_found: int | None = None,
        error: str | None = None,
    ) -> None:
        self._conn.execute(
            """
            UPDATE pages SET
                processing_status = ?,
                chunks_created = COALESCE(?, chunks_created),
                duplicates_found = COALESCE(?, duplicates_found),
                error_message = COALESCE(?, error_message),
                updated_at = ?
            WHERE id = ?
            """,
            (status, chunks_created, duplicates_found, error, now, page_id),
        )
        self._conn.commit()

    # -- detection queries used by the health monitor / recovery service --

    def find_orphaned_pages(self, cutoff: str, limit: int = 100) -> list[Page]:
        """Pending pages older than *cutoff* with no pending/processing job behind them."""
        rows = self._conn.execute(
            """
            SELECT p.* FROM pages p
            JOIN sources s ON s.id = p.source_id
            WHERE p.status = 'pending'
              AND p.updated_at < ?
              AND s.pending_removal = 0 AND s.deleted_at IS NULL
              AND NOT EXISTS (
                  SELECT 1 FROM jobs j
                  WHERE j.page_id = p.id AND j.status IN ('pending', 'processing')
              )
            ORDER BY p.updated_at
            LIMIT ?
            """,
            (cutoff, limit),
        ).fetchall()
        return [_row_to_page(r) for r in rows]

    def find_stalled_pages(self, cutoff: str, limit: int = 100) -> list[Page]:
        """in_progress pages started before *cutoff* with no pending or processing job."""
        rows = self._conn.execute(
            """
            SELECT p.* FROM pages p
            JOIN sources s ON s.id = p.source_id
            WHERE p.status = 'in_progress'
              AND COALESCE(p.started_at, p.updated_at) < ?
              AND s.pending_removal = 0 AND s.deleted_at IS NULL
              AND NOT EXISTS (
                  SELECT 1 FROM jobs j
                  WHERE j.page_id = p.id AND j.status IN ('pending', 'processing')
              )
            ORDER BY p.started_at
            LIMIT ?
            """,
            (cutoff, limit),
        ).fetchall()
        return [_row_to_page(r) for r in rows]

    def find_retryable_failed_pages(self, limit: int = 100) -> list[Page]:
        """Failed pages with retry budget left, on sources that are still crawling."""
        rows = self._conn.execute(
            """
            SELECT p.* FROM pages p
            JOIN sources s ON s.id = p.source_id
            WHERE p.status = 'failed'
              AND p.retry_count < p.max_retries
              AND s.crawl_status IN ('pending', 'in_progress', 'recrawling')
              AND s.pending_removal = 0 AND s.deleted_at IS NULL
            ORDER BY p.updated_at
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [_row_to_page(r) for r in rows]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunks(self, chunks: list[Chunk]) -> list[int]:
        """Insert *chunks* in one transaction. Returns the new ids in order."""
        ids: list[int] = []
        with self._conn:
            for chunk in chunks:
                cur = self._conn.execute(
                    """
                    INSERT INTO chunks (
                        source_id, page_id, chunk_index, content, content_compressed,
                        compression, token_count, content_hash, start_offset, end_offset,
                        heading, section, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.source_id,
                        chunk.page_id,
                        chunk.chunk_index,
                        chunk.content,
                        chunk.content_compressed,
                        chunk.compression,
                        chunk.token_count,
                        chunk.content_hash,
                        chunk.start_offset,
                        chunk.end_offset,
                        chunk.heading,
                        chunk.section,
                        chunk.metadata,
                    ),
                )
                chunk.id = cur.lastrowid
                ids.append(cur.lastrowid)
        return ids

    def get_chunks(self, chunk_ids: list[int]) -> list[Chunk]:
        """Return the chunks for *chunk_ids* that exist, ordered by id."""
        if not chunk_ids:
            return []
        placeholders = ",".join("?" * len(chunk_ids))
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders}) ORDER BY id",
            list(chunk_ids),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def list_chunks_by_page(self, page_id: str) -> list[Chunk]:
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE page_id = ? ORDER BY chunk_index",
            (page_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def list_chunk_ids_by_source(self, source_id: str) -> list[int]:
        rows = self._conn.execute(
            "SELECT id FROM chunks WHERE source_id = ? ORDER BY id", (source_id,)
        ).fetchall()
        return [r["id"] for r in rows]

    def count_chunks_by_source(self, source_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE source_id = ?", (source_id,)
        ).fetchone()[0]

    def known_hashes(self, source_id: str, *, exclude_page_id: str | None = None) -> set[str]:
        """Return content hashes already stored for *source_id* (the dedup corpus)."""
        sql = "SELECT DISTINCT content_hash FROM chunks WHERE source_id = ?"
        params: list = [source_id]
        if exclude_page_id is not None:
            sql += " AND (page_id IS NULL OR page_id != ?)"
            params.append(exclude_page_id)
        return {r[0] for r in self._conn.execute(sql, params).fetchall()}

    def delete_chunks_by_page(self, page_id: str) -> int:
        """Delete a page's chunks plus their embeddings (table and vec mirrors)."""
        chunk_ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE page_id = ?", (page_id,)
            ).fetchall()
        ]
        if not chunk_ids:
            return 0
        self._delete_vec_rows(chunk_ids)
        placeholders = ",".join("?" * len(chunk_ids))
        self._conn.execute(
            f"DELETE FROM embeddings WHERE chunk_id IN ({placeholders})", chunk_ids
        )
        cur = self._conn.execute("DELETE FROM chunks WHERE page_id = ?", (page_id,))
        self._conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def embedded_chunk_ids(self, chunk_ids: list[int]) -> set[int]:
        """Return the subset of *chunk_ids* that already have an embedding row."""
        if not chunk_ids:
            return set()
        placeholders = ",".join("?" * len(chunk_ids))
        rows = self._conn.execute(
            f"SELECT chunk_id FROM embeddings WHERE chunk_id IN ({placeholders})",
            list(chunk_ids),
        ).fetchall()
        return {r[0] for r in rows}

    def upsert_embeddings(self, embeddings: list[Embedding]) -> None:
        """Upsert all *embeddings* in a single transaction (all or nothing)."""
        with self._conn:
            self._conn.executemany(_UPSERT_EMBEDDING, [_embedding_params(e) for e in embeddings])

    def upsert_embedding(self, embedding: Embedding) -> None:
        self._conn.execute(_UPSERT_EMBEDDING, _embedding_params(embedding))
        self._conn.commit()

    def get_embedding(self, chunk_id: int) -> Embedding | None:
        row = self._conn.execute(
            "SELECT chunk_id, model_name, vector, created_at FROM embeddings WHERE chunk_id = ?",
            (chunk_id,),
        ).fetchone()
        if row is None:
            return None
        return Embedding(
            chunk_id=row["chunk_id"],
            model_name=row["model_name"],
            vector=json.loads(row["vector"]),
            created_at=row["created_at"],
        )

    def count_embeddings_by_source(self, source_id: str) -> int:
        return self._conn.execute(
            """
            SELECT COUNT(*) FROM embeddings e JOIN chunks c ON c.id = e.chunk_id
            WHERE c.source_id = ?
            """,
            (source_id,),
        ).fetchone()[0]

    def add_vec_embedding(self, table: str, chunk_id: int, vector: list[float]) -> None:
        """Mirror a vector into a vec table with rowid = chunk id (replacing any old row)."""
        self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (chunk_id,))
        self._conn.execute(
            f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
            (chunk_id, json.dumps(vector)),
        )
        self._conn.commit()

    def _delete_vec_rows(self, chunk_ids: list[int]) -> None:
        from harvester.db.vectors import list_vec_tables

        placeholders = ",".join("?" * len(chunk_ids))
        for table in list_vec_tables(self._conn):
            self._conn.execute(
                f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                chunk_ids,
            )

    # ------------------------------------------------------------------
    # Workflow events (append-only)
    # ------------------------------------------------------------------

    def append_event(self, event: WorkflowEvent) -> int:
        cur = self._conn.execute(
            """
            INSERT INTO workflow_events (event_type, source_id, page_id, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.event_type,
                event.source_id,
                event.page_id,
                event.metadata,
                event.created_at or format_ts(utcnow()),
            ),
        )
        self._conn.commit()
        event.id = cur.lastrowid
        return cur.lastrowid

    def list_events(
        self,
        *,
        after_id: int = 0,
        source_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Return events with id > *after_id*, oldest first."""
        sql = "SELECT * FROM workflow_events WHERE id > ?"
        params: list = [after_id]
        if source_id is not None:
            sql += " AND source_id = ?"
            params.append(source_id)
        if event_type is not None:
            sql += " AND event_type = ?"
            params.append(event_type)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)
        return [
            WorkflowEvent(
                id=r["id"],
                event_type=r["event_type"],
                source_id=r["source_id"],
                page_id=r["page_id"],
                metadata=r["metadata"],
                created_at=r["created_at"],
            )
            for r in self._conn.execute(sql, params).fetchall()
        ]


_UPSERT_EMBEDDING = """
INSERT INTO embeddings (chunk_id, model_name, dimensions, vector, created_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(chunk_id) DO UPDATE SET
    model_name = excluded.model_name,
    dimensions = excluded.dimensions,
    vector = excluded.vector
"""


def _embedding_params(e: Embedding) -> tuple:
    return (
        e.chunk_id,
        e.model_name,
        e.dimensions,
        json.dumps(e.vector),
        e.created_at or format_ts(utcnow()),
    )


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        url=row["url"],
        crawl=CrawlState(
            status=row["crawl_status"],
            progress=row["progress"],
            total_jobs=row["total_jobs"],
            completed_jobs=row["completed_jobs"],
            failed_jobs=row["failed_jobs"],
            last_crawled_at=row["last_crawled_at"],
            error_summary=row["error_summary"],
        ),
        training=TrainingState(
            status=row["training_status"],
            started_at=row["training_started_at"],
            trained_at=row["trained_at"],
        ),
        recrawl=RecrawlState(
            is_recrawling=bool(row["is_recrawling"]),
            started_at=row["recrawl_started_at"],
            target_url=row["recrawl_target_url"],
            initiated_by=row["recrawl_initiated_by"],
        ),
        content=ContentStats(
            total_content_size=row["total_content_size"],
            compressed_content_size=row["compressed_content_size"],
            unique_chunks=row["unique_chunks"],
            duplicate_chunks=row["duplicate_chunks"],
            global_compression_ratio=row["global_compression_ratio"],
        ),
        pending_removal=bool(row["pending_removal"]),
        deleted_at=row["deleted_at"],
        metadata=row["metadata"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_page(row: sqlite3.Row) -> Page:
    return Page(
        id=row["id"],
        source_id=row["source_id"],
        url=row["url"],
        status=row["status"],
        processing_status=row["processing_status"],
        content=row["content"],
        content_compressed=row["content_compressed"],
        compression=row["compression"],
        content_size=row["content_size"],
        compression_ratio=row["compression_ratio"],
        chunks_created=row["chunks_created"],
        duplicates_found=row["duplicates_found"],
        processing_time_ms=row["processing_time_ms"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        error_message=row["error_message"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        source_id=row["source_id"],
        page_id=row["page_id"],
        chunk_index=row["chunk_index"],
        content=row["content"],
        content_compressed=row["content_compressed"],
        compression=row["compression"],
        token_count=row["token_count"],
        content_hash=row["content_hash"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        heading=row["heading"],
        section=row["section"],
        metadata=row["metadata"],
        created_at=row["created_at"],
    )
