"""Forward-only migration runner for Harvester's database schema.

Vec tables (vec_embeddings_*) are NOT migration-managed; use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id                      TEXT PRIMARY KEY,
    url                     TEXT NOT NULL,
    crawl_status            TEXT NOT NULL DEFAULT 'pending',
    progress                INTEGER NOT NULL DEFAULT 0,
    total_jobs              INTEGER NOT NULL DEFAULT 0,
    completed_jobs          INTEGER NOT NULL DEFAULT 0,
    failed_jobs             INTEGER NOT NULL DEFAULT 0,
    total_content_size      INTEGER NOT NULL DEFAULT 0,
    compressed_content_size INTEGER NOT NULL DEFAULT 0,
    unique_chunks           INTEGER NOT NULL DEFAULT 0,
    duplicate_chunks        INTEGER NOT NULL DEFAULT 0,
    global_compression_ratio REAL NOT NULL DEFAULT 0,
    error_summary           TEXT,
    last_crawled_at         DATETIME,
    training_status         TEXT NOT NULL DEFAULT 'idle',
    training_started_at     DATETIME,
    trained_at              DATETIME,
    is_recrawling           INTEGER NOT NULL DEFAULT 0,
    recrawl_started_at      DATETIME,
    recrawl_target_url      TEXT,
    recrawl_initiated_by    TEXT,
    pending_removal         INTEGER NOT NULL DEFAULT 0,
    deleted_at              DATETIME,
    metadata                TEXT NOT NULL DEFAULT '{}',
    created_at              DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at              DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS pages (
    id                  TEXT PRIMARY KEY,
    source_id           TEXT NOT NULL REFERENCES sources(id),
    url                 TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    processing_status   TEXT NOT NULL DEFAULT 'pending',
    content             TEXT,
    content_compressed  BLOB,
    compression         TEXT NOT NULL DEFAULT 'none',
    content_size        INTEGER NOT NULL DEFAULT 0,
    compression_ratio   REAL NOT NULL DEFAULT 0,
    chunks_created      INTEGER NOT NULL DEFAULT 0,
    duplicates_found    INTEGER NOT NULL DEFAULT 0,
    processing_time_ms  INTEGER NOT NULL DEFAULT 0,
    retry_count         INTEGER NOT NULL DEFAULT 0,
    max_retries         INTEGER NOT NULL DEFAULT 3,
    error_message       TEXT,
    started_at          DATETIME,
    completed_at        DATETIME,
    created_at          DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at          DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (source_id, url)
);

CREATE TABLE IF NOT EXISTS jobs (
    id              TEXT PRIMARY KEY,
    job_type        TEXT NOT NULL,
    source_id       TEXT REFERENCES sources(id),
    page_id         TEXT REFERENCES pages(id),
    status          TEXT NOT NULL DEFAULT 'pending',
    priority        INTEGER NOT NULL DEFAULT 0,
    attempts        INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL DEFAULT 3,
    job_key         TEXT UNIQUE,
    payload         TEXT NOT NULL DEFAULT '{}',
    worker_id       TEXT,
    error_message   TEXT,
    scheduled_at    DATETIME NOT NULL,
    started_at      DATETIME,
    completed_at    DATETIME,
    created_at      DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id           TEXT NOT NULL REFERENCES sources(id),
    page_id             TEXT REFERENCES pages(id),
    chunk_index         INTEGER NOT NULL,
    content             TEXT,
    content_compressed  BLOB,
    compression         TEXT NOT NULL DEFAULT 'none',
    token_count         INTEGER NOT NULL DEFAULT 0,
    content_hash        TEXT NOT NULL,
    start_offset        INTEGER NOT NULL DEFAULT 0,
    end_offset          INTEGER NOT NULL DEFAULT 0,
    heading             TEXT,
    section             TEXT,
    metadata            TEXT NOT NULL DEFAULT '{}',
    created_at          DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS embeddings (
    chunk_id        INTEGER PRIMARY KEY REFERENCES chunks(id) ON DELETE CASCADE,
    model_name      TEXT NOT NULL,
    dimensions      INTEGER NOT NULL,
    vector          TEXT NOT NULL,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS workflow_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type      TEXT NOT NULL,
    source_id       TEXT,
    page_id         TEXT,
    metadata        TEXT NOT NULL DEFAULT '{}',
    created_at      DATETIME NOT NULL
);
"""

_V2_SQL = """
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs (status, job_type, priority DESC, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_page ON jobs (page_id, status);
CREATE INDEX IF NOT EXISTS idx_pages_source_status ON pages (source_id, status);
CREATE INDEX IF NOT EXISTS idx_chunks_source_hash ON chunks (source_id, content_hash);
CREATE INDEX IF NOT EXISTS idx_chunks_page ON chunks (page_id);
CREATE INDEX IF NOT EXISTS idx_events_source ON workflow_events (source_id, id);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here; use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
