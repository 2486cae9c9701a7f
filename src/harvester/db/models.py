"""Domain models for the Harvester database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# Application-written timestamps; lexical order == chronological order.
TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Render *dt* (naive = UTC) in the storage format."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    """Parse a stored timestamp (with or without microseconds) as aware UTC."""
    for fmt in (TS_FORMAT, "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"Unrecognised timestamp: {value!r}")


def ts_ago(now: datetime, seconds: float) -> str:
    return format_ts(now - timedelta(seconds=seconds))


class SourceStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RECRAWLING = "recrawling"
    READY_FOR_TRAINING = "ready_for_training"
    TRAINING = "training"
    TRAINED = "trained"
    FAILED = "failed"


class TrainingStatus:
    IDLE = "idle"
    TRAINING = "training"
    TRAINED = "trained"
    FAILED = "failed"


class PageStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType:
    CRAWL_PAGE = "crawl_page"
    PROCESS_PAGE = "process_page"
    GENERATE_EMBEDDINGS = "generate_embeddings"

    ALL = (CRAWL_PAGE, PROCESS_PAGE, GENERATE_EMBEDDINGS)


@dataclass
class CrawlState:
    status: str = SourceStatus.PENDING
    progress: int = 0
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    last_crawled_at: str | None = None
    error_summary: str | None = None


@dataclass
class TrainingState:
    status: str = TrainingStatus.IDLE
    started_at: str | None = None
    trained_at: str | None = None


@dataclass
class RecrawlState:
    is_recrawling: bool = False
    started_at: str | None = None
    target_url: str | None = None
    initiated_by: str | None = None


@dataclass
class ContentStats:
    total_content_size: int = 0
    compressed_content_size: int = 0
    unique_chunks: int = 0
    duplicate_chunks: int = 0
    global_compression_ratio: float = 0.0


@dataclass
class Source:
    id: str
    url: str
    crawl: CrawlState = field(default_factory=CrawlState)
    training: TrainingState = field(default_factory=TrainingState)
    recrawl: RecrawlState = field(default_factory=RecrawlState)
    content: ContentStats = field(default_factory=ContentStats)
    pending_removal: bool = False
    deleted_at: str | None = None
    metadata: str = field(default_factory=lambda: "{}")
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def status(self) -> str:
        return self.crawl.status

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)

    @property
    def accepts_work(self) -> bool:
        """False once the source is deleted or flagged for removal."""
        return not self.pending_removal and self.deleted_at is None


@dataclass
class Page:
    id: str
    source_id: str
    url: str
    status: str = PageStatus.PENDING
    processing_status: str = ProcessingStatus.PENDING
    content: str | None = None
    content_compressed: bytes | None = None
    compression: str = "none"
    content_size: int = 0
    compression_ratio: float = 0.0
    chunks_created: int = 0
    duplicates_found: int = 0
    processing_time_ms: int = 0
    retry_count: int = 0
    max_retries: int = 3
    error_message: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def settled(self) -> bool:
        return self.status in (PageStatus.COMPLETED, PageStatus.FAILED)


@dataclass
class Job:
    id: str
    job_type: str
    source_id: str | None = None
    page_id: str | None = None
    status: str = JobStatus.PENDING
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    job_key: str | None = None
    payload: str = field(default_factory=lambda: "{}")
    worker_id: str | None = None
    error_message: str | None = None
    scheduled_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str | None = None

    @property
    def payload_dict(self) -> dict:
        return json.loads(self.payload)


@dataclass
class Chunk:
    source_id: str
    chunk_index: int
    content_hash: str
    page_id: str | None = None
    content: str | None = None
    content_compressed: bytes | None = None
    compression: str = "none"
    token_count: int = 0
    start_offset: int = 0
    end_offset: int = 0
    heading: str | None = None
    section: str | None = None
    metadata: str = field(default_factory=lambda: "{}")
    created_at: str | None = None
    id: int | None = None  # set after insert; None for unsaved chunks

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)


@dataclass
class Embedding:
    chunk_id: int
    model_name: str
    vector: list[float]
    created_at: str | None = None

    @property
    def dimensions(self) -> int:
        return len(self.vector)


@dataclass
class WorkflowEvent:
    event_type: str
    source_id: str | None = None
    page_id: str | None = None
    metadata: str = field(default_factory=lambda: "{}")
    created_at: str | None = None
    id: int | None = None

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)
