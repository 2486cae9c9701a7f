"""Queue worker: claims jobs and runs the crawl -> chunk -> embed pipeline.

Job types:
  crawl_page           fetch a page, store its text compressed, queue process_page
  process_page         chunk the page text, store chunks, queue generate_embeddings
  generate_embeddings  embed the chunks listed in the payload

Every claimed job ends in ``JobStore.complete`` or ``JobStore.fail``. A bad
job never stops the worker: unexpected exceptions are logged and turned into
a retry, and the page goes back to pending (or failed once retries run out).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import urllib.parse
from datetime import datetime
from typing import Callable

from harvester import events
from harvester.config import HarvesterConfig
from harvester.crawl.fetcher import PageFetcher
from harvester.crawl.robots import RobotsChecker, origin_of
from harvester.crawl.status import StatusAggregator
from harvester.db.models import (
    Chunk,
    Job,
    JobStatus,
    JobType,
    Page,
    PageStatus,
    ProcessingStatus,
    format_ts,
    utcnow,
)
from harvester.db.repository import Repository, new_id
from harvester.errors import (
    HarvesterError,
    ProviderFailure,
    RobotsDisallowed,
    SourceNotFound,
    StorageFailure,
    ValidationFailure,
)
from harvester.events import EventBus
from harvester.ingest.chunker import ChunkingOptions, SemanticChunker
from harvester.ingest.compression import CompressionService
from harvester.ingest.embeddings import EmbeddingGenerator
from harvester.queue.claiming import JobClaimer
from harvester.queue.store import JobStore

logger = logging.getLogger("Harvester.Worker")


class Worker:
    """Run queued jobs on one connection.

    Args:
        conn: Connection owned by this worker (never shared across threads).
        config: Loaded configuration.
        fetcher: Page fetcher (built from config when None).
        robots: robots.txt checker (built from config when None and robots
            are respected).
        embedder: Embedding generator (built lazily from config when None).
        worker_id: Stored on claimed jobs. A random id when None.
        bus: Event bus for page/embedding events.
        clock: Returns the current aware UTC datetime.
        sleep: Sleep function used for crawl delays.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: HarvesterConfig | None = None,
        *,
        fetcher: PageFetcher | None = None,
        robots: RobotsChecker | None = None,
        embedder: EmbeddingGenerator | None = None,
        worker_id: str | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._conn = conn
        self._config = config or HarvesterConfig()
        self.worker_id = worker_id or f"worker-{new_id()[:8]}"
        self._fetcher = fetcher or PageFetcher.from_config(self._config.crawl)
        if robots is None and self._config.crawl.respect_robots:
            robots = RobotsChecker.from_config(self._config.crawl)
        self._robots = robots
        self._bus = bus or EventBus(conn)
        self._clock = clock
        self._sleep = sleep
        self._repo = Repository(conn)
        self._store = JobStore(
            conn, retry_base_seconds=self._config.queue.retry_base_seconds, clock=clock
        )
        self._claimer = JobClaimer(conn, clock=clock, sleep=sleep)
        self._aggregator = StatusAggregator(conn, self._bus, clock=clock)
        self._compression = CompressionService()
        self._chunker = SemanticChunker()
        self._embedder = embedder
        self._last_request: dict[str, float] = {}
        self._handlers: dict[str, Callable[[Job], None]] = {
            JobType.CRAWL_PAGE: self._crawl_page,
            JobType.PROCESS_PAGE: self._process_page,
            JobType.GENERATE_EMBEDDINGS: self._generate_embeddings,
        }

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_once(
        self, max_jobs: int | None = None, job_types: tuple[str, ...] | list[str] = JobType.ALL
    ) -> int:
        """Claim one batch and run it. Returns the number of jobs handled.

        Raises:
            StorageFailure: If the claim itself could not reach the database.
        """
        jobs = self._claimer.claim_batch(
            max_jobs or self._config.queue.batch_size, job_types, self.worker_id
        )
        for job in jobs:
            self.process(job)
        return len(jobs)

    def run(self, stop: threading.Event, poll_interval: float | None = None) -> None:
        """Process jobs until *stop* is set, idling *poll_interval* seconds when the queue is empty."""
        interval = poll_interval if poll_interval is not None else self._config.queue.poll_interval
        while not stop.is_set():
            try:
                handled = self.run_once()
            except StorageFailure as exc:
                logger.warning("Worker %s could not claim jobs: %s", self.worker_id, exc)
                handled = 0
            if handled == 0:
                stop.wait(interval)

    def process(self, job: Job) -> bool:
        """Run one claimed job. Returns True if it completed."""
        handler = self._handlers.get(job.job_type)
        if handler is None:
            self._store.fail(job.id, f"Unknown job type: {job.job_type}", retry=False)
            logger.error("Job %s has unknown type %s", job.id, job.job_type)
            return False

        try:
            handler(job)
        except RobotsDisallowed as exc:
            logger.info("Skipping %s: disallowed by robots.txt", exc.url)
            self._handle_failure(job, exc, retry=False)
            return False
        except ValidationFailure as exc:
            logger.warning("Job %s rejected: %s", job.id, exc)
            self._handle_failure(job, exc, retry=False)
            return False
        except HarvesterError as exc:
            logger.warning("Job %s (%s) failed: %s", job.id, job.job_type, exc)
            self._handle_failure(job, exc, retry=True)
            return False
        except Exception as exc:
            logger.exception("Job %s (%s) crashed", job.id, job.job_type)
            self._handle_failure(job, exc, retry=True)
            return False

        if not self._store.complete(job.id, self.worker_id):
            logger.debug("Job %s was taken away from %s before completion", job.id, self.worker_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _crawl_page(self, job: Job) -> None:
        page = self._page_for(job)
        if page.status == PageStatus.COMPLETED:
            logger.debug("Page %s already crawled; nothing to do", page.id)
            return

        if self._robots is not None:
            self._robots.check(page.url)
        self._wait_for_origin(page.url)

        if not self._repo.start_page(page.id, self._now()):
            logger.debug("Page %s settled by another worker", page.id)
            return
        started = time.perf_counter()
        fetched = self._fetcher.fetch_page(page.url)
        stored = self._compression.pack(fetched.text)
        now = self._now()
        self._repo.complete_page(
            page.id,
            content=stored.content,
            content_compressed=stored.blob,
            compression=stored.tag,
            content_size=stored.original_size,
            compression_ratio=stored.ratio,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            now=now,
        )

        if fetched.text.strip():
            content_type = "text" if fetched.content_type == "text/plain" else "markdown"
            self._store.enqueue(
                JobType.PROCESS_PAGE,
                source_id=page.source_id,
                page_id=page.id,
                payload={"content_type": content_type},
                job_key=f"process:{page.id}:{now}",
                max_attempts=self._config.queue.max_attempts,
            )
        else:
            self._repo.set_processing_status(
                page.id, ProcessingStatus.PROCESSED, now, chunks_created=0, duplicates_found=0
            )

        self._bus.publish(
            events.PAGE_COMPLETED,
            source_id=page.source_id,
            page_id=page.id,
            metadata={"url": page.url, "size": stored.original_size, "compression": stored.tag},
        )
        self._aggregate(page.source_id, events.PAGE_COMPLETED)

    def _process_page(self, job: Job) -> None:
        page = self._page_for(job)
        if page.status != PageStatus.COMPLETED:
            raise ValidationFailure(f"Page {page.id} has not been crawled")

        self._repo.set_processing_status(page.id, ProcessingStatus.PROCESSING, self._now())
        text = self._compression.unpack(page.content, page.content_compressed, page.compression)

        cfg = self._config.chunking
        options = ChunkingOptions(
            max_tokens=cfg.max_tokens,
            overlap_tokens=cfg.overlap_tokens,
            preserve_paragraphs=cfg.preserve_paragraphs,
            min_chunk_size=cfg.min_chunk_size,
            content_type=job.payload_dict.get("content_type", "text"),
        )
        self._repo.delete_chunks_by_page(page.id)
        known = self._repo.known_hashes(page.source_id, exclude_page_id=page.id)
        result = self._chunker.chunk(text, options, known)

        chunks: list[Chunk] = []
        for draft in result.chunks:
            packed = self._compression.pack(draft.content)
            chunks.append(
                Chunk(
                    source_id=page.source_id,
                    page_id=page.id,
                    chunk_index=draft.index,
                    content_hash=draft.content_hash,
                    content=packed.content,
                    content_compressed=packed.blob,
                    compression=packed.tag,
                    token_count=draft.token_count,
                    start_offset=draft.start_offset,
                    end_offset=draft.end_offset,
                    heading=draft.heading,
                    section=draft.section,
                    metadata=json.dumps(draft.metadata),
                )
            )
        chunk_ids = self._repo.add_chunks(chunks)

        now = self._now()
        self._repo.set_processing_status(
            page.id,
            ProcessingStatus.PROCESSED,
            now,
            chunks_created=len(chunk_ids),
            duplicates_found=result.duplicates_found,
        )
        if chunk_ids:
            self._store.enqueue(
                JobType.GENERATE_EMBEDDINGS,
                source_id=page.source_id,
                page_id=page.id,
                payload={"chunk_ids": chunk_ids},
                job_key=f"embed:{page.id}:{now}",
                max_attempts=self._config.queue.max_attempts,
            )
        self._bus.publish(
            events.PAGE_PROCESSED,
            source_id=page.source_id,
            page_id=page.id,
            metadata={
                "chunks": len(chunk_ids),
                "duplicates": result.duplicates_found,
                "tokens": result.total_tokens,
            },
        )
        self._aggregate(page.source_id, events.PAGE_PROCESSED)

    def _generate_embeddings(self, job: Job) -> None:
        if not job.source_id:
            raise ValidationFailure(f"Job {job.id} has no source")
        self._require_source(job.source_id)
        chunk_ids = [int(i) for i in job.payload_dict.get("chunk_ids", [])]
        if not chunk_ids:
            chunk_ids = self._repo.list_chunk_ids_by_source(job.source_id)

        if self._embedder is None:
            self._embedder = EmbeddingGenerator(
                self._conn, self._config.embedding, compression=self._compression, sleep=self._sleep
            )
        result = self._embedder.generate_for_chunks(job.source_id, chunk_ids)
        self._bus.publish(
            events.EMBEDDINGS_GENERATED,
            source_id=job.source_id,
            page_id=job.page_id,
            metadata={
                "processed": result.processed_count,
                "errors": result.error_count,
                "skipped": result.skipped_count,
                "total": result.total_chunks,
            },
        )
        if result.error_count:
            # Re-running is cheap: already embedded chunks are skipped.
            raise ProviderFailure(f"{result.error_count} chunk(s) failed to embed")

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _handle_failure(self, job: Job, exc: BaseException, *, retry: bool) -> None:
        message = str(exc) or type(exc).__name__
        try:
            status = self._store.fail(job.id, message, retry=retry, worker_id=self.worker_id)
            if status is None or job.page_id is None:
                return
            now = self._now()
            final = status == JobStatus.FAILED
            if job.job_type == JobType.CRAWL_PAGE:
                if final:
                    self._repo.fail_page(job.page_id, message, now)
                    self._bus.publish(
                        events.PAGE_FAILED,
                        source_id=job.source_id,
                        page_id=job.page_id,
                        metadata={"error": message, "attempts": job.attempts},
                    )
                else:
                    self._repo.reset_page(job.page_id, now, error=message, bump_retry=True)
            elif job.job_type == JobType.PROCESS_PAGE:
                self._repo.set_processing_status(
                    job.page_id,
                    ProcessingStatus.FAILED if final else ProcessingStatus.PENDING,
                    now,
                    error=message,
                )
            if job.source_id:
                self._aggregate(job.source_id, events.PAGE_FAILED if final else None)
        except sqlite3.Error:
            logger.exception("Could not record failure of job %s", job.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _page_for(self, job: Job) -> Page:
        if not job.page_id:
            raise ValidationFailure(f"Job {job.id} has no page")
        page = self._repo.get_page(job.page_id)
        if page is None:
            raise ValidationFailure(f"Page not found: {job.page_id}")
        self._require_source(page.source_id)
        return page

    def _require_source(self, source_id: str) -> None:
        source = self._repo.get_source(source_id)
        if source is None:
            raise SourceNotFound(source_id)
        if not source.accepts_work:
            raise ValidationFailure(f"Source {source_id} is pending removal")

    def _wait_for_origin(self, url: str) -> None:
        """Honour the per-origin crawl delay between consecutive requests."""
        origin = origin_of(url)
        if self._robots is not None:
            delay = self._robots.crawl_delay(url)
        else:
            delay = self._config.crawl.default_crawl_delay
        last = self._last_request.get(origin)
        if last is not None and delay > 0:
            wait = delay - (time.monotonic() - last)
            if wait > 0:
                logger.debug("Waiting %.2fs before next request to %s", wait, urllib.parse.urlsplit(url).netloc)
                self._sleep(wait)
        self._last_request[origin] = time.monotonic()

    def _aggregate(self, source_id: str, event_type: str | None) -> None:
        try:
            self._aggregator.aggregate_status(source_id, event_type)
        except SourceNotFound:
            logger.warning("Source %s disappeared before aggregation", source_id)

    def _now(self) -> str:
        return format_ts(self._clock())
