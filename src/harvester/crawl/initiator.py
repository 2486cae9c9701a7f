"""Crawl and recrawl initiation.

``initiate_crawl`` turns a start URL into a source, one page row per
accepted URL and one ``crawl_page`` job per page. ``start_recrawl`` puts an
existing source into the recrawl overlay and queues fresh jobs for its pages.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from harvester import events
from harvester.config import HarvesterConfig
from harvester.crawl.discovery import UrlDiscovery
from harvester.crawl.fetcher import PageFetcher
from harvester.crawl.robots import RobotsChecker
from harvester.crawl.status import StatusAggregator
from harvester.crawl.url_filter import (
    extract_domain,
    filter_urls,
    normalize_url,
    validate_crawl_url,
)
from harvester.db.models import JobType, Page, RecrawlState, Source, format_ts, utcnow
from harvester.db.repository import Repository, new_id
from harvester.errors import SourceNotFound, ValidationFailure
from harvester.events import EventBus
from harvester.queue.store import JobStore

logger = logging.getLogger("Harvester.Initiator")


@dataclass
class CrawlOptions:
    """Per-crawl overrides of the ``crawl`` config section.

    Attributes:
        max_pages: Cap on pages queued (after filtering).
        include_patterns: ``*`` globs a URL must match (any of).
        exclude_patterns: ``*`` globs that drop a URL.
        respect_robots: Skip URLs disallowed by robots.txt.
        use_sitemap: Try sitemaps before link extraction.
        priority: Priority of the queued crawl jobs.
        metadata: Free-form data stored on the source.
    """

    max_pages: int | None = None
    include_patterns: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    respect_robots: bool | None = None
    use_sitemap: bool | None = None
    priority: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CrawlInitiation:
    """Result of ``initiate_crawl`` / ``start_recrawl``."""

    source_id: str
    total_jobs: int
    discovered: int = 0
    filtered: int = 0
    skipped_by_robots: int = 0
    discovery_method: str = ""


def initiate_crawl(
    conn: sqlite3.Connection,
    url: str,
    options: CrawlOptions | None = None,
    *,
    config: HarvesterConfig | None = None,
    fetcher: PageFetcher | None = None,
    robots: RobotsChecker | None = None,
    bus: EventBus | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> CrawlInitiation:
    """Create a source for *url*, discover its pages and queue crawl jobs.

    Args:
        conn: Open database connection.
        url: Start URL; ``https://`` is assumed when no scheme is given.
        options: Per-crawl overrides.
        config: Loaded configuration (defaults when None).
        fetcher: Used for discovery requests.
        robots: robots.txt checker shared with the workers.
        bus: Event bus for ``crawl_initiated``.
        clock: Returns the current aware UTC datetime.

    Returns:
        CrawlInitiation with the new source id and job counts.

    Raises:
        ValidationFailure: If *url* is malformed. Nothing is stored in that case.
    """
    cfg = config or HarvesterConfig()
    opts = options or CrawlOptions()
    root = validate_crawl_url(url)
    max_pages = opts.max_pages or cfg.crawl.max_pages
    if max_pages < 1:
        raise ValidationFailure("max_pages must be >= 1")

    fetcher = fetcher or PageFetcher.from_config(cfg.crawl)
    respect_robots = cfg.crawl.respect_robots if opts.respect_robots is None else opts.respect_robots
    if robots is None and respect_robots:
        robots = RobotsChecker.from_config(cfg.crawl)
    use_sitemap = cfg.crawl.use_sitemap if opts.use_sitemap is None else opts.use_sitemap
    bus = bus or EventBus(conn)
    repo = Repository(conn)

    source = Source(id=new_id(), url=root, metadata=json.dumps(opts.metadata))
    repo.add_source(source)

    discovery = UrlDiscovery(fetcher, robots, use_sitemap=use_sitemap).discover(root)
    filtered = filter_urls(
        discovery.urls,
        extract_domain(root),
        opts.include_patterns or None,
        opts.exclude_patterns or None,
    )
    urls = filtered.urls if root in filtered.urls else [root, *filtered.urls]
    urls = urls[:max_pages]

    allowed: list[str] = []
    skipped = 0
    for candidate in urls:
        if respect_robots and robots is not None and not robots.is_allowed(candidate):
            skipped += 1
            logger.info("Skipping %s: disallowed by robots.txt", candidate)
            continue
        allowed.append(candidate)

    pages = repo.add_pages(source.id, allowed, max_retries=cfg.queue.max_attempts)
    repo.merge_source_metadata(
        source.id,
        {"discovery": {"method": discovery.method, "discovered": len(discovery.urls)}},
    )
    store = JobStore(conn, retry_base_seconds=cfg.queue.retry_base_seconds, clock=clock)
    for page in pages:
        _enqueue_crawl(store, page, f"crawl:{source.id}:{page.id}", opts.priority, cfg)

    StatusAggregator(conn, bus, clock=clock).aggregate_status(source.id, events.CRAWL_INITIATED)
    result = CrawlInitiation(
        source_id=source.id,
        total_jobs=len(pages),
        discovered=len(discovery.urls),
        filtered=len(filtered.rejected),
        skipped_by_robots=skipped,
        discovery_method=discovery.method,
    )
    bus.publish(
        events.CRAWL_INITIATED,
        source_id=source.id,
        metadata={
            "url": root,
            "total_jobs": result.total_jobs,
            "discovered": result.discovered,
            "filtered": result.filtered,
            "skipped_by_robots": skipped,
            "method": discovery.method,
            "filter_stats": filtered.stats,
        },
    )
    logger.info(
        "Crawl of %s queued %d job(s) (%d discovered, %d filtered, %d blocked by robots)",
        root,
        result.total_jobs,
        result.discovered,
        result.filtered,
        skipped,
        extra={"source_id": source.id, "total_jobs": result.total_jobs},
    )
    return result


def start_recrawl(
    conn: sqlite3.Connection,
    source_id: str,
    urls: list[str] | None = None,
    initiated_by: str = "cli",
    *,
    config: HarvesterConfig | None = None,
    bus: EventBus | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> CrawlInitiation:
    """Enter the recrawl overlay for *source_id* and queue fresh crawl jobs.

    Args:
        conn: Open database connection.
        source_id: Source to recrawl.
        urls: Pages to recrawl; same-site URLs not seen before are added.
            All pages of the source when None.
        initiated_by: Recorded on the recrawl state.
        config: Loaded configuration (defaults when None).
        bus: Event bus for ``recrawl_started``.
        clock: Returns the current aware UTC datetime.

    Raises:
        SourceNotFound: Unknown or deleted source.
        ValidationFailure: Source is flagged for removal, already
            recrawling, or no usable URL was given.
    """
    cfg = config or HarvesterConfig()
    bus = bus or EventBus(conn)
    repo = Repository(conn)
    source = repo.get_source(source_id)
    if source is None:
        raise SourceNotFound(source_id)
    if source.pending_removal:
        raise ValidationFailure(f"Source {source_id} is pending removal")
    if source.recrawl.is_recrawling:
        raise ValidationFailure(f"Source {source_id} is already recrawling")

    if urls:
        wanted = filter_urls([normalize_url(u) for u in urls], extract_domain(source.url)).urls
        if not wanted:
            raise ValidationFailure("No recrawlable URL given for this source")
        targets = repo.add_pages(source_id, wanted, max_retries=cfg.queue.max_attempts)
    else:
        targets = repo.list_pages(source_id)
    if not targets:
        raise ValidationFailure(f"Source {source_id} has no pages to recrawl")

    now = format_ts(clock())
    repo.begin_recrawl(
        source_id,
        RecrawlState(
            is_recrawling=True,
            started_at=now,
            target_url=targets[0].url if urls else source.url,
            initiated_by=initiated_by,
        ),
        [p.id for p in targets],
        now,
    )
    repo.merge_source_metadata(
        source_id,
        {"last_recrawl": {"started_at": now, "initiated_by": initiated_by, "pages": len(targets)}},
    )

    store = JobStore(conn, retry_base_seconds=cfg.queue.retry_base_seconds, clock=clock)
    for page in targets:
        _enqueue_crawl(store, page, f"recrawl:{source_id}:{page.id}:{now}", 0, cfg)

    StatusAggregator(conn, bus, clock=clock).aggregate_status(source_id, events.RECRAWL_STARTED)
    bus.publish(
        events.RECRAWL_STARTED,
        source_id=source_id,
        metadata={"pages": len(targets), "initiated_by": initiated_by},
    )
    logger.info("Recrawl of source %s queued %d job(s)", source_id, len(targets))
    return CrawlInitiation(
        source_id=source_id,
        total_jobs=len(targets),
        discovered=len(targets),
        discovery_method="recrawl",
    )


def _enqueue_crawl(
    store: JobStore, page: Page, job_key: str, priority: int, cfg: HarvesterConfig
) -> None:
    store.enqueue(
        JobType.CRAWL_PAGE,
        source_id=page.source_id,
        page_id=page.id,
        payload={"url": page.url},
        priority=priority,
        job_key=job_key,
        max_attempts=cfg.queue.max_attempts,
    )
