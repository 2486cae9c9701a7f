"""Tests for crawl/recrawl initiation and source lifecycle operations."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from harvester import events
from harvester.config import HarvesterConfig
from harvester.crawl.fetcher import PageFetcher
from harvester.crawl.initiator import CrawlOptions, initiate_crawl, start_recrawl
from harvester.crawl.lifecycle import cancel_source, restore_source, soft_delete_source
from harvester.crawl.robots import RobotsChecker
from harvester.crawl.status import StatusAggregator
from harvester.db.models import JobStatus, JobType, SourceStatus, format_ts
from harvester.db.repository import Repository
from harvester.errors import ProviderFailure, SourceNotFound, ValidationFailure
from harvester.events import EventBus
from harvester.queue.store import JobStore

SITEMAP = """<?xml version="1.0" encoding="UTF-8"?>
<urlset>
  <url><loc>https://example.com/docs</loc></url>
  <url><loc>https://example.com/about</loc></url>
  <url><loc>https://example.com/private/notes</loc></url>
  <url><loc>https://example.com/login</loc></url>
  <url><loc>https://elsewhere.org/page</loc></url>
</urlset>
"""


@pytest.fixture
def fetcher():
    fake = MagicMock(spec=PageFetcher)

    def fetch_raw(url, allowed_types):
        if url == "https://example.com/sitemap.xml":
            return SITEMAP, "application/xml"
        raise ProviderFailure("404")

    fake.fetch_raw.side_effect = fetch_raw
    fake.fetch_page.side_effect = ProviderFailure("unreachable")
    return fake


@pytest.fixture
def robots():
    return RobotsChecker("Harvester-Bot", fetch=lambda url: "User-agent: *\nDisallow: /private\n")


@pytest.fixture
def crawl(tmp_db, fetcher, robots, clock):
    def _crawl(url="https://example.com", options=None):
        return initiate_crawl(
            tmp_db,
            url,
            options,
            config=HarvesterConfig(),
            fetcher=fetcher,
            robots=robots,
            clock=clock,
        )

    return _crawl


def test_initiate_crawl_queues_one_job_per_page(tmp_db, crawl):
    result = crawl()
    repo = Repository(tmp_db)
    pages = repo.list_pages(result.source_id)
    jobs = JobStore(tmp_db).list_jobs(source_id=result.source_id)

    assert [p.url for p in pages] == [
        "https://example.com/",
        "https://example.com/docs",
        "https://example.com/about",
    ]
    assert result.total_jobs == 3
    assert result.discovery_method == "sitemap"
    assert result.skipped_by_robots == 1
    assert result.filtered == 2
    assert len(jobs) == 3
    assert all(j.job_type == JobType.CRAWL_PAGE for j in jobs)
    assert {j.job_key for j in jobs} == {f"crawl:{result.source_id}:{p.id}" for p in pages}
    assert {j.payload_dict["url"] for j in jobs} == {p.url for p in pages}

    source = repo.get_source(result.source_id)
    assert source.url == "https://example.com/"
    assert source.status == SourceStatus.PENDING
    assert source.crawl.total_jobs == 3


def test_initiate_crawl_publishes_event(tmp_db, crawl):
    result = crawl()
    [event] = EventBus(tmp_db).poll(event_type=events.CRAWL_INITIATED)
    assert event.source_id == result.source_id
    assert event.metadata_dict["total_jobs"] == 3
    assert event.metadata_dict["method"] == "sitemap"


def test_initiate_crawl_options(tmp_db, crawl):
    result = crawl(
        options=CrawlOptions(
            max_pages=2,
            exclude_patterns=["*/about"],
            priority=7,
            metadata={"team": "docs"},
        )
    )
    jobs = JobStore(tmp_db).list_jobs(source_id=result.source_id)
    assert result.total_jobs == 2
    assert all(j.priority == 7 for j in jobs)
    metadata = Repository(tmp_db).get_source(result.source_id).metadata_dict
    assert metadata["team"] == "docs"
    assert metadata["discovery"]["method"] == "sitemap"


def test_initiate_crawl_without_robots(tmp_db, crawl):
    result = crawl(options=CrawlOptions(respect_robots=False))
    assert result.skipped_by_robots == 0
    assert result.total_jobs == 4


def test_initiate_crawl_rejects_bad_url(tmp_db, crawl):
    with pytest.raises(ValidationFailure):
        crawl("ftp://example.com")
    assert Repository(tmp_db).list_sources() == []


def test_initiate_crawl_root_only_when_discovery_fails(tmp_db, fetcher, robots, clock):
    fetcher.fetch_raw.side_effect = ProviderFailure("down")
    result = initiate_crawl(
        tmp_db, "example.com", config=HarvesterConfig(), fetcher=fetcher, robots=robots, clock=clock
    )
    assert result.discovery_method == "root_only"
    assert result.total_jobs == 1


def test_start_recrawl_overlays_and_requeues(tmp_db, crawl, clock):
    source_id = crawl().source_id
    result = start_recrawl(tmp_db, source_id, initiated_by="tests", clock=clock)

    source = Repository(tmp_db).get_source(source_id)
    assert result.total_jobs == 3
    assert source.status == SourceStatus.RECRAWLING
    assert source.recrawl.is_recrawling
    assert source.recrawl.initiated_by == "tests"
    recrawl_jobs = [
        j for j in JobStore(tmp_db).list_jobs(source_id=source_id) if j.job_key.startswith("recrawl:")
    ]
    assert len(recrawl_jobs) == 3
    assert EventBus(tmp_db).poll(event_type=events.RECRAWL_STARTED)


def test_start_recrawl_merges_source_metadata(tmp_db, crawl, clock):
    source_id = crawl(options=CrawlOptions(metadata={"team": "docs"})).source_id
    start_recrawl(tmp_db, source_id, initiated_by="tests", clock=clock)

    metadata = Repository(tmp_db).get_source(source_id).metadata_dict
    assert metadata["team"] == "docs"
    assert metadata["discovery"]["method"] == "sitemap"
    assert metadata["last_recrawl"] == {
        "started_at": format_ts(clock()),
        "initiated_by": "tests",
        "pages": 3,
    }


def test_aggregation_during_recrawl_start_keeps_overlay(tmp_db, crawl, clock, monkeypatch):
    source_id = crawl().source_id
    repo = Repository(tmp_db)
    stamp = format_ts(clock())
    for page in repo.list_pages(source_id):
        repo.start_page(page.id, stamp)
        repo.complete_page(
            page.id,
            content="done",
            content_compressed=None,
            compression="none",
            content_size=4,
            compression_ratio=1.0,
            processing_time_ms=1,
            now=stamp,
        )
    aggregator = StatusAggregator(tmp_db, EventBus(tmp_db), clock=clock)
    aggregator.aggregate_status(source_id)
    assert repo.get_source(source_id).status == SourceStatus.READY_FOR_TRAINING

    set_overlay = Repository._set_recrawl_columns

    def aggregate_then_set(self, *args):
        # A concurrent aggregation landing between the page reset and the overlay.
        aggregator.aggregate_status(source_id)
        set_overlay(self, *args)

    monkeypatch.setattr(Repository, "_set_recrawl_columns", aggregate_then_set)
    start_recrawl(tmp_db, source_id, clock=clock)

    source = repo.get_source(source_id)
    assert source.recrawl.is_recrawling
    assert source.status == SourceStatus.RECRAWLING
    assert repo.count_pages_by_status(source_id)["pending"] == 3


def test_start_recrawl_specific_urls_adds_new_pages(tmp_db, crawl, clock):
    source_id = crawl().source_id
    result = start_recrawl(
        tmp_db, source_id, ["https://example.com/docs", "https://example.com/new-page"], clock=clock
    )
    assert result.total_jobs == 2
    assert len(Repository(tmp_db).list_pages(source_id)) == 4
    assert Repository(tmp_db).get_source(source_id).recrawl.target_url == "https://example.com/docs"


def test_start_recrawl_rejections(tmp_db, crawl, clock):
    source_id = crawl().source_id
    with pytest.raises(SourceNotFound):
        start_recrawl(tmp_db, "missing", clock=clock)
    with pytest.raises(ValidationFailure, match="No recrawlable URL"):
        start_recrawl(tmp_db, source_id, ["https://elsewhere.org/x"], clock=clock)

    start_recrawl(tmp_db, source_id, clock=clock)
    with pytest.raises(ValidationFailure, match="already recrawling"):
        start_recrawl(tmp_db, source_id, clock=clock)


def test_start_recrawl_refuses_removed_source(tmp_db, crawl, clock):
    source_id = crawl().source_id
    cancel_source(tmp_db, source_id)
    with pytest.raises(ValidationFailure, match="pending removal"):
        start_recrawl(tmp_db, source_id, clock=clock)


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------

def test_cancel_source_fails_open_jobs(tmp_db, crawl):
    source_id = crawl().source_id
    assert cancel_source(tmp_db, source_id, reason="user request") == 3

    store = JobStore(tmp_db)
    assert all(j.status == JobStatus.FAILED for j in store.list_jobs(source_id=source_id))
    source = Repository(tmp_db).get_source(source_id)
    assert source.pending_removal
    assert not source.accepts_work
    [event] = EventBus(tmp_db).poll(event_type=events.SOURCE_CANCELLED)
    assert event.metadata_dict == {"reason": "user request", "jobs_cancelled": 3}


def test_cancel_unknown_source(tmp_db):
    with pytest.raises(SourceNotFound):
        cancel_source(tmp_db, "missing")


def test_soft_delete_and_restore(tmp_db, crawl):
    source_id = crawl().source_id
    repo = Repository(tmp_db)

    assert soft_delete_source(tmp_db, source_id)
    assert repo.get_source(source_id) is None
    with pytest.raises(SourceNotFound):
        soft_delete_source(tmp_db, source_id)

    assert restore_source(tmp_db, source_id)
    assert repo.get_source(source_id).accepts_work
    assert not restore_source(tmp_db, source_id)

    bus = EventBus(tmp_db)
    assert bus.poll(event_type=events.SOURCE_DELETED)
    assert bus.poll(event_type=events.SOURCE_RESTORED)


def test_restore_unknown_source(tmp_db):
    with pytest.raises(SourceNotFound):
        restore_source(tmp_db, "missing")
