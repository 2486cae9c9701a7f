"""Tests for the on-demand recovery service."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from harvester import events
from harvester.config import HarvesterConfig
from harvester.db.models import JobStatus, JobType, format_ts
from harvester.db.repository import Repository
from harvester.events import EventBus
from harvester.monitor.recovery import RecoveryService
from harvester.queue.claiming import JobClaimer
from harvester.queue.store import JobStore


@pytest.fixture
def store(tmp_db, clock):
    return JobStore(tmp_db, clock=clock)


@pytest.fixture
def trigger():
    return MagicMock()


@pytest.fixture
def service(tmp_db, clock, trigger):
    return RecoveryService(tmp_db, HarvesterConfig(), trigger=trigger, clock=clock)


def test_nothing_to_recover(service, trigger):
    report = service.run_recovery()
    assert not report.changed
    assert report.errors == []
    trigger.assert_not_called()


def test_orphans_are_respawned_then_converge(service, trigger, store, clock, make_source):
    _, pages = make_source(pages=3)
    clock.advance(200)

    report = service.run_recovery()
    assert report.orphaned_pages_found == 3
    assert report.jobs_spawned == 3
    assert {j.page_id for j in store.list_jobs()} == {p.id for p in pages}
    trigger.assert_called_once()

    clock.advance(1)
    again = service.run_recovery()
    assert again.orphaned_pages_found == 0
    assert not again.changed
    assert trigger.call_count == 1


def test_failed_pages_are_retried(service, repo, store, clock, make_source):
    _, pages = make_source(pages=2)
    repo.fail_page(pages[0].id, "connection reset", format_ts(clock()))

    report = service.run_recovery()
    assert report.failed_pages_retried == 1
    assert report.jobs_spawned == 1
    page = repo.get_page(pages[0].id)
    assert page.status == "pending"
    assert page.retry_count == 1
    [job] = store.list_jobs()
    assert job.page_id == pages[0].id


def test_failed_pages_without_budget_are_left(service, repo, clock, make_source):
    make_source(pages=0)
    [page] = repo.add_pages("src-1", ["https://example.com/once"], max_retries=0)
    repo.fail_page(page.id, "gone", format_ts(clock()))

    report = service.run_recovery()
    assert report.failed_pages_retried == 0
    assert repo.get_page(page.id).status == "failed"


def test_stalled_jobs_and_pages_are_counted_separately(
    tmp_db, service, repo, store, clock, make_source
):
    _, pages = make_source(pages=2)
    job = store.enqueue(JobType.CRAWL_PAGE, source_id="src-1", page_id=pages[0].id)
    JobClaimer(tmp_db, clock=clock).claim_batch(1, JobType.ALL, "w1")
    for page in pages:
        repo.start_page(page.id, format_ts(clock()))
    clock.advance(400)

    report = service.run_recovery()
    assert report.stalled_jobs_recovered == 1
    # Only the page without a requeued job counts as a timed-out page.
    assert report.timeout_jobs_reset == 1
    assert store.get(job.id).status == JobStatus.PENDING
    assert repo.get_page(pages[0].id).status == "in_progress"
    assert repo.get_page(pages[1].id).status == "pending"

    clock.advance(1)
    assert not service.run_recovery().changed


def test_stale_pending_jobs_are_expedited(service, store, clock, make_source):
    _, pages = make_source(pages=1)
    job = store.enqueue(
        JobType.CRAWL_PAGE,
        source_id="src-1",
        page_id=pages[0].id,
        scheduled_at=clock() + timedelta(hours=2),
    )
    clock.advance(2000)

    report = service.run_recovery()
    assert report.stale_pages_refreshed == 1
    assert store.get(job.id).scheduled_at == format_ts(clock())


def test_failing_step_is_reported_and_others_run(service, repo, clock, make_source):
    make_source(pages=2)
    clock.advance(200)
    with patch.object(
        Repository,
        "find_retryable_failed_pages",
        side_effect=sqlite3.OperationalError("database is locked"),
    ):
        report = service.run_recovery()
    assert report.errors == ["failed_pages: database is locked"]
    assert report.jobs_spawned == 2


def test_recovery_publishes_event(tmp_db, clock, make_source):
    bus = EventBus(tmp_db)
    make_source(pages=1)
    clock.advance(200)
    RecoveryService(tmp_db, bus=bus, clock=clock).run_recovery()
    [event] = bus.poll(event_type=events.RECOVERY_RUN)
    assert event.metadata_dict["jobs_spawned"] == 1


def test_requeued_job_spares_its_page(tmp_db, service, repo, store, clock, make_source):
    make_source(pages=0)
    [page] = repo.add_pages("src-1", ["https://example.com/last-try"], max_retries=1)
    repo.start_page(page.id, format_ts(clock()))
    job = store.enqueue(JobType.CRAWL_PAGE, source_id="src-1", page_id=page.id)
    JobClaimer(tmp_db, clock=clock).claim_batch(1, JobType.ALL, "w1")
    clock.advance(400)

    report = service.run_recovery()
    assert report.stalled_jobs_recovered == 1
    assert report.timeout_jobs_reset == 0
    assert store.get(job.id).status == JobStatus.PENDING
    stored = repo.get_page(page.id)
    assert stored.status == "in_progress"
    assert stored.retry_count == 0
