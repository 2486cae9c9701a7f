"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from harvester.db.connection import Database
from harvester.db.models import Page, Source
from harvester.db.repository import Repository
from harvester.db.schema import initialize


class FakeClock:
    """Settable UTC clock passed as ``clock=`` to services."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db_path(tmp_path):
    """Path of a file-based DB with schema initialized (for multi-connection tests)."""
    path = tmp_path / ".harvester.db"
    conn = Database(path).connect()
    initialize(conn)
    conn.close()
    return path


@pytest.fixture
def tmp_db(db_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    conn = Database(db_path).connect()
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_source(repo):
    """Factory: add a source with *pages* pending pages; returns (source, pages)."""

    def _make(
        source_id: str = "src-1",
        pages: int = 3,
        url: str = "https://example.com",
    ) -> tuple[Source, list[Page]]:
        repo.add_source(Source(id=source_id, url=url))
        created = repo.add_pages(source_id, [f"{url}/page-{i}" for i in range(pages)])
        return repo.get_source(source_id), created

    return _make
