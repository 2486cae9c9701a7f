"""Tests for the harvester CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from harvester.cli.main import app
from harvester.crawl.initiator import CrawlInitiation
from harvester.db.connection import Database
from harvester.db.models import JobType, Source
from harvester.db.repository import Repository
from harvester.db.schema import initialize
from harvester.errors import ValidationFailure
from harvester.events import EventBus
from harvester.queue.store import JobStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolate(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("harvester.config._GLOBAL_CONFIG_PATH", tmp_path / "global" / "config.yaml")
    monkeypatch.chdir(tmp_path)
    for name in ("HARVESTER_DB", "HARVESTER_LOG_LEVEL", "HARVESTER_EMBEDDING_MODEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_file(tmp_path: Path) -> Path:
    return tmp_path / "harvest.db"


@pytest.fixture
def seeded(db_file: Path) -> str:
    """A database holding one source with two pending pages; returns the source id."""
    conn = Database(db_file).connect()
    initialize(conn)
    repo = Repository(conn)
    repo.add_source(Source(id="src-1", url="https://example.com"))
    repo.add_pages("src-1", ["https://example.com", "https://example.com/docs"])
    conn.close()
    return "src-1"


def _invoke(*args: str, input: str | None = None):
    return runner.invoke(app, ["--log-level", "ERROR", *args], input=input)


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.startswith("harvester ")


def test_bad_log_level_is_rejected() -> None:
    result = runner.invoke(app, ["--log-level", "LOUD", "status"])
    assert result.exit_code == 2


def test_invalid_config_exits_1(tmp_path: Path, db_file: Path) -> None:
    (tmp_path / "harvester.yaml").write_text(yaml.dump({"crawl": {"max_pages": 0}}), encoding="utf-8")
    result = _invoke("status", "--db", str(db_file))
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_missing_db_exits_1(db_file: Path) -> None:
    result = _invoke("status", "--db", str(db_file))
    assert result.exit_code == 1
    assert "No database found" in result.output


# ---------------------------------------------------------------------------
# crawl / recrawl
# ---------------------------------------------------------------------------


def test_crawl_passes_options_and_creates_db(db_file: Path) -> None:
    fake = CrawlInitiation(
        source_id="abc", total_jobs=4, discovered=5, filtered=1, discovery_method="sitemap"
    )
    with patch("harvester.cli.crawl.initiate_crawl", return_value=fake) as initiate:
        result = _invoke(
            "crawl",
            "https://example.com",
            "--db",
            str(db_file),
            "--max-pages",
            "10",
            "--include",
            "/docs/*",
            "--no-robots",
        )
    assert result.exit_code == 0, result.output
    assert "Crawl queued" in result.output
    assert db_file.exists()

    options = initiate.call_args.args[2]
    assert options.max_pages == 10
    assert options.include_patterns == ["/docs/*"]
    assert options.respect_robots is False
    assert options.use_sitemap is None


def test_crawl_invalid_url_exits_1(db_file: Path) -> None:
    with patch(
        "harvester.cli.crawl.initiate_crawl", side_effect=ValidationFailure("bad scheme")
    ):
        result = _invoke("crawl", "mailto:someone", "--db", str(db_file))
    assert result.exit_code == 1
    assert "bad scheme" in result.output


def test_recrawl_queues_jobs(db_file: Path, seeded: str) -> None:
    result = _invoke("recrawl", seeded, "--db", str(db_file))
    assert result.exit_code == 0, result.output
    assert "2 job(s) queued" in result.output

    conn = Database(db_file).connect()
    try:
        source = Repository(conn).get_source(seeded)
        assert source.recrawl.is_recrawling
        assert source.recrawl.initiated_by == "cli"
    finally:
        conn.close()


def test_recrawl_twice_is_rejected(db_file: Path, seeded: str) -> None:
    _invoke("recrawl", seeded, "--db", str(db_file))
    result = _invoke("recrawl", seeded, "--db", str(db_file))
    assert result.exit_code == 1
    assert "already recrawling" in result.output


def test_recrawl_unknown_source(db_file: Path, seeded: str) -> None:
    result = _invoke("recrawl", "missing", "--db", str(db_file))
    assert result.exit_code == 1
    assert "Source not found" in result.output


# ---------------------------------------------------------------------------
# work
# ---------------------------------------------------------------------------


def test_work_once_on_empty_queue(db_file: Path, seeded: str) -> None:
    result = _invoke("work", "--db", str(db_file), "--once")
    assert result.exit_code == 0, result.output
    assert "Queue is empty" in result.output


# ---------------------------------------------------------------------------
# health / recover / emergency-reset
# ---------------------------------------------------------------------------


def test_health_json_on_healthy_db(db_file: Path, seeded: str) -> None:
    result = _invoke("health", "--db", str(db_file), "--json")
    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["healthy"] is True
    assert report["queue_status"]["state"] == "healthy"


def test_health_unhealthy_exits_2(tmp_path: Path, db_file: Path, seeded: str) -> None:
    (tmp_path / "harvester.yaml").write_text(
        yaml.dump({"health": {"backlog_busy": 0, "backlog_overloaded": 0}}), encoding="utf-8"
    )
    conn = Database(db_file).connect()
    JobStore(conn).enqueue(JobType.CRAWL_PAGE, source_id=seeded)
    conn.close()

    result = _invoke("health", "--db", str(db_file))
    assert result.exit_code == 2
    assert "unhealthy" in result.output


def test_recover_nothing_to_do(db_file: Path, seeded: str) -> None:
    result = _invoke("recover", "--db", str(db_file))
    assert result.exit_code == 0, result.output
    assert "Nothing to recover" in result.output


def test_recover_json(db_file: Path, seeded: str) -> None:
    result = _invoke("recover", "--db", str(db_file), "--json")
    assert result.exit_code == 0
    assert json.loads(result.stdout)["jobs_spawned"] == 0


def test_emergency_reset_with_yes(db_file: Path, seeded: str) -> None:
    result = _invoke("emergency-reset", "--db", str(db_file), "--yes")
    assert result.exit_code == 0, result.output
    assert "Reset 0 job(s)" in result.output


def test_emergency_reset_declined(db_file: Path, seeded: str) -> None:
    result = _invoke("emergency-reset", "--db", str(db_file), input="n\n")
    assert result.exit_code == 0
    assert "Cancelled" in result.output


# ---------------------------------------------------------------------------
# status / events
# ---------------------------------------------------------------------------


def test_status_empty_db(db_file: Path) -> None:
    conn = Database(db_file).connect()
    initialize(conn)
    conn.close()
    result = _invoke("status", "--db", str(db_file))
    assert result.exit_code == 0
    assert "No sources yet" in result.output


def test_status_lists_sources(db_file: Path, seeded: str) -> None:
    result = _invoke("status", "--db", str(db_file))
    assert result.exit_code == 0, result.output
    assert "Sources" in result.output


def test_status_single_source(db_file: Path, seeded: str) -> None:
    result = _invoke("status", seeded, "--db", str(db_file))
    assert result.exit_code == 0, result.output
    assert "https://example.com" in result.output
    assert "2 pending" in result.output


def test_status_unknown_source(db_file: Path, seeded: str) -> None:
    result = _invoke("status", "missing", "--db", str(db_file))
    assert result.exit_code == 1
    assert "Source not found" in result.output


def test_events_lists_and_filters(db_file: Path, seeded: str) -> None:
    conn = Database(db_file).connect()
    bus = EventBus(conn)
    bus.publish("crawl_initiated", source_id=seeded)
    bus.publish("health_check")
    conn.close()

    result = _invoke("events", "--db", str(db_file), "--type", "crawl_initiated")
    assert result.exit_code == 0, result.output
    assert "crawl_initiated" in result.output
    assert "health_check" not in result.output


def test_events_empty(db_file: Path, seeded: str) -> None:
    result = _invoke("events", "--db", str(db_file))
    assert result.exit_code == 0
    assert "No events" in result.output


# ---------------------------------------------------------------------------
# remove / restore / cancel
# ---------------------------------------------------------------------------


def test_remove_then_restore(db_file: Path, seeded: str) -> None:
    result = _invoke("remove", seeded, "--db", str(db_file), "--yes")
    assert result.exit_code == 0, result.output
    assert "Removed" in result.output
    assert _invoke("status", seeded, "--db", str(db_file)).exit_code == 1

    result = _invoke("restore", seeded, "--db", str(db_file))
    assert result.exit_code == 0, result.output
    assert "Restored" in result.output
    assert _invoke("status", seeded, "--db", str(db_file)).exit_code == 0


def test_remove_declined_keeps_source(db_file: Path, seeded: str) -> None:
    result = _invoke("remove", seeded, "--db", str(db_file), input="n\n")
    assert result.exit_code == 0
    assert "Cancelled" in result.output
    assert _invoke("status", seeded, "--db", str(db_file)).exit_code == 0


def test_remove_unknown_source(db_file: Path, seeded: str) -> None:
    result = _invoke("remove", "missing", "--db", str(db_file), "--yes")
    assert result.exit_code == 1


def test_restore_not_deleted(db_file: Path, seeded: str) -> None:
    result = _invoke("restore", seeded, "--db", str(db_file))
    assert result.exit_code == 0
    assert "nothing to restore" in result.output


def test_cancel_fails_open_jobs(db_file: Path, seeded: str) -> None:
    conn = Database(db_file).connect()
    store = JobStore(conn)
    for _ in range(2):
        store.enqueue(JobType.CRAWL_PAGE, source_id=seeded)
    conn.close()

    result = _invoke("cancel", seeded, "--db", str(db_file))
    assert result.exit_code == 0, result.output
    assert "Cancelled 2 job(s)" in result.output


# ---------------------------------------------------------------------------
# embed / chunk
# ---------------------------------------------------------------------------


def test_embed_without_api_key(db_file: Path, seeded: str, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    result = _invoke("embed", seeded, "--db", str(db_file))
    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


def test_embed_without_chunks(db_file: Path, seeded: str, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    result = _invoke("embed", seeded, "--db", str(db_file))
    assert result.exit_code == 0
    assert "No chunks stored" in result.output


def test_chunk_preview(tmp_path: Path) -> None:
    doc = tmp_path / "guide.md"
    doc.write_text(
        "# Install\n\nRun the installer and follow the prompts.\n\n"
        "# Usage\n\nStart the service and open the dashboard.\n",
        encoding="utf-8",
    )
    result = _invoke("chunk", str(doc), "--max-tokens", "8")
    assert result.exit_code == 0, result.output
    assert "guide.md (markdown)" in result.output
    assert "chunk(s)" in result.output


def test_chunk_missing_file(tmp_path: Path) -> None:
    result = _invoke("chunk", str(tmp_path / "nope.txt"))
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_chunk_unknown_content_type(tmp_path: Path) -> None:
    doc = tmp_path / "a.txt"
    doc.write_text("hello", encoding="utf-8")
    result = _invoke("chunk", str(doc), "--content-type", "video")
    assert result.exit_code == 1
    assert "Unknown content_type" in result.output
