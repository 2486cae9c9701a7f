"""Tests for harvester rich error messages."""

from __future__ import annotations

import pytest

from harvester.cli.errors import (
    err_config,
    err_invalid_url,
    err_no_api_key,
    err_no_db,
    err_source_not_found,
    err_storage,
)


def test_err_no_db_names_path_and_fix() -> None:
    msg = err_no_db("/data/h.db")
    assert "/data/h.db" in msg
    assert "harvester crawl" in msg


def test_err_source_not_found_points_to_status() -> None:
    msg = err_source_not_found("abc")
    assert "'abc'" in msg
    assert "harvester status" in msg


def test_err_invalid_url_includes_reason() -> None:
    msg = err_invalid_url("ftp://x", "unsupported scheme")
    assert "ftp://x" in msg
    assert "unsupported scheme" in msg


@pytest.mark.parametrize(
    "provider,env_var",
    [
        ("openai", "OPENAI_API_KEY"),
        ("cohere", "COHERE_API_KEY"),
        ("Voyage", "VOYAGE_API_KEY"),
        ("acme", "ACME_API_KEY"),
    ],
)
def test_err_no_api_key_env_var(provider: str, env_var: str) -> None:
    assert f"export {env_var}=" in err_no_api_key(provider)


def test_err_config_and_storage() -> None:
    assert "harvester.yaml" in err_config("crawl.max_pages must be > 0")
    assert "retry" in err_storage("database is locked")
