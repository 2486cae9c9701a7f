"""Tests for the harvester config loader."""

from __future__ import annotations

import stat
import warnings
from pathlib import Path

import pytest
import yaml

from harvester.config import (
    ConfigError,
    HarvesterConfig,
    ensure_global_config,
    load_config,
)

_ENV_VARS = ("HARVESTER_EMBEDDING_MODEL", "HARVESTER_LOG_LEVEL", "HARVESTER_USER_AGENT", "HARVESTER_DB")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


def _load(tmp_path: Path, global_cfg: Path | None = None) -> HarvesterConfig:
    return load_config(
        project_dir=tmp_path,
        global_config_path=global_cfg or tmp_path / "nonexistent" / "config.yaml",
    )


# ---------------------------------------------------------------------------
# Defaults: no config files present
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path) -> None:
    """No config files → all hardcoded defaults."""
    cfg = _load(tmp_path)

    assert cfg.database.path == ".harvester.db"
    assert cfg.crawl.user_agent == "Harvester-Bot/0.1"
    assert cfg.crawl.respect_robots is True
    assert cfg.queue.batch_size == 10
    assert cfg.queue.max_attempts == 3
    assert cfg.health.job_timeout == 300
    assert cfg.health.orphan_grace == 120
    assert cfg.chunking.max_tokens == 500
    assert cfg.chunking.overlap_tokens == 50
    assert cfg.embedding.model == "openai/text-embedding-3-small"
    assert cfg.logging.level == "INFO"


# ---------------------------------------------------------------------------
# Global and project layers
# ---------------------------------------------------------------------------


def test_load_config_global_overrides_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"crawl": {"max_pages": 25}})

    cfg = _load(tmp_path, global_cfg)
    assert cfg.crawl.max_pages == 25
    assert cfg.crawl.user_agent == "Harvester-Bot/0.1"


def test_load_config_global_empty_file(tmp_path: Path) -> None:
    """Empty global config file → defaults (no crash)."""
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("", encoding="utf-8")

    assert _load(tmp_path, global_cfg).crawl.max_pages == 100


def test_load_config_project_overrides_global(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"crawl": {"max_pages": 25, "user_agent": "Global/1.0"}})
    _write_yaml(tmp_path / "harvester.yaml", {"crawl": {"max_pages": 500}})

    cfg = _load(tmp_path, global_cfg)
    assert cfg.crawl.max_pages == 500
    # Deep merge keeps the global value for keys the project does not set.
    assert cfg.crawl.user_agent == "Global/1.0"


def test_load_config_coerces_values(tmp_path: Path) -> None:
    _write_yaml(
        tmp_path / "harvester.yaml",
        {
            "crawl": {"respect_robots": "no", "default_crawl_delay": "2.5"},
            "health": {"job_timeout": "600"},
        },
    )
    cfg = _load(tmp_path)
    assert cfg.crawl.respect_robots is False
    assert cfg.crawl.default_crawl_delay == 2.5
    assert cfg.health.job_timeout == 600


def test_load_config_invalid_value(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "harvester.yaml", {"crawl": {"max_pages": "lots"}})
    with pytest.raises(ConfigError, match="max_pages"):
        _load(tmp_path)


# ---------------------------------------------------------------------------
# API key rejection
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "bad_key",
    ["api_key", "apikey", "OPENAI_API_KEY", "secret", "password", "token", "api-key"],
)
def test_global_config_rejects_api_key_fields(tmp_path: Path, bad_key: str) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text(f"{bad_key}: sk-abc123\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="forbidden key"):
        _load(tmp_path, global_cfg)


def test_global_config_rejects_nested_api_key(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"api_key": "sk-secret"}})

    with pytest.raises(ConfigError, match="embedding.api_key"):
        _load(tmp_path, global_cfg)


def test_token_budget_keys_are_not_api_keys(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"chunking": {"max_tokens": 300, "overlap_tokens": 30}})

    cfg = _load(tmp_path, global_cfg)
    assert cfg.chunking.max_tokens == 300
    assert cfg.chunking.overlap_tokens == 30


# ---------------------------------------------------------------------------
# Unknown key warnings
# ---------------------------------------------------------------------------


def test_unknown_top_level_key_warns(tmp_path: Path) -> None:
    """Unknown top-level key emits UserWarning (not error)."""
    _write_yaml(tmp_path / "harvester.yaml", {"unknown_section": {"foo": "bar"}})

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        cfg = _load(tmp_path)

    assert any("unknown_section" in str(w.message) for w in caught)
    assert cfg.crawl.max_pages == 100


def test_unknown_section_key_warns(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "harvester.yaml", {"crawl": {"max_depth": 3}})

    with pytest.warns(UserWarning, match="max_depth"):
        _load(tmp_path)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "data,match",
    [
        ({"crawl": {"max_pages": 0}}, "crawl.max_pages"),
        ({"queue": {"batch_size": -1}}, "queue.batch_size"),
        ({"health": {"job_timeout": 0}}, "health.job_timeout"),
        ({"chunking": {"overlap_tokens": -5}}, "overlap_tokens"),
        ({"logging": {"level": "LOUD"}}, "logging.level"),
        ({"health": {"backlog_busy": 600, "backlog_overloaded": 500}}, "backlog_busy"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, data: dict, match: str) -> None:
    _write_yaml(tmp_path / "harvester.yaml", data)
    with pytest.raises(ConfigError, match=match):
        _load(tmp_path)


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------


def test_env_vars_override_config_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_yaml(
        tmp_path / "harvester.yaml",
        {"embedding": {"model": "cohere/embed-english-v3.0"}, "database": {"path": "a.db"}},
    )
    monkeypatch.setenv("HARVESTER_EMBEDDING_MODEL", "openai/text-embedding-3-large")
    monkeypatch.setenv("HARVESTER_DB", "/tmp/other.db")
    monkeypatch.setenv("HARVESTER_USER_AGENT", "Custom/2.0")

    cfg = _load(tmp_path)
    assert cfg.embedding.model == "openai/text-embedding-3-large"
    assert cfg.database.path == "/tmp/other.db"
    assert cfg.crawl.user_agent == "Custom/2.0"


def test_env_log_level_is_uppercased(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HARVESTER_LOG_LEVEL", "debug")
    assert _load(tmp_path).logging.level == "DEBUG"


def test_env_log_level_is_validated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HARVESTER_LOG_LEVEL", "chatty")
    with pytest.raises(ConfigError, match="logging.level"):
        _load(tmp_path)


def test_env_var_absent_does_not_override(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "harvester.yaml", {"embedding": {"model": "cohere/embed-english-v3.0"}})
    assert _load(tmp_path).embedding.model == "cohere/embed-english-v3.0"


# ---------------------------------------------------------------------------
# ensure_global_config
# ---------------------------------------------------------------------------


def test_ensure_global_config_creates_file(tmp_path: Path) -> None:
    target = tmp_path / ".harvester" / "config.yaml"
    result = ensure_global_config(global_config_path=target)

    assert result == target
    parsed = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert parsed["embedding"]["model"] == "openai/text-embedding-3-small"
    # The file it writes must itself load cleanly as a global config.
    cfg = _load(tmp_path, target)
    assert cfg.crawl.user_agent == "Harvester-Bot/0.1"


def test_ensure_global_config_file_mode(tmp_path: Path) -> None:
    """ensure_global_config creates file with mode 0o600 (owner-only)."""
    target = tmp_path / ".harvester" / "config.yaml"
    ensure_global_config(global_config_path=target)

    assert stat.S_IMODE(target.stat().st_mode) == 0o600


def test_ensure_global_config_idempotent(tmp_path: Path) -> None:
    target = tmp_path / ".harvester" / "config.yaml"
    ensure_global_config(global_config_path=target)
    target.write_text("# custom\ncrawl:\n  max_pages: 7\n", encoding="utf-8")

    ensure_global_config(global_config_path=target)
    assert "max_pages: 7" in target.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# yaml.safe_load enforcement (regression guard)
# ---------------------------------------------------------------------------


def test_config_does_not_execute_yaml_load(tmp_path: Path) -> None:
    """A python object tag is rejected by safe_load rather than executed."""
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("!!python/object/apply:os.system ['echo pwned']\n", encoding="utf-8")

    with pytest.raises(yaml.YAMLError):
        _load(tmp_path, global_cfg)
