"""Harvester configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (HARVESTER_EMBEDDING_MODEL, HARVESTER_LOG_LEVEL,
                             HARVESTER_USER_AGENT, HARVESTER_DB)
  3. Per-project harvester.yaml  (current directory)
  4. Global ~/.harvester/config.yaml  (defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".harvester"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "harvester.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or overlap_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token, auth_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # my_secret, client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "crawl", "queue", "health", "chunking", "embedding", "logging"]
)

_LOG_LEVELS: frozenset[str] = frozenset(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseCfg:
    """SQLite location (harvester.yaml: database:)."""

    path: str = ".harvester.db"


@dataclass
class CrawlCfg:
    """Discovery and fetching (harvester.yaml: crawl:).

    Attributes:
        user_agent: Sent with every request and matched against robots.txt.
        max_pages: Upper bound on pages discovered per crawl.
        respect_robots: Skip URLs disallowed by robots.txt.
        robots_cache_ttl: Seconds a parsed robots.txt stays cached.
        default_crawl_delay: Seconds between requests to one origin when
            robots.txt does not set Crawl-delay.
        request_timeout: Connect + read timeout in seconds.
        use_sitemap: Try sitemap.xml before falling back to link extraction.
    """

    user_agent: str = "Harvester-Bot/0.1"
    max_pages: int = 100
    respect_robots: bool = True
    robots_cache_ttl: int = 24 * 60 * 60
    default_crawl_delay: float = 1.0
    request_timeout: int = 30
    use_sitemap: bool = True


@dataclass
class QueueCfg:
    """Job queue behaviour (harvester.yaml: queue:)."""

    batch_size: int = 10
    max_attempts: int = 3
    claim_retries: int = 3
    retry_base_seconds: float = 30.0
    poll_interval: float = 2.0


@dataclass
class HealthCfg:
    """Health monitor, recovery and orchestrator timers (harvester.yaml: health:)."""

    job_timeout: int = 5 * 60
    orphan_grace: int = 2 * 60
    stale_pending: int = 30 * 60
    backlog_busy: int = 100
    backlog_overloaded: int = 500
    health_interval: float = 30.0
    queue_interval: float = 5.0
    recovery_interval: float = 60.0
    scale_out_workers: int = 3


@dataclass
class ChunkingCfg:
    """Semantic chunker defaults (harvester.yaml: chunking:)."""

    max_tokens: int = 500
    overlap_tokens: int = 50
    preserve_paragraphs: bool = True
    min_chunk_size: int = 0


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (harvester.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    min_content_length: int = 10
    request_delay: float = 0.1
    num_retries: int = 3


@dataclass
class LoggingCfg:
    """Log output (harvester.yaml: logging:)."""

    level: str = "INFO"


@dataclass
class HarvesterConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    crawl: CrawlCfg = field(default_factory=CrawlCfg)
    queue: QueueCfg = field(default_factory=QueueCfg)
    health: HealthCfg = field(default_factory=HealthCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: HarvesterConfig) -> None:
    """Reject values the pipeline cannot run with."""
    positive = {
        "crawl.max_pages": cfg.crawl.max_pages,
        "crawl.request_timeout": cfg.crawl.request_timeout,
        "queue.batch_size": cfg.queue.batch_size,
        "queue.max_attempts": cfg.queue.max_attempts,
        "queue.claim_retries": cfg.queue.claim_retries,
        "health.job_timeout": cfg.health.job_timeout,
        "health.orphan_grace": cfg.health.orphan_grace,
        "health.health_interval": cfg.health.health_interval,
        "health.queue_interval": cfg.health.queue_interval,
        "health.recovery_interval": cfg.health.recovery_interval,
        "chunking.max_tokens": cfg.chunking.max_tokens,
        "embedding.dimensions": cfg.embedding.dimensions,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ConfigError(f"{name} must be > 0, got {value}")
    if cfg.chunking.overlap_tokens < 0:
        raise ConfigError(
            f"chunking.overlap_tokens must be >= 0, got {cfg.chunking.overlap_tokens}"
        )
    if cfg.logging.level.upper() not in _LOG_LEVELS:
        raise ConfigError(
            f"logging.level must be one of {', '.join(sorted(_LOG_LEVELS))}, got {cfg.logging.level!r}"
        )
    if cfg.health.backlog_busy > cfg.health.backlog_overloaded:
        raise ConfigError(
            "health.backlog_busy must not exceed health.backlog_overloaded "
            f"({cfg.health.backlog_busy} > {cfg.health.backlog_overloaded})"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _section(cls: type, raw: dict[str, Any] | None) -> Any:
    """Build dataclass *cls* from *raw*, coercing each known field to its default's type."""
    instance = cls()
    for name, value in (raw or {}).items():
        if not hasattr(instance, name):
            warnings.warn(
                f"Unknown key '{name}' in config section '{cls.__name__}'; ignored.",
                UserWarning,
                stacklevel=5,
            )
            continue
        default = getattr(instance, name)
        try:
            if isinstance(default, bool):
                coerced = value if isinstance(value, bool) else str(value).lower() in {"1", "true", "yes", "on"}
            else:
                coerced = type(default)(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for '{name}': {value!r} ({exc})") from exc
        setattr(instance, name, coerced)
    return instance


def _cfg_from_dict(data: dict[str, Any]) -> HarvesterConfig:
    """Build a *HarvesterConfig* from a merged raw YAML dict."""
    return HarvesterConfig(
        database=_section(DatabaseCfg, data.get("database")),
        crawl=_section(CrawlCfg, data.get("crawl")),
        queue=_section(QueueCfg, data.get("queue")),
        health=_section(HealthCfg, data.get("health")),
        chunking=_section(ChunkingCfg, data.get("chunking")),
        embedding=_section(EmbeddingCfg, data.get("embedding")),
        logging=_section(LoggingCfg, data.get("logging")),
    )


def _apply_env_overrides(cfg: HarvesterConfig) -> HarvesterConfig:
    """Apply HARVESTER_* environment variable overrides (layer 2)."""
    if model := os.environ.get("HARVESTER_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if level := os.environ.get("HARVESTER_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    if agent := os.environ.get("HARVESTER_USER_AGENT"):
        cfg.crawl.user_agent = agent
    if db_path := os.environ.get("HARVESTER_DB"):
        cfg.database.path = db_path
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> HarvesterConfig:
    """Load and return a merged *HarvesterConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *harvester.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *HarvesterConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or if a
            value is malformed or out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.harvester/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# Harvester global configuration: defaults only.\n"
            "# NEVER store API keys here; use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "crawl:\n"
            "  user_agent: Harvester-Bot/0.1\n"
            "  max_pages: 100\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
