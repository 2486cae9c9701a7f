"""Helpers shared by the harvester commands: config, logging and DB access."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from harvester.cli.errors import err_config, err_no_db
from harvester.config import ConfigError, HarvesterConfig, load_config
from harvester.db.connection import Database
from harvester.db.schema import initialize

console = Console()

_LOGGER_NAME = "Harvester"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_level_override: str | None = None


def configure_logging(level: str = "INFO") -> None:
    """Route ``Harvester.*`` loggers to a RichHandler on stderr.

    Safe to call repeatedly: the handler is installed once and later calls
    only change the level.
    """
    root = logging.getLogger(_LOGGER_NAME)
    root.setLevel(level.upper())
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)


def set_log_level_override(level: str | None) -> None:
    """Record the ``--log-level`` flag; it wins over every config layer."""
    global _level_override
    if level and level.upper() not in _LEVELS:
        raise typer.BadParameter(f"expected one of {', '.join(_LEVELS)}", param_hint="--log-level")
    _level_override = level.upper() if level else None
    if _level_override:
        configure_logging(_level_override)


def load_settings() -> HarvesterConfig:
    """Load config and configure logging, or exit with an actionable error."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    configure_logging(_level_override or cfg.logging.level)
    return cfg


def resolve_db(db: Path | None, cfg: HarvesterConfig) -> Path:
    return db if db is not None else Path(cfg.database.path)


def open_db(db_path: Path, *, must_exist: bool = True) -> sqlite3.Connection:
    """Connect to *db_path* and apply migrations.

    Exits with code 1 when *must_exist* is set and there is no database yet.
    """
    if must_exist and not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    conn = Database(db_path).connect()
    initialize(conn)
    return conn
