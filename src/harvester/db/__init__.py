"""Harvester storage: SQLite connection, schema migrations, repository and vec tables."""

from harvester.db.connection import Database
from harvester.db.migrations import MIGRATIONS, run_migrations
from harvester.db.repository import Repository
from harvester.db.schema import CURRENT_VERSION, initialize
from harvester.db.vectors import ensure_vec_table, model_to_slug

__all__ = [
    "CURRENT_VERSION",
    "Database",
    "MIGRATIONS",
    "Repository",
    "ensure_vec_table",
    "initialize",
    "model_to_slug",
    "run_migrations",
]
