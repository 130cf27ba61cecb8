"""obsidx database layer."""

from obsidx.db.connection import Database
from obsidx.db.migrations import MIGRATIONS, run_migrations
from obsidx.db.repository import Repository
from obsidx.db.schema import initialize
from obsidx.db.vectors import VectorIndex, ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "VectorIndex",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
