"""Schema version and initialization entry point."""

from __future__ import annotations

import sqlite3

CURRENT_VERSION = 1

# Regular tables created by the migrations (virtual and vec tables excluded).
TABLES: tuple[str, ...] = (
    "content",
    "documents",
    "chunks",
    "embeddings",
    "llm_cache",
    "tags",
    "links",
    "aliases",
    "index_meta",
)


def initialize(conn: sqlite3.Connection) -> None:
    """Initialize the database schema via the migration runner (idempotent)."""
    from obsidx.db.migrations import run_migrations

    run_migrations(conn)
