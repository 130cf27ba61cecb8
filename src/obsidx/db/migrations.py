"""Forward-only migration runner for the obsidx index schema.

Vec tables (vec_chunks_*) are NOT migration-managed: use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS content (
    hash        TEXT PRIMARY KEY,
    body        BLOB NOT NULL,
    size        INTEGER NOT NULL,
    created_at  DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS documents (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    collection      TEXT NOT NULL,
    path            TEXT NOT NULL,
    content_hash    TEXT NOT NULL REFERENCES content(hash),
    title           TEXT NOT NULL DEFAULT '',
    active          INTEGER NOT NULL DEFAULT 1,
    mtime           REAL,
    indexed_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

-- At most one active row per (collection, path); inactive rows are history.
CREATE UNIQUE INDEX IF NOT EXISTS idx_documents_active_path
    ON documents(collection, path) WHERE active = 1;
CREATE INDEX IF NOT EXISTS idx_documents_hash ON documents(content_hash, active);

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY,
    content_hash    TEXT NOT NULL REFERENCES content(hash),
    seq             INTEGER NOT NULL,
    chunk_hash      TEXT NOT NULL,
    start_offset    INTEGER NOT NULL,
    end_offset      INTEGER NOT NULL,
    tokens          INTEGER NOT NULL,
    text            TEXT NOT NULL,
    UNIQUE (content_hash, seq)
);
CREATE INDEX IF NOT EXISTS idx_chunks_chunk_hash ON chunks(chunk_hash);

CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(text, tokenize='porter unicode61');

CREATE TABLE IF NOT EXISTS embeddings (
    id              INTEGER PRIMARY KEY,
    chunk_hash      TEXT NOT NULL,
    model           TEXT NOT NULL,
    dims            INTEGER NOT NULL,
    embedded_at     DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (chunk_hash, model)
);

CREATE TABLE IF NOT EXISTS llm_cache (
    key_hash    TEXT NOT NULL,
    model       TEXT NOT NULL,
    kind        TEXT NOT NULL,
    payload     TEXT NOT NULL,
    created_at  DATETIME NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (key_hash, model, kind)
);

CREATE TABLE IF NOT EXISTS tags (
    content_hash    TEXT NOT NULL,
    tag             TEXT NOT NULL,
    PRIMARY KEY (content_hash, tag)
);

CREATE TABLE IF NOT EXISTS links (
    content_hash    TEXT NOT NULL,
    target          TEXT NOT NULL,
    PRIMARY KEY (content_hash, target)
);

CREATE TABLE IF NOT EXISTS aliases (
    content_hash    TEXT NOT NULL,
    alias           TEXT NOT NULL,
    PRIMARY KEY (content_hash, alias)
);

CREATE TABLE IF NOT EXISTS index_meta (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here: use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
