"""Per-model sqlite-vec tables and the distance-only vector index.

Each embedding model gets its own ``vec_chunks_{slug}`` vec0 table (cosine
distance). The ``embeddings`` table maps ``(chunk_hash, model)`` to the vec
rowid, so one vector is stored per distinct chunk text, shared by every chunk
row and document carrying that hash.

The index deliberately offers no filtering: ``search()`` answers purely in
vector space and may return hashes whose documents are inactive. Callers join
the results against document metadata in a second phase
(``Repository.resolve_chunk_hashes``) and must tolerate fewer than *k* hits.
"""

from __future__ import annotations

import json
import re
import sqlite3


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
        "ollama/nomic-embed-text" -> "ollama_nomic_embed_text"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_name(model_slug: str) -> str:
    """Return the full vec table name for a model slug."""
    return f"vec_chunks_{model_slug}"


def ensure_vec_table(conn: sqlite3.Connection, model_slug: str, dimensions: int) -> str:
    """Create vec_chunks_{model_slug} virtual table if it doesn't already exist.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        model_slug: Sanitized model identifier (use model_to_slug() to generate).
        dimensions: Embedding vector dimensions.

    Returns:
        The table name (vec_chunks_{model_slug}).
    """
    if not re.fullmatch(r"[a-z0-9_]+", model_slug):
        raise ValueError(
            f"Invalid model_slug '{model_slug}': use model_to_slug() to sanitize."
        )
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    table = vec_table_name(model_slug)
    if not _table_exists(conn, table):
        conn.execute(
            f"CREATE VIRTUAL TABLE {table} USING vec0("
            f"embedding float[{dimensions}] distance_metric=cosine)"
        )
    return table


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    return (
        conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        is not None
    )


class VectorIndex:
    """Nearest-neighbour lookup over chunk embeddings, keyed by chunk_hash.

    The connection is owned by the caller. Writes do not commit on their own;
    run them inside ``Repository.transaction()`` when they belong to a larger
    unit of work.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def add(self, chunk_hash: str, model: str, vector: list[float]) -> bool:
        """Store *vector* for (chunk_hash, model). Returns False if already present.

        Raises:
            ValueError: If the vector is empty or its dimensions differ from
                vectors already stored for *model*.
        """
        if not vector:
            raise ValueError("Cannot index an empty vector")
        dims = self.dimensions(model)
        if dims is not None and dims != len(vector):
            raise ValueError(
                f"Vector for model '{model}' has {len(vector)} dimensions, "
                f"index expects {dims}"
            )
        cur = self._conn.execute(
            "INSERT OR IGNORE INTO embeddings (chunk_hash, model, dims) VALUES (?, ?, ?)",
            (chunk_hash, model, len(vector)),
        )
        if cur.rowcount == 0:
            return False
        table = ensure_vec_table(self._conn, model_to_slug(model), len(vector))
        self._conn.execute(
            f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
            (cur.lastrowid, json.dumps(vector)),
        )
        return True

    def has(self, chunk_hash: str, model: str) -> bool:
        return (
            self._conn.execute(
                "SELECT 1 FROM embeddings WHERE chunk_hash = ? AND model = ?",
                (chunk_hash, model),
            ).fetchone()
            is not None
        )

    def remove(self, chunk_hash: str, model: str | None = None) -> int:
        """Delete the vector(s) for *chunk_hash* (every model when *model* is None)."""
        sql = "SELECT id, model FROM embeddings WHERE chunk_hash = ?"
        params: tuple = (chunk_hash,)
        if model is not None:
            sql += " AND model = ?"
            params = (chunk_hash, model)
        rows = self._conn.execute(sql, params).fetchall()
        for row in rows:
            table = vec_table_name(model_to_slug(row["model"]))
            if _table_exists(self._conn, table):
                self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (row["id"],))
            self._conn.execute("DELETE FROM embeddings WHERE id = ?", (row["id"],))
        return len(rows)

    def search(
        self, query_vector: list[float], k: int, model: str
    ) -> list[tuple[str, float]]:
        """Return up to *k* ``(chunk_hash, distance)`` pairs, ascending distance.

        Cosine distance: similarity = 1 - distance. Returns [] when nothing has
        been embedded with *model* yet.
        """
        table = vec_table_name(model_to_slug(model))
        if k < 1 or not _table_exists(self._conn, table):
            return []
        vec_rows = self._conn.execute(
            f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? AND k = ? "
            "ORDER BY distance",
            (json.dumps(query_vector), k),
        ).fetchall()
        if not vec_rows:
            return []

        ids = [r["rowid"] for r in vec_rows]
        placeholders = ",".join("?" * len(ids))
        hashes = {
            r["id"]: r["chunk_hash"]
            for r in self._conn.execute(
                f"SELECT id, chunk_hash FROM embeddings WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        }
        return [
            (hashes[r["rowid"]], float(r["distance"]))
            for r in vec_rows
            if r["rowid"] in hashes
        ]

    def dimensions(self, model: str) -> int | None:
        row = self._conn.execute(
            "SELECT dims FROM embeddings WHERE model = ? LIMIT 1", (model,)
        ).fetchone()
        return row["dims"] if row else None

    def count(self, model: str | None = None) -> int:
        if model is None:
            return self._conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM embeddings WHERE model = ?", (model,)
        ).fetchone()[0]

    def models(self) -> list[str]:
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT DISTINCT model FROM embeddings ORDER BY model"
            ).fetchall()
        ]

    def remove_unreferenced(self) -> int:
        """Delete vectors whose chunk_hash no longer has any chunk row."""
        orphans = [
            r[0]
            for r in self._conn.execute(
                """
                SELECT DISTINCT e.chunk_hash FROM embeddings e
                WHERE NOT EXISTS (SELECT 1 FROM chunks c WHERE c.chunk_hash = e.chunk_hash)
                """
            ).fetchall()
        ]
        return sum(self.remove(h) for h in orphans)
