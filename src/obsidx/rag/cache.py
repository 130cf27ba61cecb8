"""Persistent model-output cache (embeddings, expansions, rerank scores).

Entries are keyed by ``(key_hash, model, kind)`` and stored as JSON in the
``llm_cache`` table. There is no eviction: a key is a content hash of the
model input, so a stored entry is always valid for that input and model.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
from typing import Any

# Cache kinds
EMBEDDING = "embedding"
QUERY = "query"
EXPANSION = "expansion"
RERANK = "rerank"


def cache_key(*parts: str) -> str:
    """Stable sha256 over *parts* (separator-safe)."""
    digest = hashlib.sha256()
    for part in parts:
        encoded = part.encode("utf-8")
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return digest.hexdigest()


class CacheStore:
    """Read/write access to ``llm_cache`` on one connection.

    Writes use ``INSERT OR IGNORE`` so concurrent identical results are
    idempotent: the first stored payload wins.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get(self, key_hash: str, model: str, kind: str) -> Any | None:
        row = self._conn.execute(
            "SELECT payload FROM llm_cache WHERE key_hash = ? AND model = ? AND kind = ?",
            (key_hash, model, kind),
        ).fetchone()
        return json.loads(row[0]) if row else None

    def get_many(self, key_hashes: list[str], model: str, kind: str) -> dict[str, Any]:
        """Return ``{key_hash: payload}`` for the keys present in the cache."""
        found: dict[str, Any] = {}
        # Stay under SQLite's host-parameter limit
        for i in range(0, len(key_hashes), 500):
            batch = key_hashes[i : i + 500]
            placeholders = ",".join("?" * len(batch))
            rows = self._conn.execute(
                f"SELECT key_hash, payload FROM llm_cache "
                f"WHERE model = ? AND kind = ? AND key_hash IN ({placeholders})",
                [model, kind, *batch],
            ).fetchall()
            for row in rows:
                found[row[0]] = json.loads(row[1])
        return found

    def put(self, key_hash: str, model: str, kind: str, payload: Any) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO llm_cache (key_hash, model, kind, payload) VALUES (?, ?, ?, ?)",
            (key_hash, model, kind, json.dumps(payload)),
        )

    def count(self, kind: str | None = None) -> int:
        if kind is None:
            return self._conn.execute("SELECT COUNT(*) FROM llm_cache").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM llm_cache WHERE kind = ?", (kind,)
        ).fetchone()[0]
