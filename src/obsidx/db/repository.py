"""Repository pattern for all obsidx database operations.

Single interface for: content blobs, documents, chunks, FTS5 search, note
metadata (tags, links) and index metadata. Vectors live in
``obsidx.db.vectors.VectorIndex``; model cache entries in
``obsidx.rag.cache.CacheStore``.

Methods never commit on their own. The connection runs in autocommit mode, so
a lone call is its own transaction; multi-step units of work (one document's
reindex) wrap their calls in ``transaction()``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager

from obsidx.db.models import Chunk, Content, Document, hash_bytes
from obsidx.errors import IndexCorrupt

logger = logging.getLogger(__name__)

_FTS_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
# Per-content note metadata, replaced together on reindex.
_NOTE_META_TABLES = ("tags", "links", "aliases")

_DOC_COLUMNS = "id, collection, path, content_hash, title, active, mtime, indexed_at"
_CHUNK_COLUMNS = (
    "id AS rowid, content_hash, seq, chunk_hash, start_offset, end_offset, tokens, text"
)
_JOINED_COLUMNS = """
    c.id AS rowid, c.content_hash, c.seq, c.chunk_hash, c.start_offset, c.end_offset,
    c.tokens, c.text,
    d.id AS doc_id, d.collection, d.path, d.title, d.active, d.mtime, d.indexed_at
"""


class Repository:
    """Data access layer for all obsidx database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see obsidx.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed calls as one atomic unit (joins an open transaction)."""
        if self._conn.in_transaction:
            yield
            return
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def put_content(self, raw: bytes) -> str:
        """Store *raw* under its content hash and return the hash.

        Identical bytes are stored once. A stored body that no longer matches
        its hash is rebuilt from *raw* and reported.
        """
        content_hash = hash_bytes(raw)
        row = self._conn.execute(
            "SELECT body FROM content WHERE hash = ?", (content_hash,)
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO content (hash, body, size) VALUES (?, ?, ?)",
                (content_hash, raw, len(raw)),
            )
        elif hash_bytes(bytes(row["body"])) != content_hash:
            logger.warning(
                "%s: rebuilt from source bytes",
                IndexCorrupt(content_hash, hash_bytes(bytes(row["body"]))),
            )
            self._conn.execute(
                "UPDATE content SET body = ?, size = ? WHERE hash = ?",
                (raw, len(raw), content_hash),
            )
        return content_hash

    def get_content(self, content_hash: str, verify: bool = True) -> Content | None:
        """Return the content blob for *content_hash*, or None if missing.

        Raises:
            IndexCorrupt: If *verify* and the stored body hashes differently.
        """
        row = self._conn.execute(
            "SELECT hash, body, size, created_at FROM content WHERE hash = ?",
            (content_hash,),
        ).fetchone()
        if row is None:
            return None
        body = bytes(row["body"])
        if verify:
            actual = hash_bytes(body)
            if actual != content_hash:
                raise IndexCorrupt(content_hash, actual)
        return Content(hash=row["hash"], body=body, size=row["size"], created_at=row["created_at"])

    def list_content_hashes(self) -> list[str]:
        return [r[0] for r in self._conn.execute("SELECT hash FROM content ORDER BY hash")]

    def count_content(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM content").fetchone()[0]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def upsert_document(
        self,
        collection: str,
        path: str,
        content_hash: str,
        mtime: float | None,
        title: str = "",
    ) -> Document:
        """Make *content_hash* the active content of (collection, path).

        A differing previous row is deactivated, not deleted, so its content
        stays retrievable as history. An unchanged hash only refreshes mtime
        and title. The content row must already exist.
        """
        with self.transaction():
            current = self.get_active_document(collection, path)
            if current is not None and current.content_hash == content_hash:
                self._conn.execute(
                    """
                    UPDATE documents SET mtime = ?, title = ?, indexed_at = datetime('now')
                    WHERE id = ?
                    """,
                    (mtime, title, current.id),
                )
            else:
                if current is not None:
                    self._conn.execute(
                        "UPDATE documents SET active = 0 WHERE id = ?", (current.id,)
                    )
                self._conn.execute(
                    """
                    INSERT INTO documents (collection, path, content_hash, title, active, mtime)
                    VALUES (?, ?, ?, ?, 1, ?)
                    """,
                    (collection, path, content_hash, title, mtime),
                )
            doc = self.get_active_document(collection, path)
        assert doc is not None
        return doc

    def get_active_document(self, collection: str, path: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents "
            "WHERE collection = ? AND path = ? AND active = 1",
            (collection, path),
        ).fetchone()
        return _row_to_document(row) if row else None

    def deactivate_document(self, collection: str, path: str) -> bool:
        """Deactivate the active row for (collection, path). Returns False if none."""
        cur = self._conn.execute(
            "UPDATE documents SET active = 0 WHERE collection = ? AND path = ? AND active = 1",
            (collection, path),
        )
        return cur.rowcount > 0

    def list_documents(self, collection: str | None = None) -> list[Document]:
        """Return active documents ordered by (collection, path)."""
        sql = f"SELECT {_DOC_COLUMNS} FROM documents WHERE active = 1"
        params: tuple = ()
        if collection is not None:
            sql += " AND collection = ?"
            params = (collection,)
        sql += " ORDER BY collection, path"
        return [_row_to_document(r) for r in self._conn.execute(sql, params).fetchall()]

    def document_history(self, collection: str, path: str) -> list[Document]:
        """Return every row ever stored for (collection, path), newest first."""
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE collection = ? AND path = ? "
            "ORDER BY id DESC",
            (collection, path),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def find_active_by_path(self, path: str) -> list[Document]:
        """Active documents whose path equals *path* in any collection."""
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE path = ? AND active = 1 "
            "ORDER BY collection",
            (path,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def find_active_by_hash_prefix(self, prefix: str) -> list[Document]:
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE content_hash LIKE ? AND active = 1 "
            "ORDER BY collection, path",
            (f"{prefix}%",),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def is_content_active(self, content_hash: str, exclude_doc_id: int | None = None) -> bool:
        """True if any active document (other than *exclude_doc_id*) uses *content_hash*."""
        row = self._conn.execute(
            "SELECT 1 FROM documents WHERE content_hash = ? AND active = 1 AND id IS NOT ? LIMIT 1",
            (content_hash, exclude_doc_id),
        ).fetchone()
        return row is not None

    def count_documents(self) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM documents WHERE active = 1"
        ).fetchone()[0]

    def collection_counts(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT collection, COUNT(*) AS n FROM documents WHERE active = 1 "
            "GROUP BY collection ORDER BY collection"
        ).fetchall()
        return {r["collection"]: r["n"] for r in rows}

    def last_indexed_at(self) -> str | None:
        return self._conn.execute(
            "SELECT MAX(indexed_at) FROM documents WHERE active = 1"
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunk(self, chunk: Chunk) -> int:
        """Insert chunk + sync FTS5 index. Returns the new rowid."""
        cur = self._conn.execute(
            """
            INSERT INTO chunks (content_hash, seq, chunk_hash, start_offset, end_offset, tokens, text)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.content_hash,
                chunk.seq,
                chunk.chunk_hash,
                chunk.start,
                chunk.end,
                chunk.tokens,
                chunk.text,
            ),
        )
        rowid = cur.lastrowid
        # Keep FTS5 in sync with explicit rowid mapping
        self._conn.execute(
            "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", (rowid, chunk.text)
        )
        chunk.rowid = rowid
        return rowid

    def move_chunk(self, rowid: int, chunk: Chunk) -> None:
        """Re-key an existing row to *chunk*'s (content_hash, seq), keeping its rowid."""
        self._conn.execute(
            """
            UPDATE chunks SET content_hash = ?, seq = ?, chunk_hash = ?, start_offset = ?,
                end_offset = ?, tokens = ?, text = ?
            WHERE id = ?
            """,
            (
                chunk.content_hash,
                chunk.seq,
                chunk.chunk_hash,
                chunk.start,
                chunk.end,
                chunk.tokens,
                chunk.text,
                rowid,
            ),
        )
        self._conn.execute("DELETE FROM chunks_fts WHERE rowid = ?", (rowid,))
        self._conn.execute(
            "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", (rowid, chunk.text)
        )
        chunk.rowid = rowid

    def delete_chunk(self, rowid: int) -> None:
        self._conn.execute("DELETE FROM chunks_fts WHERE rowid = ?", (rowid,))
        self._conn.execute("DELETE FROM chunks WHERE id = ?", (rowid,))

    def get_chunk_by_rowid(self, rowid: int) -> Chunk | None:
        """Return a chunk by its rowid, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id = ?", (rowid,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def list_chunks(self, content_hash: str) -> list[Chunk]:
        """Return the chunks of *content_hash* in sequence order."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE content_hash = ? ORDER BY seq",
            (content_hash,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self, content_hash: str | None = None) -> int:
        if content_hash is None:
            return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE content_hash = ?", (content_hash,)
        ).fetchone()[0]

    def count_active_chunks(self) -> int:
        return self._conn.execute(
            """
            SELECT COUNT(*) FROM chunks c
            WHERE EXISTS (
                SELECT 1 FROM documents d WHERE d.content_hash = c.content_hash AND d.active = 1
            )
            """
        ).fetchone()[0]

    def chunk_hash_referenced(self, chunk_hash: str) -> bool:
        return (
            self._conn.execute(
                "SELECT 1 FROM chunks WHERE chunk_hash = ? LIMIT 1", (chunk_hash,)
            ).fetchone()
            is not None
        )

    def delete_chunks_by_content(self, content_hash: str) -> int:
        """Delete chunks + FTS entries for a content hash (cascade not available on FTS)."""
        rowids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE content_hash = ?", (content_hash,)
            ).fetchall()
        ]
        if rowids:
            placeholders = ",".join("?" * len(rowids))
            self._conn.execute(
                f"DELETE FROM chunks_fts WHERE rowid IN ({placeholders})", rowids
            )
        self._conn.execute("DELETE FROM chunks WHERE content_hash = ?", (content_hash,))
        return len(rowids)

    def delete_all_chunks(self) -> None:
        self._conn.execute("DELETE FROM chunks_fts")
        self._conn.execute("DELETE FROM chunks")

    def unembedded_chunks(self, model: str) -> list[tuple[str, str, str]]:
        """Distinct active chunks lacking a vector for *model*: ``(chunk_hash, text, title)``."""
        rows = self._conn.execute(
            """
            SELECT c.chunk_hash, MIN(c.text) AS text, MIN(d.title) AS title
            FROM chunks c JOIN documents d ON d.content_hash = c.content_hash AND d.active = 1
            WHERE NOT EXISTS (
                SELECT 1 FROM embeddings e WHERE e.chunk_hash = c.chunk_hash AND e.model = ?
            )
            GROUP BY c.chunk_hash
            ORDER BY c.chunk_hash
            """,
            (model,),
        ).fetchall()
        return [(r["chunk_hash"], r["text"], r["title"]) for r in rows]

    # ------------------------------------------------------------------
    # Second-phase joins: candidate chunks -> active documents
    # ------------------------------------------------------------------

    def resolve_chunk_rows(
        self, rowids: Sequence[int], collections: Sequence[str] | None = None
    ) -> list[tuple[Chunk, Document]]:
        """Join chunk rowids to their active documents, keeping input order.

        A rowid whose content is not active in any (selected) collection drops
        out; a rowid shared by several documents yields one pair per document.
        """
        if not rowids:
            return []
        placeholders = ",".join("?" * len(rowids))
        sql = (
            f"SELECT {_JOINED_COLUMNS} FROM chunks c "
            "JOIN documents d ON d.content_hash = c.content_hash AND d.active = 1 "
            f"WHERE c.id IN ({placeholders})"
        )
        params: list = list(rowids)
        sql, params = _with_collections(sql, params, collections)
        pairs = [_row_to_pair(r) for r in self._conn.execute(sql, params).fetchall()]
        order = {rowid: i for i, rowid in enumerate(rowids)}
        pairs.sort(key=lambda p: (order[p[0].rowid], p[1].collection, p[1].path))
        return pairs

    def resolve_chunk_hashes(
        self, chunk_hashes: Sequence[str], collections: Sequence[str] | None = None
    ) -> list[tuple[Chunk, Document]]:
        """Join vector-search chunk hashes to active chunk rows, keeping input order."""
        if not chunk_hashes:
            return []
        placeholders = ",".join("?" * len(chunk_hashes))
        sql = (
            f"SELECT {_JOINED_COLUMNS} FROM chunks c "
            "JOIN documents d ON d.content_hash = c.content_hash AND d.active = 1 "
            f"WHERE c.chunk_hash IN ({placeholders})"
        )
        params: list = list(chunk_hashes)
        sql, params = _with_collections(sql, params, collections)
        pairs = [_row_to_pair(r) for r in self._conn.execute(sql, params).fetchall()]
        order = {h: i for i, h in enumerate(chunk_hashes)}
        pairs.sort(
            key=lambda p: (order[p[0].chunk_hash], p[1].collection, p[1].path, p[0].seq)
        )
        return pairs

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def search_fts(self, query: str, limit: int = 10) -> list[tuple[Chunk, float]]:
        """BM25 full-text search. Returns (chunk, score) sorted best-first.

        bm25() returns negative values; lower (more negative) = better match.
        The raw score is returned so callers can derive signal strength.
        """
        fts_query = fts_match_expression(query)
        if not fts_query:
            return []
        fts_rows = self._conn.execute(
            "SELECT rowid, bm25(chunks_fts) AS score FROM chunks_fts "
            "WHERE chunks_fts MATCH ? ORDER BY score LIMIT ?",
            (fts_query, limit),
        ).fetchall()

        results: list[tuple[Chunk, float]] = []
        for fts_row in fts_rows:
            chunk = self.get_chunk_by_rowid(fts_row["rowid"])
            if chunk is not None:
                results.append((chunk, float(fts_row["score"])))
        return results

    # ------------------------------------------------------------------
    # Note metadata: tags, links, aliases
    # ------------------------------------------------------------------

    def replace_note_meta(
        self,
        content_hash: str,
        tags: Iterable[str],
        links: Iterable[str],
        aliases: Iterable[str] = (),
    ) -> None:
        for table in _NOTE_META_TABLES:
            self._conn.execute(f"DELETE FROM {table} WHERE content_hash = ?", (content_hash,))
        self._conn.executemany(
            "INSERT OR IGNORE INTO tags (content_hash, tag) VALUES (?, ?)",
            [(content_hash, t) for t in tags],
        )
        self._conn.executemany(
            "INSERT OR IGNORE INTO links (content_hash, target) VALUES (?, ?)",
            [(content_hash, t) for t in links],
        )
        self._conn.executemany(
            "INSERT OR IGNORE INTO aliases (content_hash, alias) VALUES (?, ?)",
            [(content_hash, a) for a in aliases],
        )

    def tags_for_content(self, content_hash: str) -> list[str]:
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT tag FROM tags WHERE content_hash = ? ORDER BY tag", (content_hash,)
            ).fetchall()
        ]

    def tag_counts(self) -> dict[str, int]:
        """Tag -> number of active documents carrying it, most used first."""
        rows = self._conn.execute(
            """
            SELECT t.tag, COUNT(DISTINCT d.id) AS n
            FROM tags t JOIN documents d ON d.content_hash = t.content_hash AND d.active = 1
            GROUP BY t.tag ORDER BY n DESC, t.tag
            """
        ).fetchall()
        return {r["tag"]: r["n"] for r in rows}

    def content_hashes_with_tags(self, tags: Sequence[str]) -> set[str]:
        """Content hashes carrying every tag in *tags*."""
        if not tags:
            return set()
        placeholders = ",".join("?" * len(tags))
        rows = self._conn.execute(
            f"""
            SELECT content_hash FROM tags WHERE tag IN ({placeholders})
            GROUP BY content_hash HAVING COUNT(DISTINCT tag) = ?
            """,
            [*tags, len(set(tags))],
        ).fetchall()
        return {r[0] for r in rows}

    def outgoing_links(self, content_hash: str) -> list[str]:
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT target FROM links WHERE content_hash = ? ORDER BY target",
                (content_hash,),
            ).fetchall()
        ]

    def active_aliases(self) -> dict[str, list[str]]:
        """Content hash -> frontmatter aliases, for content of active documents."""
        rows = self._conn.execute(
            """
            SELECT a.content_hash, a.alias FROM aliases a
            WHERE EXISTS (
                SELECT 1 FROM documents d WHERE d.content_hash = a.content_hash AND d.active = 1
            )
            ORDER BY a.content_hash, a.alias
            """
        ).fetchall()
        out: dict[str, list[str]] = {}
        for row in rows:
            out.setdefault(row["content_hash"], []).append(row["alias"])
        return out

    def backlinks(self, targets: Sequence[str]) -> list[Document]:
        """Active documents linking to any of *targets* (case-insensitive)."""
        if not targets:
            return []
        lowered = sorted({t.lower() for t in targets})
        placeholders = ",".join("?" * len(lowered))
        rows = self._conn.execute(
            f"""
            SELECT DISTINCT d.id, d.collection, d.path, d.content_hash, d.title, d.active,
                d.mtime, d.indexed_at
            FROM links l JOIN documents d ON d.content_hash = l.content_hash AND d.active = 1
            WHERE lower(l.target) IN ({placeholders})
            ORDER BY d.collection, d.path
            """,
            lowered,
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def prune_inactive_content(self) -> int:
        """Drop chunk rows and note metadata of content no active document uses.

        Content blobs and document history are kept. Returns chunk rows removed.
        """
        hashes = [
            r[0]
            for r in self._conn.execute(
                """
                SELECT DISTINCT c.content_hash FROM chunks c
                WHERE NOT EXISTS (
                    SELECT 1 FROM documents d WHERE d.content_hash = c.content_hash AND d.active = 1
                )
                """
            ).fetchall()
        ]
        removed = 0
        for content_hash in hashes:
            removed += self.delete_chunks_by_content(content_hash)
        for table in _NOTE_META_TABLES:
            self._conn.execute(
                f"""
                DELETE FROM {table} WHERE NOT EXISTS (
                    SELECT 1 FROM documents d
                    WHERE d.content_hash = {table}.content_hash AND d.active = 1
                )
                """
            )
        return removed

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM index_meta WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO index_meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )


def fts_match_expression(query: str) -> str:
    """Turn free text into an FTS5 MATCH expression of quoted OR-terms.

    FTS5 rejects punctuation and treats AND/OR/NOT/NEAR as operators, so every
    word is quoted. OR lets bm25 rank partial matches instead of requiring all
    terms.
    """
    terms: list[str] = []
    for token in _FTS_TOKEN_RE.findall(query.lower()):
        if token not in terms:
            terms.append(token)
    return " OR ".join(f'"{t}"' for t in terms)


def _with_collections(
    sql: str, params: list, collections: Sequence[str] | None
) -> tuple[str, list]:
    if collections:
        placeholders = ",".join("?" * len(collections))
        sql += f" AND d.collection IN ({placeholders})"
        params = [*params, *collections]
    return sql, params


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        collection=row["collection"],
        path=row["path"],
        content_hash=row["content_hash"],
        title=row["title"],
        active=bool(row["active"]),
        mtime=row["mtime"],
        indexed_at=row["indexed_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        rowid=row["rowid"],
        content_hash=row["content_hash"],
        seq=row["seq"],
        chunk_hash=row["chunk_hash"],
        start=row["start_offset"],
        end=row["end_offset"],
        tokens=row["tokens"],
        text=row["text"],
    )


def _row_to_pair(row: sqlite3.Row) -> tuple[Chunk, Document]:
    doc = Document(
        id=row["doc_id"],
        collection=row["collection"],
        path=row["path"],
        content_hash=row["content_hash"],
        title=row["title"],
        active=bool(row["active"]),
        mtime=row["mtime"],
        indexed_at=row["indexed_at"],
    )
    return _row_to_chunk(row), doc
