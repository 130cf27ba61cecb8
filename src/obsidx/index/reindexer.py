"""Incremental reindexer: chunk-diff updates of one document at a time.

For a changed document only chunks whose text changed are embedded; chunk
rows whose text survived keep their rowid and their vector. Embedding happens
before the write transaction so a slow or failing model never holds the
database lock, and an unavailable model defers embedding instead of failing
the reindex (see ``embed_pending``).

Thread model: one ``Reindexer`` is shared by the index workers. Each thread
works on its own connection (``Database.local()``); a per-(collection, path)
lock serializes reindexing of the same path.
"""

from __future__ import annotations

import logging
import threading
import warnings
from dataclasses import dataclass, field

from obsidx.config import EmbeddingCfg
from obsidx.db.connection import Database
from obsidx.db.models import Chunk, hash_bytes
from obsidx.db.repository import Repository
from obsidx.db.vectors import VectorIndex
from obsidx.errors import ConfigMismatchWarning, IndexCorrupt, ModelUnavailable
from obsidx.index.diff import ChunkDiff, diff_chunks, pair_occurrences
from obsidx.ingest.base import BaseChunker
from obsidx.ingest.notes import parse_note
from obsidx.rag.cache import CacheStore
from obsidx.rag.embedder import Embedder
from obsidx.rag.llm_client import ModelProvider

logger = logging.getLogger(__name__)

FINGERPRINT_KEY = "chunker_fingerprint"

# ReindexResult.status values
ADDED = "added"
UPDATED = "updated"
UNCHANGED = "unchanged"
RECOVERED = "recovered"


@dataclass
class ReindexResult:
    """Outcome of one ``reindex`` call.

    Attributes:
        status: added | updated | unchanged | recovered (same content, chunk
            rows were missing and have been rebuilt).
        diff: Chunk-hash diff against the previous version.
        embedded: Vectors written by this call.
        deferred: True when the embedding model was unavailable; the chunks are
            searchable lexically and wait for ``embed_pending``.
    """

    collection: str
    path: str
    status: str
    content_hash: str
    diff: ChunkDiff = field(default_factory=ChunkDiff)
    chunks: int = 0
    embedded: int = 0
    deferred: bool = False


class Reindexer:
    """Keeps chunks, vectors and note metadata in step with document content."""

    def __init__(
        self,
        db: Database,
        chunker: BaseChunker,
        provider: ModelProvider,
        embedding: EmbeddingCfg | None = None,
    ) -> None:
        self.db = db
        self.chunker = chunker
        self.provider = provider
        self.embedding = embedding or EmbeddingCfg()
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def model(self) -> str:
        return self.embedding.model

    # ------------------------------------------------------------------
    # Per-thread handles
    # ------------------------------------------------------------------

    def repository(self) -> Repository:
        return Repository(self.db.local())

    def embedder(self) -> Embedder:
        return Embedder(
            self.provider,
            CacheStore(self.db.local()),
            self.embedding.model,
            query_template=self.embedding.query_template,
            document_template=self.embedding.document_template,
            workers=self.embedding.workers,
        )

    def _path_lock(self, collection: str, path: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((collection, path), threading.Lock())

    # ------------------------------------------------------------------
    # Single document
    # ------------------------------------------------------------------

    def reindex(
        self, collection: str, path: str, raw: bytes, mtime: float | None = None
    ) -> ReindexResult:
        """Bring (collection, path) up to date with *raw*."""
        with self._path_lock(collection, path):
            return self._reindex(collection, path, raw, mtime)

    def _reindex(
        self, collection: str, path: str, raw: bytes, mtime: float | None
    ) -> ReindexResult:
        repo = self.repository()
        vectors = VectorIndex(repo.conn)
        new_hash = hash_bytes(raw)
        text = raw.decode("utf-8", errors="replace")
        note = parse_note(text, path)

        current = repo.get_active_document(collection, path)
        same_content = current is not None and current.content_hash == new_hash
        if same_content and repo.count_chunks(new_hash) > 0:
            repo.upsert_document(collection, path, new_hash, mtime, note.title)
            return ReindexResult(collection, path, UNCHANGED, new_hash, chunks=repo.count_chunks(new_hash))

        # Content already chunked for another path (or kept from history) is reused.
        new_chunks = repo.list_chunks(new_hash) or self.chunker.chunk(new_hash, text)
        old_chunks = [] if current is None or same_content else repo.list_chunks(current.content_hash)
        diff = diff_chunks(old_chunks, new_chunks)

        pending = [
            (c.chunk_hash, c.text, note.title)
            for c in new_chunks
            if not vectors.has(c.chunk_hash, self.model)
        ]
        fresh: dict[str, list[float]] = {}
        deferred = False
        try:
            fresh = self.embedder().embed_chunks(pending)
        except ModelUnavailable as exc:
            deferred = True
            logger.warning("Embedding deferred for %s/%s: %s", collection, path, exc)

        with repo.transaction():
            repo.put_content(raw)
            old_orphaned = (
                current is not None
                and not same_content
                and not repo.is_content_active(current.content_hash, exclude_doc_id=current.id)
            )
            if repo.count_chunks(new_hash) > 0:
                if old_orphaned:
                    repo.delete_chunks_by_content(current.content_hash)
            elif old_orphaned:
                self._move_rows(repo, old_chunks, new_chunks)
            else:
                for chunk in new_chunks:
                    repo.add_chunk(chunk)

            for chunk_hash, vector in fresh.items():
                vectors.add(chunk_hash, self.model, vector)
            for chunk_hash in diff.to_remove:
                if not repo.chunk_hash_referenced(chunk_hash):
                    vectors.remove(chunk_hash)

            repo.upsert_document(collection, path, new_hash, mtime, note.title)
            if old_orphaned:
                repo.replace_note_meta(current.content_hash, [], [])
            repo.replace_note_meta(new_hash, note.tags, note.links, note.aliases)

        if current is None:
            status = ADDED
        elif same_content:
            status = RECOVERED if new_chunks else UNCHANGED
        else:
            status = UPDATED
        logger.debug("%s %s/%s (+%d -%d)", status, collection, path, len(diff.to_add), len(diff.to_remove))
        return ReindexResult(
            collection,
            path,
            status,
            new_hash,
            diff=diff,
            chunks=len(new_chunks),
            embedded=len(fresh),
            deferred=deferred,
        )

    @staticmethod
    def _move_rows(repo: Repository, old_chunks: list[Chunk], new_chunks: list[Chunk]) -> None:
        """Re-key surviving rows onto the new content; add and drop the rest."""
        plan = pair_occurrences(old_chunks, new_chunks)
        for old, new in plan.pairs:
            repo.move_chunk(old.rowid, new)
        for old in plan.surplus_old:
            repo.delete_chunk(old.rowid)
        for new in plan.surplus_new:
            repo.add_chunk(new)

    def remove(self, collection: str, path: str) -> bool:
        """Deactivate (collection, path); its rows go on the next ``prune``."""
        with self._path_lock(collection, path):
            return self.repository().deactivate_document(collection, path)

    # ------------------------------------------------------------------
    # Whole index
    # ------------------------------------------------------------------

    def embed_pending(self) -> int:
        """Embed active chunks that have no vector for the current model.

        Raises:
            ModelUnavailable: If the embedding model is still unreachable.
        """
        repo = self.repository()
        items = repo.unembedded_chunks(self.model)
        if not items:
            return 0
        fresh = self.embedder().embed_chunks(items)
        vectors = VectorIndex(repo.conn)
        added = 0
        with repo.transaction():
            for chunk_hash, vector in fresh.items():
                added += vectors.add(chunk_hash, self.model, vector)
        logger.info("Embedded %d pending chunks", added)
        return added

    def check_fingerprint(self) -> bool:
        """True when stored chunks were produced by the current chunker settings.

        A fresh index adopts the current fingerprint. A mismatch emits
        ``ConfigMismatchWarning``; the caller should run ``rebuild_all()``.
        """
        repo = self.repository()
        current = self.chunker.fingerprint()
        stored = repo.get_meta(FINGERPRINT_KEY)
        if stored is None:
            repo.set_meta(FINGERPRINT_KEY, current)
            return True
        if stored == current:
            return True
        warnings.warn(
            f"Chunking settings changed (index {stored}, config {current}); "
            "rechunking and re-embedding every document.",
            ConfigMismatchWarning,
            stacklevel=2,
        )
        return False

    def rebuild_all(self) -> int:
        """Rechunk every active document's content; returns the number of contents rebuilt.

        Embeddings are re-requested through the cache, so chunk texts seen
        before cost no model call. An unavailable model leaves the new chunks
        pending.
        """
        repo = self.repository()
        vectors = VectorIndex(repo.conn)
        titles: dict[str, str] = {}
        for doc in repo.list_documents():
            titles.setdefault(doc.content_hash, doc.title)

        rebuilt: list[Chunk] = []
        bodies: dict[str, str] = {}
        for content_hash in titles:
            try:
                content = repo.get_content(content_hash)
            except IndexCorrupt as exc:
                logger.warning("%s: skipped; run 'obsidx verify'", exc)
                continue
            if content is None:
                continue
            bodies[content_hash] = content.text
            rebuilt.extend(self.chunker.chunk(content_hash, content.text))

        fresh: dict[str, list[float]] = {}
        try:
            fresh = self.embedder().embed_chunks(
                [(c.chunk_hash, c.text, titles[c.content_hash]) for c in rebuilt]
            )
        except ModelUnavailable as exc:
            logger.warning("Embedding deferred during rebuild: %s", exc)

        with repo.transaction():
            repo.delete_all_chunks()
            for chunk in rebuilt:
                repo.add_chunk(chunk)
            vectors.remove_unreferenced()
            for chunk_hash, vector in fresh.items():
                vectors.add(chunk_hash, self.model, vector)
            repo.set_meta(FINGERPRINT_KEY, self.chunker.fingerprint())
        logger.info("Rebuilt %d documents into %d chunks", len(bodies), len(rebuilt))
        return len(bodies)

    def prune(self) -> tuple[int, int]:
        """Drop rows of content no active document uses. Returns (chunks, vectors) removed."""
        repo = self.repository()
        with repo.transaction():
            chunks = repo.prune_inactive_content()
            vecs = VectorIndex(repo.conn).remove_unreferenced()
        return chunks, vecs
