"""Vault: the service facade behind the CLI.

Owns one index directory (``index.db`` + ``obsidx.yaml``) and wires the
storage, chunking, model and query layers together according to an
``ObsidxConfig``.
"""

from __future__ import annotations

import fnmatch
import functools
import logging
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from obsidx.config import DB_NAME, DEFAULT_INDEX_DIR, ObsidxConfig, load_config
from obsidx.db.connection import Database
from obsidx.db.models import Document
from obsidx.db.repository import Repository
from obsidx.db.schema import initialize
from obsidx.db.vectors import VectorIndex
from obsidx.errors import IndexCorrupt, ModelUnavailable, NotFound
from obsidx.index.reindexer import FINGERPRINT_KEY, Reindexer, ReindexResult
from obsidx.ingest.base import BaseChunker
from obsidx.ingest.notes import note_names
from obsidx.ingest.scanner import ScannedFile, scan_vault
from obsidx.ingest.structural import StructuralChunker
from obsidx.rag.cache import CacheStore
from obsidx.rag.llm_client import LiteLLMProvider, ModelProvider, count_tokens
from obsidx.rag.retriever import CancelToken, HybridQueryEngine, SearchResponse

logger = logging.getLogger(__name__)

_GLOB_CHARS = set("*?[")


@dataclass
class IndexReport:
    scanned: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    recovered: int = 0
    removed: int = 0
    deferred: int = 0
    embedded: int = 0
    pending: int = 0
    pruned_chunks: int = 0
    pruned_vectors: int = 0
    rebuilt: bool = False

    def record(self, result: ReindexResult) -> None:
        setattr(self, result.status, getattr(self, result.status) + 1)
        self.embedded += result.embedded
        self.deferred += int(result.deferred)


@dataclass
class IndexStatus:
    index_path: Path
    documents: int
    chunks: int
    contents: int
    embedded: int
    pending: int
    cached: int
    collections: dict[str, int]
    last_indexed: str | None
    fingerprint: str
    stored_fingerprint: str | None
    embedding_model: str
    models: list[str]


@dataclass
class LinkReport:
    document: Document
    outgoing: list[tuple[str, Document | None]] = field(default_factory=list)
    backlinks: list[Document] = field(default_factory=list)


@dataclass
class VerifyReport:
    checked: int = 0
    corrupt: list[IndexCorrupt] = field(default_factory=list)
    stale: list[Document] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.corrupt


def build_chunker(config: ObsidxConfig) -> BaseChunker:
    """Structural chunker for *config* (approximate or model tokenizer)."""
    cfg = config.chunking
    if cfg.tokenizer == "model":
        return StructuralChunker(
            target_tokens=cfg.target_tokens,
            overlap=cfg.overlap,
            tolerance=cfg.tolerance,
            tokenizer=functools.partial(count_tokens, config.embedding.model),
            tokenizer_id=config.embedding.model,
        )
    return StructuralChunker(
        target_tokens=cfg.target_tokens, overlap=cfg.overlap, tolerance=cfg.tolerance
    )


class Vault:
    """Index, search and inspect one obsidx index.

    Args:
        index_dir: Directory holding ``index.db`` (created if missing).
        config: Loaded configuration; defaults to ``load_config(index_dir)``.
        provider: Model backend; defaults to ``LiteLLMProvider``.
        chunker: Override the configured chunker (tests).
    """

    def __init__(
        self,
        index_dir: Path,
        config: ObsidxConfig | None = None,
        provider: ModelProvider | None = None,
        chunker: BaseChunker | None = None,
    ) -> None:
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.config = config or load_config(self.index_dir)
        self.provider = provider or LiteLLMProvider(
            timeout=self.config.models.timeout, num_retries=self.config.models.num_retries
        )
        self.db = Database(self.index_dir / DB_NAME)
        initialize(self.db.local())
        self.reindexer = Reindexer(
            self.db, chunker or build_chunker(self.config), self.provider, self.config.embedding
        )
        self._pool: ThreadPoolExecutor | None = None

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown()
            self._pool = None
        self.db.close()

    def __enter__(self) -> Vault:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def repo(self) -> Repository:
        return Repository(self.db.local())

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index(
        self,
        collections: Sequence[str] | None = None,
        on_progress: Callable[[ReindexResult], None] | None = None,
    ) -> IndexReport:
        """Scan the configured collections and bring the index up to date.

        Paths no longer present in a scanned collection are deactivated.

        Raises:
            NotFound: If *collections* names a collection missing from config.
            FileNotFoundError: If a collection directory does not exist.
        """
        names = list(collections) if collections else list(self.config.collections)
        unknown = [n for n in names if n not in self.config.collections]
        if unknown:
            raise NotFound(unknown)

        report = IndexReport()
        report.rebuilt = self._check_fingerprint()
        for name in names:
            cfg = self.config.collections[name]
            files = list(scan_vault(Path(cfg.path).expanduser(), name, cfg.include, cfg.exclude))
            self._index_files(files, report, on_progress)
            seen = {f.path for f in files}
            for doc in self.repo.list_documents(name):
                if doc.path not in seen and self.reindexer.remove(name, doc.path):
                    report.removed += 1
        self._finish(report)
        return report

    def index_files(
        self,
        files: Iterable[ScannedFile],
        on_progress: Callable[[ReindexResult], None] | None = None,
    ) -> IndexReport:
        """Reindex exactly *files* (no scan, no deactivation of other paths)."""
        report = IndexReport()
        report.rebuilt = self._check_fingerprint()
        self._index_files(list(files), report, on_progress)
        self._finish(report)
        return report

    def _check_fingerprint(self) -> bool:
        if self.reindexer.check_fingerprint():
            return False
        self.reindexer.rebuild_all()
        return True

    def _index_files(
        self,
        files: list[ScannedFile],
        report: IndexReport,
        on_progress: Callable[[ReindexResult], None] | None,
    ) -> None:
        report.scanned += len(files)
        if not files:
            return
        pool = self._workers()
        futures = [
            pool.submit(self.reindexer.reindex, f.collection, f.path, f.raw, f.mtime)
            for f in files
        ]
        for future in as_completed(futures):
            result = future.result()
            report.record(result)
            if on_progress is not None:
                on_progress(result)

    def _workers(self) -> ThreadPoolExecutor:
        """Indexing pool, alive until close(); each worker keeps one connection."""
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=max(1, self.config.indexing.workers),
                thread_name_prefix="obsidx-index",
            )
        return self._pool

    def _finish(self, report: IndexReport) -> None:
        try:
            report.embedded += self.reindexer.embed_pending()
        except ModelUnavailable as exc:
            logger.warning("Embedding still unavailable: %s", exc)
        report.pruned_chunks, report.pruned_vectors = self.reindexer.prune()
        report.pending = len(self.repo.unembedded_chunks(self.config.embedding.model))

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def engine(self) -> HybridQueryEngine:
        repo = self.repo
        return HybridQueryEngine(
            repo,
            VectorIndex(repo.conn),
            self.reindexer.embedder(),
            retrieval=self.config.retrieval,
            expansion=self.config.expansion,
            rerank=self.config.rerank,
        )

    def search(
        self,
        query: str,
        k: int | None = None,
        collections: Sequence[str] | None = None,
        tags: Sequence[str] | None = None,
        cancel: CancelToken | None = None,
    ) -> SearchResponse:
        return self.engine().search(query, k=k, collections=collections, tags=tags, cancel=cancel)

    # ------------------------------------------------------------------
    # Retrieval by reference
    # ------------------------------------------------------------------

    def get(self, ref: str) -> Document:
        """Resolve ``collection/path``, a bare path, or ``#<hash-prefix>``.

        Raises:
            NotFound: If no active document matches.
        """
        repo = self.repo
        ref = ref.strip()
        if ref.startswith("#"):
            prefix = ref[1:].lower()
            matches = repo.find_active_by_hash_prefix(prefix) if prefix else []
            if matches:
                return matches[0]
            raise NotFound(ref)

        for candidate in _path_variants(ref):
            collection, _, path = candidate.partition("/")
            if path:
                doc = repo.get_active_document(collection, path)
                if doc is not None:
                    return doc
            matches = repo.find_active_by_path(candidate)
            if matches:
                return matches[0]
        raise NotFound(ref)

    def multi_get(self, refs: Sequence[str]) -> list[Document]:
        """Resolve several refs (fnmatch globs allowed) in order, without duplicates.

        Raises:
            NotFound: Listing every ref that matched nothing.
        """
        docs: list[Document] = []
        seen: set[int | None] = set()
        missing: list[str] = []
        active: list[Document] | None = None
        for ref in refs:
            if _GLOB_CHARS & set(ref):
                if active is None:
                    active = self.repo.list_documents()
                found = [
                    d for d in active if fnmatch.fnmatch(d.ref, ref) or fnmatch.fnmatch(d.path, ref)
                ]
            else:
                try:
                    found = [self.get(ref)]
                except NotFound:
                    found = []
            if not found:
                missing.append(ref)
            for doc in found:
                if doc.id not in seen:
                    seen.add(doc.id)
                    docs.append(doc)
        if missing:
            raise NotFound(missing)
        return docs

    def read(self, doc: Document) -> str:
        """Current text of *doc*.

        Raises:
            IndexCorrupt: If the stored body no longer matches its hash.
        """
        content = self.repo.get_content(doc.content_hash)
        if content is None:
            raise NotFound(doc.ref)
        return content.text

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def status(self) -> IndexStatus:
        repo = self.repo
        model = self.config.embedding.model
        vectors = VectorIndex(repo.conn)
        return IndexStatus(
            index_path=self.db.db_path,
            documents=repo.count_documents(),
            chunks=repo.count_active_chunks(),
            contents=repo.count_content(),
            embedded=vectors.count(model),
            pending=len(repo.unembedded_chunks(model)),
            cached=CacheStore(repo.conn).count(),
            collections=repo.collection_counts(),
            last_indexed=repo.last_indexed_at(),
            fingerprint=self.reindexer.chunker.fingerprint(),
            stored_fingerprint=repo.get_meta(FINGERPRINT_KEY),
            embedding_model=model,
            models=vectors.models(),
        )

    def tags(self) -> dict[str, int]:
        return self.repo.tag_counts()

    def links(self, ref: str) -> LinkReport:
        """Outgoing wiki-links of *ref* (resolved where a note matches) and its backlinks."""
        doc = self.get(ref)
        repo = self.repo
        aliases = repo.active_aliases()
        by_name: dict[str, Document] = {}
        for other in repo.list_documents():
            for name in note_names(other.path, other.title, aliases.get(other.content_hash)):
                by_name.setdefault(name.lower(), other)
        outgoing = [(t, by_name.get(t.lower())) for t in repo.outgoing_links(doc.content_hash)]
        names = note_names(doc.path, doc.title, aliases.get(doc.content_hash))
        backlinks = [d for d in repo.backlinks(names) if d.id != doc.id]
        return LinkReport(document=doc, outgoing=outgoing, backlinks=backlinks)

    def verify(self) -> VerifyReport:
        """Recompute every content hash; drop chunk rows of corrupt content.

        Documents pointing at corrupt content are reported as stale: their
        chunks are gone, and the next ``index`` run rebuilds both the body and
        the chunks from the source file.
        """
        repo = self.repo
        report = VerifyReport()
        for content_hash in repo.list_content_hashes():
            report.checked += 1
            try:
                repo.get_content(content_hash)
            except IndexCorrupt as exc:
                logger.error("%s", exc)
                report.corrupt.append(exc)
                with repo.transaction():
                    repo.delete_chunks_by_content(content_hash)
                report.stale.extend(
                    d for d in repo.list_documents() if d.content_hash == content_hash
                )
        if report.corrupt:
            with repo.transaction():
                VectorIndex(repo.conn).remove_unreferenced()
        return report


def open_vault(index_dir: Path | None = None, provider: ModelProvider | None = None) -> Vault:
    """Open the vault at *index_dir* (default ``./.obsidx``) with its merged config."""
    directory = Path(index_dir) if index_dir is not None else DEFAULT_INDEX_DIR
    return Vault(directory, load_config(directory), provider=provider)


def _path_variants(ref: str) -> list[str]:
    variants = [ref]
    if not ref.lower().endswith(".md"):
        variants.append(f"{ref}.md")
    return variants
