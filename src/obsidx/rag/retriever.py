"""Hybrid query engine: BM25 (FTS5) + dense (sqlite-vec), fused via weighted RRF.

Pipeline per query:
  1. Probe     BM25 on the raw query. A clear, strong top hit skips expansion.
  2. Expand    routed variants (lex / vec / hyde) from a model or heuristics.
  3. Retrieve  original query → both indexes; each variant → its routed index.
  4. Fuse      weighted RRF; original-query lists weigh more than variants.
  5. Select    one representative chunk per document (keyword overlap).
  6. Rerank    cross-encoder over the top documents' representative chunks.
  7. Blend     alpha * norm(rerank) + (1 - alpha) * norm(-fused_rank).

Every model-backed stage is optional: an unavailable backend drops the stage
and names it in ``SearchResponse.degraded`` instead of failing the query.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import assert_never

from obsidx.config import ExpansionCfg, RerankCfg, RetrievalCfg
from obsidx.db.models import Chunk, Document
from obsidx.db.repository import Repository
from obsidx.db.vectors import VectorIndex
from obsidx.errors import Cancelled, ModelUnavailable
from obsidx.rag.embedder import Embedder
from obsidx.rag.expansion import Route, Variant, heuristic_variants
from obsidx.rag.fusion import RankedList, blend, keyword_overlap, rrf_fuse

logger = logging.getLogger(__name__)

# Degradation / skip flags
VECTOR = "vector"
EXPAND = "expand"
RERANK = "rerank"

_VARIANT_WEIGHT = 1.0

CandidateKey = tuple[int, int]  # (chunk rowid, document id)


class CancelToken:
    """Cooperative cancellation, checked between pipeline stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled("query cancelled")


@dataclass
class SearchResult:
    """One document hit with its representative chunk.

    Attributes:
        score: Final score (blended when reranked, else the fused score).
        fused_score: Best weighted-RRF score among the document's chunks.
        fused_rank: 1-based document rank after fusion.
        rerank_score: Cross-encoder score, None when reranking was skipped.
    """

    document: Document
    chunk: Chunk
    score: float
    fused_score: float
    fused_rank: int
    rerank_score: float | None = None
    degraded: list[str] = field(default_factory=list)


@dataclass
class SearchResponse:
    query: str
    results: list[SearchResult] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    variants: list[Variant] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class _DocCandidates:
    document: Document
    fused_score: float
    chunks: list[tuple[Chunk, float]] = field(default_factory=list)


class HybridQueryEngine:
    """Answers queries over one index. Not shared across threads."""

    def __init__(
        self,
        repo: Repository,
        vectors: VectorIndex,
        embedder: Embedder,
        retrieval: RetrievalCfg | None = None,
        expansion: ExpansionCfg | None = None,
        rerank: RerankCfg | None = None,
    ) -> None:
        self.repo = repo
        self.vectors = vectors
        self.embedder = embedder
        self.retrieval = retrieval or RetrievalCfg()
        self.expansion = expansion or ExpansionCfg()
        self.rerank_cfg = rerank or RerankCfg()

    def search(
        self,
        query: str,
        k: int | None = None,
        collections: Sequence[str] | None = None,
        tags: Sequence[str] | None = None,
        cancel: CancelToken | None = None,
    ) -> SearchResponse:
        """Run the full pipeline and return at most *k* documents, best first.

        Raises:
            Cancelled: If *cancel* fires; no partial result is returned.
        """
        cancel = cancel or CancelToken()
        k = k or self.retrieval.top_k
        response = SearchResponse(query=query)
        query = query.strip()
        cancel.check()
        if not query:
            return response

        scope = _Scope(self.repo, collections, tags)
        if scope.empty:
            return response

        # 1. Probe
        probe = self.repo.search_fts(query, limit=self.retrieval.candidate_limit)
        lex_keys, lex_scores = scope.lexical(probe)
        lists = [RankedList("lex:original", self.retrieval.original_weight, lex_keys)]
        if self._strong_signal(lex_scores):
            response.skipped.append(EXPAND)
        cancel.check()

        # 2. Expand
        if EXPAND not in response.skipped:
            response.variants = self._expand(query, response)
        cancel.check()

        # 3. Retrieve
        vector_ok = True
        try:
            qvec = self.embedder.embed_query(query)
            lists.append(
                RankedList("vec:original", self.retrieval.original_weight, self._dense(qvec, scope))
            )
        except ModelUnavailable as exc:
            vector_ok = False
            self._degrade(response, VECTOR, exc)

        for variant in response.variants:
            cancel.check()
            label = f"{variant.route.value}:{variant.text}"
            match variant.route:
                case Route.LEX:
                    hits = self.repo.search_fts(variant.text, limit=self.retrieval.candidate_limit)
                    lists.append(RankedList(label, _VARIANT_WEIGHT, scope.lexical(hits)[0]))
                case Route.VEC | Route.HYDE:
                    if not vector_ok:
                        continue
                    try:
                        if variant.route is Route.VEC:
                            vec = self.embedder.embed_query(variant.text)
                        else:
                            vec = self.embedder.embed_passage(variant.text)
                    except ModelUnavailable as exc:
                        vector_ok = False
                        self._degrade(response, VECTOR, exc)
                        continue
                    lists.append(RankedList(label, _VARIANT_WEIGHT, self._dense(vec, scope)))
                case _:
                    assert_never(variant.route)
        cancel.check()

        # 4. Fuse + 5. Select
        fused = rrf_fuse(lists, k=self.retrieval.rrf_k)
        docs = _group_by_document(fused, scope.pairs)
        cancel.check()
        if not docs:
            return response

        # 6. Rerank + 7. Blend
        top_n = max(k, self.rerank_cfg.top_n) if self.rerank_cfg.enabled else k
        results = [
            SearchResult(
                document=group.document,
                chunk=_representative(query, group.chunks),
                score=group.fused_score,
                fused_score=group.fused_score,
                fused_rank=rank,
            )
            for rank, group in enumerate(docs[:top_n], start=1)
        ]
        if not self.rerank_cfg.enabled:
            response.skipped.append(RERANK)
        elif not vector_ok:
            # Lexical-only fallback: results keep the BM25 fused order.
            logger.info("rerank skipped: vector backend unavailable")
            if RERANK not in response.degraded:
                response.degraded.append(RERANK)
        else:
            results = self._rerank(query, results, response)
        cancel.check()

        response.results = results[:k]
        for result in response.results:
            result.degraded = list(response.degraded)
        return response

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _strong_signal(self, bm25_scores: list[float]) -> bool:
        """True when the top BM25 hit is strong and clearly ahead of the runner-up."""
        if not bm25_scores:
            return False
        top = _strength(bm25_scores[0])
        second = _strength(bm25_scores[1]) if len(bm25_scores) > 1 else 0.0
        return top >= self.retrieval.strong_signal and top - second >= self.retrieval.strong_gap

    def _expand(self, query: str, response: SearchResponse) -> list[Variant]:
        cfg = self.expansion
        if cfg.mode == "none" or cfg.max_variants < 1:
            response.skipped.append(EXPAND)
            return []
        if cfg.mode == "heuristic":
            return heuristic_variants(query, cfg.max_variants)
        try:
            variants = self.embedder.expand(query, cfg.model, cfg.max_variants)
        except ModelUnavailable as exc:
            self._degrade(response, EXPAND, exc)
            return heuristic_variants(query, cfg.max_variants)
        return variants

    def _dense(self, vector: list[float], scope: _Scope) -> list[CandidateKey]:
        hits = self.vectors.search(
            vector, self.retrieval.candidate_limit, self.embedder.model
        )
        return scope.dense([h for h, _ in hits])

    def _rerank(
        self, query: str, results: list[SearchResult], response: SearchResponse
    ) -> list[SearchResult]:
        try:
            scores = self.embedder.rerank(
                query, [r.chunk.text for r in results], self.rerank_cfg.model
            )
        except ModelUnavailable as exc:
            self._degrade(response, RERANK, exc)
            return results
        blended = blend(scores, [r.fused_rank for r in results], self.retrieval.blend_alpha)
        for result, score, final in zip(results, scores, blended):
            result.rerank_score = score
            result.score = final
        return sorted(results, key=lambda r: (-r.score, r.fused_rank))

    @staticmethod
    def _degrade(response: SearchResponse, flag: str, exc: Exception) -> None:
        if flag not in response.degraded:
            logger.warning("%s stage degraded: %s", flag, exc)
            response.degraded.append(flag)


class _Scope:
    """Second-phase join of raw index hits to active, filtered documents."""

    def __init__(
        self,
        repo: Repository,
        collections: Sequence[str] | None,
        tags: Sequence[str] | None,
    ) -> None:
        self.repo = repo
        self.collections = list(collections) if collections else None
        self.tag_hashes = repo.content_hashes_with_tags([t.lower() for t in tags]) if tags else None
        self.pairs: dict[CandidateKey, tuple[Chunk, Document]] = {}

    @property
    def empty(self) -> bool:
        return self.tag_hashes is not None and not self.tag_hashes

    def lexical(self, hits: list[tuple[Chunk, float]]) -> tuple[list[CandidateKey], list[float]]:
        """Keys and bm25 scores of FTS hits that belong to documents in scope."""
        score_by_row = {chunk.rowid: score for chunk, score in hits}
        pairs = self._keep(self.repo.resolve_chunk_rows(list(score_by_row), self.collections))
        keys = [(c.rowid, d.id) for c, d in pairs]
        return keys, [score_by_row[c.rowid] for c, _ in pairs]

    def dense(self, chunk_hashes: list[str]) -> list[CandidateKey]:
        pairs = self._keep(self.repo.resolve_chunk_hashes(chunk_hashes, self.collections))
        return [(c.rowid, d.id) for c, d in pairs]

    def _keep(self, pairs: list[tuple[Chunk, Document]]) -> list[tuple[Chunk, Document]]:
        if self.tag_hashes is not None:
            pairs = [p for p in pairs if p[1].content_hash in self.tag_hashes]
        for chunk, doc in pairs:
            self.pairs[(chunk.rowid, doc.id)] = (chunk, doc)
        return pairs


def _strength(bm25: float) -> float:
    s = abs(bm25)
    return s / (1.0 + s)


def _group_by_document(
    fused: list[tuple[CandidateKey, float]],
    candidates: dict[CandidateKey, tuple[Chunk, Document]],
) -> list[_DocCandidates]:
    """Collapse fused chunk candidates to documents, ordered by best chunk score."""
    groups: dict[int, _DocCandidates] = {}
    for key, score in fused:
        chunk, doc = candidates[key]
        group = groups.get(doc.id)
        if group is None:
            group = groups[doc.id] = _DocCandidates(document=doc, fused_score=score)
        group.chunks.append((chunk, score))
    return list(groups.values())


def _representative(query: str, chunks: list[tuple[Chunk, float]]) -> Chunk:
    """Chunk with the most query keywords; ties go to the higher fused score."""
    best = max(chunks, key=lambda item: (keyword_overlap(query, item[0].text), item[1]))
    return best[0]
