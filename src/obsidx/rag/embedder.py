"""Cached model calls: embeddings, query expansion and reranking.

Every call follows the same shape: look up the cache, call the provider on a
miss, store the result. Provider failures propagate as ``ModelUnavailable``;
nothing is cached for a failed call.

Embedding prompts are asymmetric: queries use ``query_template``, chunks use
``document_template``. Chunk embeddings are cached by (chunk_hash, model), so
identical chunk text is embedded once however many documents carry it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed

from obsidx.rag import cache as kinds
from obsidx.rag.cache import CacheStore, cache_key
from obsidx.rag.expansion import Variant, expansion_prompt, parse_expansion
from obsidx.rag.llm_client import ModelProvider

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TEMPLATE = "task: search result | query: {query}"
DEFAULT_DOCUMENT_TEMPLATE = "title: {title} | text: {text}"


class Embedder:
    """Model access for indexing and querying, backed by a ``CacheStore``.

    Args:
        provider: Model backend (``LiteLLMProvider`` in production).
        cache: Cache bound to the calling thread's connection.
        model: Embedding model string.
        workers: Threads used by ``embed_chunks`` for cache misses.
        batch_size: Texts per embedding request.
    """

    def __init__(
        self,
        provider: ModelProvider,
        cache: CacheStore,
        model: str,
        query_template: str = DEFAULT_QUERY_TEMPLATE,
        document_template: str = DEFAULT_DOCUMENT_TEMPLATE,
        workers: int = 4,
        batch_size: int = 16,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.model = model
        self.query_template = query_template
        self.document_template = document_template
        self.workers = max(1, workers)
        self.batch_size = max(1, batch_size)

    # ------------------------------------------------------------------
    # Prompt formatting
    # ------------------------------------------------------------------

    def format_query(self, query: str) -> str:
        return self.query_template.format(query=query)

    def format_document(self, text: str, title: str = "") -> str:
        return self.document_template.format(title=title or "none", text=text)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def embed_query(self, query: str) -> list[float]:
        prompt = self.format_query(query)
        key = cache_key(prompt)
        hit = self.cache.get(key, self.model, kinds.QUERY)
        if hit is not None:
            return hit
        vector = self.provider.embed(self.model, [prompt])[0]
        self.cache.put(key, self.model, kinds.QUERY, vector)
        return vector

    def embed_passage(self, text: str, title: str = "") -> list[float]:
        """Embed free text as a document (used for hypothetical answers)."""
        prompt = self.format_document(text, title)
        key = cache_key(prompt)
        hit = self.cache.get(key, self.model, kinds.EMBEDDING)
        if hit is not None:
            return hit
        vector = self.provider.embed(self.model, [prompt])[0]
        self.cache.put(key, self.model, kinds.EMBEDDING, vector)
        return vector

    def embed_chunk(self, chunk_hash: str, text: str, title: str = "") -> list[float]:
        hit = self.cache.get(chunk_hash, self.model, kinds.EMBEDDING)
        if hit is not None:
            return hit
        vector = self.provider.embed(self.model, [self.format_document(text, title)])[0]
        self.cache.put(chunk_hash, self.model, kinds.EMBEDDING, vector)
        return vector

    def embed_chunks(self, items: Sequence[tuple[str, str, str]]) -> dict[str, list[float]]:
        """Embed ``(chunk_hash, text, title)`` items; returns ``{chunk_hash: vector}``.

        Cached hashes are served from the cache. Distinct misses are batched
        and embedded in parallel; cache writes happen on the calling thread.

        Raises:
            ModelUnavailable: If any batch fails. Batches that completed before
                the failure stay cached.
        """
        unique: dict[str, tuple[str, str]] = {}
        for chunk_hash, text, title in items:
            unique.setdefault(chunk_hash, (text, title))
        if not unique:
            return {}

        vectors = self.cache.get_many(list(unique), self.model, kinds.EMBEDDING)
        misses = [h for h in unique if h not in vectors]
        if not misses:
            return vectors

        batches = [misses[i : i + self.batch_size] for i in range(0, len(misses), self.batch_size)]
        logger.debug("embedding %d chunks in %d batches", len(misses), len(batches))

        def _run(batch: list[str]) -> tuple[list[str], list[list[float]]]:
            prompts = [self.format_document(*unique[h]) for h in batch]
            return batch, self.provider.embed(self.model, prompts)

        with ThreadPoolExecutor(max_workers=min(self.workers, len(batches))) as pool:
            futures = [pool.submit(_run, batch) for batch in batches]
            try:
                for future in as_completed(futures):
                    batch, batch_vectors = future.result()
                    for chunk_hash, vector in zip(batch, batch_vectors):
                        self.cache.put(chunk_hash, self.model, kinds.EMBEDDING, vector)
                        vectors[chunk_hash] = vector
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        return vectors

    # ------------------------------------------------------------------
    # Expansion + rerank
    # ------------------------------------------------------------------

    def expand(self, query: str, model: str, max_variants: int) -> list[Variant]:
        """Ask *model* for routed query variants (cached per query and count)."""
        key = cache_key(query, str(max_variants))
        hit = self.cache.get(key, model, kinds.EXPANSION)
        if hit is None:
            reply = self.provider.complete(model, expansion_prompt(query, max_variants))
            self.cache.put(key, model, kinds.EXPANSION, reply)
            hit = reply
        return parse_expansion(hit, query, max_variants)

    def rerank(self, query: str, passages: Sequence[str], model: str) -> list[float]:
        """Relevance score of each passage to *query*; misses go to the model in one call."""
        keys = [cache_key(query, p) for p in passages]
        scores = self.cache.get_many(keys, model, kinds.RERANK)
        missing = [i for i, k in enumerate(keys) if k not in scores]
        if missing:
            fresh = self.provider.rerank(model, query, [passages[i] for i in missing])
            for i, score in zip(missing, fresh):
                self.cache.put(keys[i], model, kinds.RERANK, score)
                scores[keys[i]] = score
        return [float(scores[k]) for k in keys]
