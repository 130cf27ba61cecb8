"""Base chunker interface: parameters, token counting, chunk construction."""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import Callable

from obsidx.db.models import Chunk, hash_chunk_text, normalize_chunk_text

# Coarse estimate used to position windows without tokenizing the whole text.
CHARS_PER_TOKEN = 4


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Subclasses implement ``chunk()`` and may use ``_make_chunks()`` to turn
    character spans into ``Chunk`` objects.

    Token counting defaults to a 4-chars-per-token approximation; pass
    *tokenizer* (and a matching *tokenizer_id*) to verify counts with a real
    tokenizer, e.g. ``functools.partial(llm_client.count_tokens, model)``.
    """

    # Bump when the boundary algorithm changes; part of the fingerprint.
    version = 1

    def __init__(
        self,
        target_tokens: int = 900,
        overlap: float = 0.15,
        tolerance: float = 0.15,
        tokenizer: Callable[[str], int] | None = None,
        tokenizer_id: str = "approx",
    ) -> None:
        if target_tokens < 1:
            raise ValueError("target_tokens must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        if not 0.0 <= tolerance < 1.0:
            raise ValueError("tolerance must be in [0.0, 1.0)")
        self.target_tokens = target_tokens
        self.overlap = overlap
        self.tolerance = tolerance
        self._tokenizer = tokenizer or self.count_tokens
        self.tokenizer_id = tokenizer_id if tokenizer is not None else "approx"

    @abstractmethod
    def chunk(self, content_hash: str, content: str) -> list[Chunk]:
        """Split *content* into Chunk objects for *content_hash*.

        Args:
            content_hash: Hash of the raw bytes the text was decoded from.
            content: Full decoded text of the document.

        Returns:
            Ordered list of Chunk objects with sequential ``seq``.
        """

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token (minimum 1)."""
        return max(1, len(text) // CHARS_PER_TOKEN)

    def tokens(self, text: str) -> int:
        """Token count with the configured tokenizer."""
        return self._tokenizer(text)

    @property
    def tolerance_tokens(self) -> int:
        return max(1, int(self.target_tokens * self.tolerance))

    @property
    def max_tokens(self) -> int:
        """Upper bound for any chunk except the breakpoint-free exception."""
        return self.target_tokens + self.tolerance_tokens

    @property
    def overlap_tokens(self) -> int:
        return int(self.target_tokens * self.overlap)

    def fingerprint(self) -> str:
        """Stable identifier of the chunking configuration.

        Chunk hashes are only comparable between runs with equal fingerprints.
        """
        params = {
            "chunker": type(self).__name__,
            "version": self.version,
            "target_tokens": self.target_tokens,
            "overlap": self.overlap,
            "tolerance": self.tolerance,
            "tokenizer": self.tokenizer_id,
        }
        blob = json.dumps(params, sort_keys=True).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()[:16]

    def _make_chunks(
        self, content_hash: str, content: str, spans: list[tuple[int, int]]
    ) -> list[Chunk]:
        """Convert ``[start, end)`` spans into sequentially numbered Chunks.

        Whitespace-only spans are dropped.
        """
        chunks: list[Chunk] = []
        for start, end in spans:
            text = content[start:end]
            if not normalize_chunk_text(text):
                continue
            chunks.append(
                Chunk(
                    content_hash=content_hash,
                    seq=len(chunks),
                    chunk_hash=hash_chunk_text(text),
                    text=text,
                    start=start,
                    end=end,
                    tokens=self.tokens(text),
                )
            )
        return chunks
