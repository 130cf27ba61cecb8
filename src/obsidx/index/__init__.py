"""obsidx incremental indexing: chunk diffs and the reindexer."""

from obsidx.index.diff import ChunkDiff, ChunkPairing, diff_chunks, pair_occurrences
from obsidx.index.reindexer import FINGERPRINT_KEY, Reindexer, ReindexResult

__all__ = [
    "FINGERPRINT_KEY",
    "ChunkDiff",
    "ChunkPairing",
    "ReindexResult",
    "Reindexer",
    "diff_chunks",
    "pair_occurrences",
]
