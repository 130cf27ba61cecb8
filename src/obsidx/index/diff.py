"""Chunk-level diff between two versions of a document."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

from obsidx.db.models import Chunk


@dataclass
class ChunkDiff:
    """Set difference of chunk hashes: what to embed, what may lose its vector."""

    to_add: set[str] = field(default_factory=set)
    to_remove: set[str] = field(default_factory=set)
    unchanged: set[str] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.to_add or self.to_remove)


@dataclass
class ChunkPairing:
    """Row-level plan: which stored rows carry over to which new chunks."""

    pairs: list[tuple[Chunk, Chunk]] = field(default_factory=list)  # (old row, new chunk)
    surplus_old: list[Chunk] = field(default_factory=list)
    surplus_new: list[Chunk] = field(default_factory=list)


def diff_chunks(old: Sequence[Chunk], new: Sequence[Chunk]) -> ChunkDiff:
    old_hashes = {c.chunk_hash for c in old}
    new_hashes = {c.chunk_hash for c in new}
    return ChunkDiff(
        to_add=new_hashes - old_hashes,
        to_remove=old_hashes - new_hashes,
        unchanged=new_hashes & old_hashes,
    )


def pair_occurrences(old: Sequence[Chunk], new: Sequence[Chunk]) -> ChunkPairing:
    """Match old and new chunks sharing a hash, occurrence by occurrence in seq order.

    A hash occurring twice before and once after pairs its first old
    occurrence and leaves the second as surplus; the other occurrence of the
    same text is never touched.
    """
    old_by_hash: dict[str, list[Chunk]] = defaultdict(list)
    for chunk in sorted(old, key=lambda c: c.seq):
        old_by_hash[chunk.chunk_hash].append(chunk)

    pairing = ChunkPairing()
    for chunk in sorted(new, key=lambda c: c.seq):
        bucket = old_by_hash.get(chunk.chunk_hash)
        if bucket:
            pairing.pairs.append((bucket.pop(0), chunk))
        else:
            pairing.surplus_new.append(chunk)
    pairing.surplus_old = sorted(
        (c for bucket in old_by_hash.values() for c in bucket), key=lambda c: c.seq
    )
    return pairing
