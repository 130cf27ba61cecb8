"""Rank fusion and score blending for the hybrid query pipeline.

Weighted Reciprocal Rank Fusion:
  score(d) = Σ_lists weight / (rank_list(d) + K)     rank 1-based, K = 60

Only ranks enter the formula, never raw scores, so BM25 and cosine lists
combine without calibration. Adding a list that ranks d never lowers d's
score.
"""

from __future__ import annotations

from collections.abc import Hashable, Sequence
from dataclasses import dataclass, field

from obsidx.rag.expansion import keywords

DEFAULT_RRF_K = 60


@dataclass
class RankedList:
    """One retrieval result list: candidate keys best-first, with its fusion weight."""

    label: str
    weight: float
    keys: list[Hashable] = field(default_factory=list)


def rrf_fuse(lists: Sequence[RankedList], k: int = DEFAULT_RRF_K) -> list[tuple[Hashable, float]]:
    """Fuse ranked lists into ``(key, score)`` pairs, best first.

    A key repeated within one list counts at its best rank only. Ties keep
    first-seen order across the lists.
    """
    scores: dict[Hashable, float] = {}
    for ranked in lists:
        seen: set[Hashable] = set()
        rank = 0
        for key in ranked.keys:
            if key in seen:
                continue
            seen.add(key)
            rank += 1
            scores[key] = scores.get(key, 0.0) + ranked.weight / (rank + k)
    order = {key: i for i, key in enumerate(scores)}
    return sorted(scores.items(), key=lambda item: (-item[1], order[item[0]]))


def keyword_overlap(query: str, text: str) -> int:
    """Number of distinct query keywords present in *text*."""
    terms = keywords(query)
    if not terms:
        return 0
    present = set(keywords(text))
    return sum(1 for t in terms if t in present)


def normalize(values: Sequence[float]) -> list[float]:
    """Min-max scale to [0, 1]; a constant sequence maps to all 1.0."""
    if not values:
        return []
    lo, hi = min(values), max(values)
    if hi == lo:
        return [1.0] * len(values)
    return [(v - lo) / (hi - lo) for v in values]


def blend(rerank_scores: Sequence[float], fused_ranks: Sequence[int], alpha: float) -> list[float]:
    """``alpha * norm(rerank) + (1 - alpha) * norm(-fused_rank)`` per candidate."""
    if len(rerank_scores) != len(fused_ranks):
        raise ValueError("rerank_scores and fused_ranks differ in length")
    rr = normalize(list(rerank_scores))
    fr = normalize([-float(r) for r in fused_ranks])
    return [alpha * a + (1.0 - alpha) * b for a, b in zip(rr, fr)]
