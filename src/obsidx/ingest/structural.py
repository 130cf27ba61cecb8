"""Structural chunker: breakpoint-aligned, overlapping, fence-safe passages.

Strategy:
- Scan the text once for scored breakpoints (``scan_breakpoints``).
- Position each window with a character estimate (4 chars ≈ 1 token) so the
  whole document is never re-tokenized per window.
- Inside the tolerance band ``[target - tol, target + tol]`` pick the
  breakpoint with the best distance-decayed score; without one, hard-cut at
  whitespace before the target end.
- Re-count the segment with the real tokenizer and re-split it with a
  token-aware search when it exceeds ``target + tol``.
- Start the next chunk ``overlap * target`` tokens before the previous end,
  snapped to a nearby breakpoint and never inside a code fence. A chunk that
  stops at a code fence is followed without overlap.

A span without any breakpoint (the inside of a long code fence) becomes one
oversized chunk rather than being cut mid-fence.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right

from obsidx.db.models import Chunk
from obsidx.ingest.base import CHARS_PER_TOKEN, BaseChunker
from obsidx.ingest.breakpoints import Breakpoint, fence_containing, find_fences, scan_breakpoints

# How strongly distance from the ideal position discounts a breakpoint score.
_DECAY = 0.7
# Max characters a raw (non-breakpoint) overlap start moves forward to a word start.
_WORD_SNAP_CHARS = 64


class StructuralChunker(BaseChunker):
    """Split Markdown/plain text on the strongest structural boundaries near the target size."""

    def chunk(self, content_hash: str, content: str) -> list[Chunk]:
        if not content.strip():
            return []
        return self._make_chunks(content_hash, content, self.spans(content))

    def spans(self, content: str) -> list[tuple[int, int]]:
        """Return the ``[start, end)`` character spans of each chunk, in order."""
        fences = find_fences(content)
        breakpoints = scan_breakpoints(content, fences)
        offsets = [b.offset for b in breakpoints]
        scan = _Scan(content, breakpoints, offsets, fences)

        spans: list[tuple[int, int]] = []
        start = 0
        length = len(content)
        while start < length:
            end = self._window_end(scan, start)
            end = self._fit_tokens(scan, start, end)
            spans.append((start, end))
            if end >= length:
                break
            start = self._overlap_start(scan, start, end)
        return spans

    # ------------------------------------------------------------------
    # Window end: best breakpoint in the tolerance band
    # ------------------------------------------------------------------

    def _window_end(self, scan: _Scan, start: int) -> int:
        length = len(scan.text)
        target_chars = self.target_tokens * CHARS_PER_TOKEN
        tol_chars = self.tolerance_tokens * CHARS_PER_TOKEN
        if length - start <= target_chars + tol_chars:
            return length

        target = start + target_chars
        band = scan.between(target - tol_chars, target + tol_chars)
        if band:
            best = max(
                band,
                key=lambda b: (_decayed(b.score, b.offset - target, tol_chars), -abs(b.offset - target)),
            )
            return best.offset

        cut = _whitespace_cut(scan.text, target, max(start + 1, target - tol_chars))
        fence = fence_containing(cut, scan.fences)
        if fence is None:
            return cut
        fence_start, fence_end = fence
        # Never cut inside a fence: stop before it, or swallow it whole.
        return fence_start if fence_start > start else fence_end

    # ------------------------------------------------------------------
    # Token verification + token-aware re-split
    # ------------------------------------------------------------------

    def _fit_tokens(self, scan: _Scan, start: int, end: int) -> int:
        limit = self.max_tokens
        text = scan.text
        if self.tokens(text[start:end]) <= limit:
            return end

        candidates = scan.between(start + 1, end - 1)
        fitting = _last_fitting(
            len(candidates), lambda i: self.tokens(text[start : candidates[i].offset]) <= limit
        )
        if fitting >= 0:
            top = candidates[fitting].offset
            tol_chars = self.tolerance_tokens * CHARS_PER_TOKEN
            window = [b for b in candidates[: fitting + 1] if b.offset >= top - tol_chars]
            return max(window, key=lambda b: (b.score, b.offset)).offset

        # No breakpoint fits: cut on the token boundary by character search.
        fitting = _last_fitting(end - start - 1, lambda i: self.tokens(text[start : start + 1 + i]) <= limit)
        if fitting < 0:
            return end
        cut = _whitespace_cut(text, start + 1 + fitting, start + 1)
        if fence_containing(cut, scan.fences) is not None:
            return end  # breakpoint-free span: keep the oversized chunk
        return cut

    # ------------------------------------------------------------------
    # Overlap: where the next chunk begins
    # ------------------------------------------------------------------

    def _overlap_start(self, scan: _Scan, start: int, end: int) -> int:
        overlap_chars = self.overlap_tokens * CHARS_PER_TOKEN
        if overlap_chars <= 0 or end in scan.fence_starts:
            return end
        desired = max(end - overlap_chars, start + 1)

        nearby = scan.between(max(start + 1, desired - overlap_chars), end - 1)
        if nearby:
            best = max(
                nearby,
                key=lambda b: (_decayed(b.score, b.offset - desired, overlap_chars), -abs(b.offset - desired)),
            )
            return best.offset

        fence = fence_containing(desired, scan.fences)
        if fence is not None:
            return min(fence[1], end)
        return _word_start(scan.text, desired, end)


class _Scan:
    """Breakpoints of one document with offset range lookups."""

    def __init__(
        self,
        text: str,
        breakpoints: list[Breakpoint],
        offsets: list[int],
        fences: list[tuple[int, int]],
    ) -> None:
        self.text = text
        self.breakpoints = breakpoints
        self.offsets = offsets
        self.fences = fences
        self.fence_starts = {start for start, _ in fences}

    def between(self, lo: int, hi: int) -> list[Breakpoint]:
        """Breakpoints with ``lo <= offset <= hi``."""
        if hi < lo:
            return []
        i = bisect_left(self.offsets, lo)
        j = bisect_right(self.offsets, hi)
        return self.breakpoints[i:j]


def _decayed(score: int, distance: int, window: int) -> float:
    """Discount *score* by squared relative distance from the ideal position."""
    if window <= 0:
        return float(score)
    ratio = min(1.0, abs(distance) / window)
    return score * (1.0 - ratio * ratio * _DECAY)


def _whitespace_cut(text: str, pos: int, floor: int) -> int:
    """Last position in ``[floor, pos]`` right after whitespace, else *pos*."""
    for i in range(pos, floor - 1, -1):
        if text[i - 1].isspace():
            return i
    return pos


def _word_start(text: str, pos: int, end: int) -> int:
    """Move *pos* forward to the start of the next word when one is close."""
    for i in range(pos, min(end, pos + _WORD_SNAP_CHARS)):
        if text[i - 1].isspace() and not text[i].isspace():
            return i
    return pos


def _last_fitting(count: int, fits) -> int:
    """Binary search: largest index in ``[0, count)`` with ``fits(i)``, or -1.

    Assumes *fits* is monotone (true up to some index, false after).
    """
    lo, hi, best = 0, count - 1, -1
    while lo <= hi:
        mid = (lo + hi) // 2
        if fits(mid):
            best = mid
            lo = mid + 1
        else:
            hi = mid - 1
    return best
