"""Breakpoint scanning: candidate chunk boundaries scored by structural strength.

Pure functions over text; chunk assembly lives in ``obsidx.ingest.structural``.

A breakpoint offset is the position where a new chunk would begin. Scores:

    heading h1..h6     100 / 90 / 80 / 70 / 65 / 60
    code fence edge     55
    horizontal rule     50
    blank line          20
    list item           10
    sentence end         5
    line break           1

Code fences are paired ``[start, end)`` ranges (``end`` is just past the
closing fence line). An unterminated fence runs to the end of the document.
No breakpoint ever lies strictly inside a fence.
"""

from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass

HEADING_SCORES: dict[int, int] = {1: 100, 2: 90, 3: 80, 4: 70, 5: 65, 6: 60}
CODEBLOCK_SCORE = 55
HR_SCORE = 50
BLANK_SCORE = 20
LIST_SCORE = 10
SENTENCE_SCORE = 5
NEWLINE_SCORE = 1

_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+\S")
_HR_RE = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
_LIST_RE = re.compile(r"^[ \t]*(?:[-*+]|\d{1,9}[.)])[ \t]+\S")
_SENTENCE_RE = re.compile(r"[.!?][\"')\]]*[ \t]+(?=\S)")


@dataclass(frozen=True)
class Breakpoint:
    offset: int
    score: int
    kind: str


def find_fences(text: str) -> list[tuple[int, int]]:
    """Return paired code-fence ranges ``[start, end)`` in document order.

    A fence closes on a line holding only the opening fence character, at
    least as many times as the opener.
    """
    fences: list[tuple[int, int]] = []
    open_start: int | None = None
    open_marker = ""
    pos = 0
    for line in text.splitlines(keepends=True):
        match = _FENCE_RE.match(line)
        if match:
            marker = match.group(1)
            if open_start is None:
                open_start = pos
                open_marker = marker
            else:
                stripped = line.strip()
                if set(stripped) == {open_marker[0]} and len(stripped) >= len(open_marker):
                    fences.append((open_start, pos + len(line)))
                    open_start = None
        pos += len(line)
    if open_start is not None:
        fences.append((open_start, len(text)))
    return fences


def fence_containing(offset: int, fences: list[tuple[int, int]]) -> tuple[int, int] | None:
    """Return the fence strictly containing *offset* (start < offset < end), if any."""
    i = bisect_right([start for start, _ in fences], offset) - 1
    if i >= 0:
        start, end = fences[i]
        if start < offset < end:
            return fences[i]
    return None


def scan_breakpoints(
    text: str, fences: list[tuple[int, int]] | None = None
) -> list[Breakpoint]:
    """Scan *text* once and return scored breakpoints sorted by offset.

    Offsets 0 and ``len(text)`` are chunk edges, not breakpoints. When several
    kinds share an offset the strongest one is kept.
    """
    if fences is None:
        fences = find_fences(text)
    length = len(text)
    found: dict[int, Breakpoint] = {}

    def add(offset: int, kind: str, score: int) -> None:
        if offset <= 0 or offset >= length:
            return
        if fence_containing(offset, fences) is not None:
            return
        existing = found.get(offset)
        if existing is None or score > existing.score:
            found[offset] = Breakpoint(offset, score, kind)

    for start, end in fences:
        add(start, "codeblock", CODEBLOCK_SCORE)
        add(end, "codeblock", CODEBLOCK_SCORE)

    fence_starts = {start for start, _ in fences}
    pos = 0
    after_blank = False
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if pos in fence_starts or fence_containing(pos, fences) is not None:
            after_blank = False
        elif not stripped:
            after_blank = True
        else:
            add(pos, "newline", NEWLINE_SCORE)
            if after_blank:
                add(pos, "blank", BLANK_SCORE)
            after_blank = False

            heading = _HEADING_RE.match(line)
            if heading:
                level = len(heading.group(1))
                add(pos, f"h{level}", HEADING_SCORES[level])
            elif _HR_RE.match(line):
                add(pos, "hr", HR_SCORE)
            elif _LIST_RE.match(line):
                add(pos, "list", LIST_SCORE)

            for match in _SENTENCE_RE.finditer(line):
                add(pos + match.end(), "sentence", SENTENCE_SCORE)
        pos += len(line)

    return sorted(found.values(), key=lambda b: b.offset)
