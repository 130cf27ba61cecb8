"""Tests for StructuralChunker."""

from __future__ import annotations

import pytest

from obsidx.db.models import hash_chunk_text
from obsidx.ingest.breakpoints import find_fences
from obsidx.ingest.structural import StructuralChunker

CONTENT_HASH = "c" * 64


def _section(i: int) -> str:
    sentence = f"Paragraph {i} talks about topic {i} in some detail. "
    return f"## Section {i}\n\n" + sentence * 3 + "\n\n"


def _long_text(sections: int = 12) -> str:
    return "# Notes\n\n" + "".join(_section(i) for i in range(sections))


@pytest.fixture
def small() -> StructuralChunker:
    return StructuralChunker(target_tokens=50, overlap=0.15, tolerance=0.15)


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------


def test_empty_text_returns_no_chunks(small):
    assert small.chunk(CONTENT_HASH, "") == []
    assert small.chunk(CONTENT_HASH, "  \n\n ") == []


def test_short_text_is_one_chunk(small):
    text = "# Title\n\nA short note.\n"
    chunks = small.chunk(CONTENT_HASH, text)
    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.seq == 0
    assert (chunk.start, chunk.end) == (0, len(text))
    assert chunk.content_hash == CONTENT_HASH
    assert chunk.chunk_hash == hash_chunk_text(text)


def test_chunk_text_matches_offsets(small):
    text = _long_text()
    for chunk in small.chunk(CONTENT_HASH, text):
        assert chunk.text == text[chunk.start : chunk.end]


def test_chunks_cover_whole_text_in_order(small):
    text = _long_text()
    chunks = small.chunk(CONTENT_HASH, text)
    assert len(chunks) > 3
    assert chunks[0].start == 0
    assert chunks[-1].end == len(text)
    assert [c.seq for c in chunks] == list(range(len(chunks)))
    for prev, nxt in zip(chunks, chunks[1:]):
        assert prev.start < nxt.start <= prev.end


def test_chunks_stay_within_tolerance(small):
    text = _long_text()
    for chunk in small.chunk(CONTENT_HASH, text):
        assert chunk.tokens <= small.max_tokens


def test_heading_beats_sentence_end_in_band(small):
    # Sentence ends every 12 chars; a heading lands near the 200-char target
    text = "alpha beta. " * 16 + "\n## Heading\n\n" + "gamma delta. " * 40
    chunks = small.chunk(CONTENT_HASH, text)
    assert chunks[0].end == text.index("## Heading")


def test_chunk_before_code_fence_is_not_repeated(small):
    code = "```\n" + "x = 1\n" * 200 + "```\n"
    text = _section(0) + code
    chunks = small.chunk(CONTENT_HASH, text)
    fence_start = find_fences(text)[0][0]
    assert sum(1 for c in chunks if c.end == fence_start) <= 1


def test_overlap_repeats_tail_of_previous_chunk(small):
    text = _long_text()
    chunks = small.chunk(CONTENT_HASH, text)
    assert any(nxt.start < prev.end for prev, nxt in zip(chunks, chunks[1:]))


def test_zero_overlap_is_contiguous():
    chunker = StructuralChunker(target_tokens=50, overlap=0.0, tolerance=0.15)
    text = _long_text()
    chunks = chunker.chunk(CONTENT_HASH, text)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start == prev.end


def test_text_without_breakpoints_is_cut_at_whitespace():
    chunker = StructuralChunker(target_tokens=20, overlap=0.0, tolerance=0.1)
    text = " ".join(["word"] * 200)
    chunks = chunker.chunk(CONTENT_HASH, text)
    assert len(chunks) > 1
    for chunk in chunks[1:]:
        assert text[chunk.start - 1] == " "
        assert chunk.tokens <= chunker.max_tokens


# ---------------------------------------------------------------------------
# Code fences
# ---------------------------------------------------------------------------


def test_never_splits_inside_code_fence(small):
    code = "```python\n" + "".join(f"value_{i} = compute({i})\n" for i in range(20)) + "```\n"
    text = _section(0) + code + _section(1) + code + _section(2)
    fences = find_fences(text)
    for chunk in small.chunk(CONTENT_HASH, text):
        for start, end in fences:
            assert not (start < chunk.start < end)
            assert not (start < chunk.end < end)


def test_oversized_fence_becomes_one_chunk(small):
    code = "```\n" + "x = 1\n" * 200 + "```\n"
    text = "Intro paragraph.\n\n" + code + "\nOutro paragraph.\n"
    fence_start, fence_end = find_fences(text)[0]
    chunks = small.chunk(CONTENT_HASH, text)
    holding = [c for c in chunks if c.start <= fence_start and c.end >= fence_end]
    assert len(holding) == 1
    assert holding[0].tokens > small.max_tokens


# ---------------------------------------------------------------------------
# Stability + fingerprint
# ---------------------------------------------------------------------------


def test_appending_text_keeps_earlier_chunks(small):
    text = _long_text()
    before = small.chunk(CONTENT_HASH, text)
    after = small.chunk(CONTENT_HASH, text + "## Appended\n\nA brand new closing paragraph.\n")
    kept = [c.chunk_hash for c in before[:-1]]
    assert [c.chunk_hash for c in after[: len(kept)]] == kept


def test_deterministic(small):
    text = _long_text()
    first = [(c.start, c.end, c.chunk_hash) for c in small.chunk(CONTENT_HASH, text)]
    second = [(c.start, c.end, c.chunk_hash) for c in small.chunk(CONTENT_HASH, text)]
    assert first == second


def test_fingerprint_tracks_parameters():
    a = StructuralChunker(target_tokens=100)
    assert a.fingerprint() == StructuralChunker(target_tokens=100).fingerprint()
    assert a.fingerprint() != StructuralChunker(target_tokens=200).fingerprint()
    assert a.fingerprint() != StructuralChunker(target_tokens=100, overlap=0.3).fingerprint()
    assert (
        a.fingerprint()
        != StructuralChunker(target_tokens=100, tokenizer=len, tokenizer_id="m").fingerprint()
    )


def test_custom_tokenizer_is_used():
    chunker = StructuralChunker(target_tokens=50, tokenizer=lambda t: len(t.split()), tokenizer_id="words")
    [chunk] = chunker.chunk(CONTENT_HASH, "one two three")
    assert chunk.tokens == 3


@pytest.mark.parametrize(
    "kwargs",
    [{"target_tokens": 0}, {"overlap": 1.0}, {"overlap": -0.1}, {"tolerance": 1.5}],
)
def test_invalid_parameters_rejected(kwargs):
    with pytest.raises(ValueError):
        StructuralChunker(**kwargs)
