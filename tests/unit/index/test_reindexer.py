"""Tests for the incremental chunk-diff reindexer."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from obsidx.config import EmbeddingCfg
from obsidx.db.models import hash_bytes, hash_chunk_text
from obsidx.db.repository import Repository
from obsidx.db.vectors import VectorIndex
from obsidx.errors import ConfigMismatchWarning, ModelUnavailable
from obsidx.index.reindexer import (
    ADDED,
    FINGERPRINT_KEY,
    RECOVERED,
    UNCHANGED,
    UPDATED,
    Reindexer,
)
from obsidx.ingest.structural import StructuralChunker

MODEL = "test/embed"

V1 = b"# Plan\n\nFirst paragraph about tomatoes.\n\nSecond paragraph about compost. #garden\n"
V2 = V1 + b"\nThird paragraph about fungi.\n"


@pytest.fixture
def reindexer(database, chunker, provider):
    return Reindexer(database, chunker, provider, EmbeddingCfg(model=MODEL))


@pytest.fixture
def repo(database):
    return Repository(database.local())


@pytest.fixture
def vectors(database):
    return VectorIndex(database.local())


def _rowids(repo, content_hash):
    return {c.chunk_hash: c.rowid for c in repo.list_chunks(content_hash)}


# ---------------------------------------------------------------------------
# Add / unchanged
# ---------------------------------------------------------------------------


def test_new_document_is_added_and_embedded(reindexer, repo, vectors):
    result = reindexer.reindex("notes", "plan.md", V1, mtime=1.0)

    assert result.status == ADDED
    assert result.content_hash == hash_bytes(V1)
    assert result.chunks == 3
    assert result.embedded == 3
    assert not result.deferred
    assert vectors.count(MODEL) == 3

    doc = repo.get_active_document("notes", "plan.md")
    assert doc.title == "Plan"
    assert repo.tags_for_content(doc.content_hash) == ["garden"]
    assert repo.search_fts("tomatoes")


def test_same_content_is_unchanged(reindexer, provider):
    reindexer.reindex("notes", "plan.md", V1)
    calls = provider.calls["embedding"]

    result = reindexer.reindex("notes", "plan.md", V1)

    assert result.status == UNCHANGED
    assert result.chunks == 3
    assert result.embedded == 0
    assert provider.calls["embedding"] == calls


# ---------------------------------------------------------------------------
# Chunk diff updates
# ---------------------------------------------------------------------------


def test_appended_paragraph_embeds_only_the_new_chunk(reindexer, provider, repo):
    reindexer.reindex("notes", "plan.md", V1)
    before = _rowids(repo, hash_bytes(V1))
    provider.embedded.clear()

    result = reindexer.reindex("notes", "plan.md", V2)

    assert result.status == UPDATED
    assert result.diff.to_add == {hash_chunk_text("Third paragraph about fungi.")}
    assert result.diff.to_remove == set()
    assert result.embedded == 1
    assert provider.embedded == ["title: Plan | text: Third paragraph about fungi."]

    after = _rowids(repo, hash_bytes(V2))
    # Surviving chunks kept their rows; old content has no rows left
    for chunk_hash, rowid in before.items():
        assert after[chunk_hash] == rowid
    assert repo.count_chunks(hash_bytes(V1)) == 0


def _journal(paragraphs: int) -> bytes:
    body = "\n\n".join(
        f"Entry {i} is about topic {i}. " + " ".join(f"word{i}x{j}" for j in range(24)) + "."
        for i in range(paragraphs)
    )
    return f"# Journal\n\n{body}\n".encode()


def test_structural_append_replaces_at_most_the_last_chunk(database, provider, repo):
    structural = Reindexer(database, StructuralChunker(target_tokens=100), provider, EmbeddingCfg(model=MODEL))
    old = _journal(8)
    structural.reindex("notes", "journal.md", old)
    before = [c.chunk_hash for c in repo.list_chunks(hash_bytes(old))]
    assert len(before) >= 3

    new = old + b"\nA closing paragraph about something new.\n"
    result = structural.reindex("notes", "journal.md", new)

    assert result.status == UPDATED
    assert result.diff.to_add
    # The old tail chunk grows to take in the new text; nothing earlier changes
    assert result.diff.to_remove <= {before[-1]}
    after = [c.chunk_hash for c in repo.list_chunks(hash_bytes(new))]
    assert after[: len(before) - 1] == before[:-1]


def test_edited_paragraph_replaces_its_vector(reindexer, repo, vectors):
    reindexer.reindex("notes", "plan.md", V1)
    edited = V1.replace(b"about compost", b"about mulch")

    result = reindexer.reindex("notes", "plan.md", edited)

    old_hash = hash_chunk_text("Second paragraph about compost. #garden")
    new_hash = hash_chunk_text("Second paragraph about mulch. #garden")
    assert result.diff.to_add == {new_hash}
    assert result.diff.to_remove == {old_hash}
    assert not vectors.has(old_hash, MODEL)
    assert vectors.has(new_hash, MODEL)
    assert vectors.count(MODEL) == 3
    assert repo.search_fts("mulch")
    assert not repo.search_fts("compost")


def test_removed_duplicate_paragraph_keeps_shared_vector(reindexer, repo, vectors):
    twice = b"Repeated line.\n\nMiddle.\n\nRepeated line.\n"
    reindexer.reindex("notes", "dup.md", twice)
    assert repo.count_chunks(hash_bytes(twice)) == 3
    assert vectors.count(MODEL) == 2

    once = b"Repeated line.\n\nMiddle.\n"
    result = reindexer.reindex("notes", "dup.md", once)

    assert result.status == UPDATED
    assert not result.diff.changed
    assert repo.count_chunks(hash_bytes(once)) == 2
    assert vectors.has(hash_chunk_text("Repeated line."), MODEL)


def test_tags_follow_the_new_version(reindexer, repo):
    reindexer.reindex("notes", "plan.md", V1)
    retagged = V1.replace(b"#garden", b"#kitchen")

    reindexer.reindex("notes", "plan.md", retagged)

    assert repo.tag_counts() == {"kitchen": 1}


# ---------------------------------------------------------------------------
# Shared content between paths
# ---------------------------------------------------------------------------


def test_copy_of_indexed_note_reuses_chunks(reindexer, provider, repo):
    reindexer.reindex("notes", "a.md", V1)
    calls = provider.calls["embedding"]

    result = reindexer.reindex("notes", "b.md", V1)

    assert result.status == ADDED
    assert result.embedded == 0
    assert provider.calls["embedding"] == calls
    assert repo.count_chunks() == 3


def test_editing_one_copy_leaves_the_other_intact(reindexer, repo, vectors):
    reindexer.reindex("notes", "a.md", V1)
    reindexer.reindex("notes", "b.md", V1)

    reindexer.reindex("notes", "a.md", V2)

    # b.md still points at V1, so V1 rows stay in place
    assert repo.count_chunks(hash_bytes(V1)) == 3
    assert repo.count_chunks(hash_bytes(V2)) == 4
    assert vectors.count(MODEL) == 4


def test_switching_to_content_another_path_has(reindexer, repo):
    other = b"Some other note.\n"
    reindexer.reindex("notes", "a.md", V1)
    reindexer.reindex("notes", "b.md", other)

    reindexer.reindex("notes", "a.md", other)

    # V1 was only used by a.md: its rows are gone
    assert repo.count_chunks(hash_bytes(V1)) == 0
    assert repo.count_chunks(hash_bytes(other)) == 1


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


def test_missing_chunk_rows_are_recovered(reindexer, repo):
    reindexer.reindex("notes", "plan.md", V1)
    with repo.transaction():
        repo.delete_chunks_by_content(hash_bytes(V1))

    result = reindexer.reindex("notes", "plan.md", V1)

    assert result.status == RECOVERED
    assert repo.count_chunks(hash_bytes(V1)) == 3
    assert repo.search_fts("compost")


# ---------------------------------------------------------------------------
# Model unavailable
# ---------------------------------------------------------------------------


def test_unavailable_model_defers_embedding(reindexer, provider, repo, vectors):
    provider.fail.add("embedding")

    result = reindexer.reindex("notes", "plan.md", V1)

    assert result.status == ADDED
    assert result.deferred
    assert result.embedded == 0
    assert vectors.count(MODEL) == 0
    # Lexical search works while vectors are pending
    assert repo.search_fts("tomatoes")
    assert len(repo.unembedded_chunks(MODEL)) == 3


def test_embed_pending_fills_missing_vectors(reindexer, provider, repo, vectors):
    provider.fail.add("embedding")
    reindexer.reindex("notes", "plan.md", V1)
    with pytest.raises(ModelUnavailable):
        reindexer.embed_pending()

    provider.fail.clear()
    assert reindexer.embed_pending() == 3
    assert repo.unembedded_chunks(MODEL) == []
    assert vectors.count(MODEL) == 3
    assert reindexer.embed_pending() == 0


# ---------------------------------------------------------------------------
# Removal + prune
# ---------------------------------------------------------------------------


def test_remove_then_prune(reindexer, repo, vectors):
    reindexer.reindex("notes", "plan.md", V1)

    assert reindexer.remove("notes", "plan.md") is True
    assert repo.get_active_document("notes", "plan.md") is None
    # Rows stay until pruned
    assert repo.count_chunks() == 3

    chunks, vecs = reindexer.prune()
    assert chunks == 3
    assert vecs == 3
    assert repo.count_chunks() == 0
    assert vectors.count() == 0
    # Content stays in the store as history
    assert repo.get_content(hash_bytes(V1)) is not None


def test_remove_unknown_path(reindexer):
    assert reindexer.remove("notes", "missing.md") is False


def test_prune_keeps_content_of_active_documents(reindexer, repo):
    reindexer.reindex("notes", "a.md", V1)
    reindexer.reindex("notes", "b.md", V1)
    reindexer.remove("notes", "a.md")

    assert reindexer.prune() == (0, 0)
    assert repo.count_chunks() == 3


# ---------------------------------------------------------------------------
# Chunker fingerprint
# ---------------------------------------------------------------------------


def test_fresh_index_adopts_fingerprint(reindexer, repo, chunker):
    assert reindexer.check_fingerprint() is True
    assert repo.get_meta(FINGERPRINT_KEY) == chunker.fingerprint()


def test_changed_chunker_warns_and_rebuilds(database, reindexer, provider, repo):
    reindexer.check_fingerprint()
    reindexer.reindex("notes", "plan.md", V1)
    reindexer.reindex("notes", "other.md", b"Another note.\n")
    calls = provider.calls["embedding"]

    smaller = type(reindexer.chunker)(target_tokens=100)
    changed = Reindexer(database, smaller, provider, EmbeddingCfg(model=MODEL))
    with pytest.warns(ConfigMismatchWarning):
        assert changed.check_fingerprint() is False

    assert changed.rebuild_all() == 2
    assert repo.count_chunks() == 4
    assert repo.get_meta(FINGERPRINT_KEY) == changed.chunker.fingerprint()
    # Same chunk texts: served from the embedding cache
    assert provider.calls["embedding"] == calls
    assert changed.check_fingerprint() is True


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_parallel_reindex_of_distinct_paths(reindexer, repo):
    notes = {f"note{i}.md": f"Note number {i}.\n\nShared closing line.\n".encode() for i in range(12)}

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda item: reindexer.reindex("notes", *item), notes.items()))

    assert {r.status for r in results} == {ADDED}
    assert repo.count_documents() == 12
    assert repo.count_chunks() == 24
    assert repo.unembedded_chunks(MODEL) == []
