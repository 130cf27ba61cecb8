"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path

import pytest

from obsidx.config import (
    DB_NAME,
    CollectionCfg,
    ExpansionCfg,
    ObsidxConfig,
    load_config,
    write_project_config,
)
from obsidx.db.connection import Database
from obsidx.db.models import Chunk
from obsidx.db.schema import initialize
from obsidx.errors import ModelUnavailable
from obsidx.ingest.base import BaseChunker
from obsidx.rag.expansion import keywords
from obsidx.vault import Vault

DIMS = 32

# Words contributed by the embedding prompt templates, not by the text itself.
_TEMPLATE_WORDS = {"task", "search", "result", "query", "title", "text", "none"}


class FakeProvider:
    """Deterministic in-process model backend.

    Embeddings are hashed bags of keywords, so texts sharing words are close
    in cosine space. Rerank scores the fraction of query keywords a document
    contains. Set ``fail`` to a set of kinds ("embedding", "expansion",
    "rerank") to make those calls raise ``ModelUnavailable``.
    """

    def __init__(self, expansion_reply: str = "") -> None:
        self.expansion_reply = expansion_reply
        self.fail: set[str] = set()
        self.embedded: list[str] = []
        self.calls = {"embedding": 0, "expansion": 0, "rerank": 0}

    def embed(self, model: str, texts: list[str]) -> list[list[float]]:
        self._check("embedding", model)
        self.embedded.extend(texts)
        return [embed_text(t) for t in texts]

    def complete(self, model: str, prompt: str, max_tokens: int = 256) -> str:
        self._check("expansion", model)
        return self.expansion_reply

    def rerank(self, model: str, query: str, documents: list[str]) -> list[float]:
        self._check("rerank", model)
        terms = keywords(query)
        scores = []
        for doc in documents:
            present = set(keywords(doc))
            scores.append(sum(1 for t in terms if t in present) / max(1, len(terms)))
        return scores

    def _check(self, kind: str, model: str) -> None:
        self.calls[kind] += 1
        if kind in self.fail:
            raise ModelUnavailable(kind, model, "ConnectionError")


def embed_text(text: str) -> list[float]:
    vector = [0.0] * DIMS
    for word in keywords(text):
        if word in _TEMPLATE_WORDS:
            continue
        bucket = int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % DIMS
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class ParagraphChunker(BaseChunker):
    """One chunk per blank-line separated paragraph; makes chunk boundaries predictable."""

    def chunk(self, content_hash: str, content: str) -> list[Chunk]:
        spans = [(m.start(), m.end()) for m in re.finditer(r"\S(?:.|\n(?!\s*(?:\n|\Z)))*", content)]
        return self._make_chunks(content_hash, content, spans)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def database(tmp_path):
    """Database handle (per-thread connections) with schema initialized."""
    db = Database(tmp_path / "index.db")
    initialize(db.local())
    yield db
    db.close()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def chunker() -> ParagraphChunker:
    return ParagraphChunker()


def write_notes(root: Path, notes: dict[str, str]) -> Path:
    """Write ``{relative_path: text}`` under *root* and return *root*."""
    for rel, text in notes.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    return root


@pytest.fixture
def make_vault(tmp_path, provider, chunker):
    """Factory: a ``Vault`` over a notes directory, backed by ``FakeProvider``."""
    opened: list[Vault] = []

    def _make(notes: dict[str, str] | None = None, config: ObsidxConfig | None = None) -> Vault:
        notes_dir = write_notes(tmp_path / "notes", notes or {})
        if config is None:
            config = ObsidxConfig(
                collections={"notes": CollectionCfg(path=str(notes_dir))},
                expansion=ExpansionCfg(mode="heuristic"),
            )
        vault = Vault(tmp_path / ".obsidx", config, provider=provider, chunker=chunker)
        opened.append(vault)
        return vault

    yield _make
    for vault in opened:
        vault.close()


@pytest.fixture
def cli_index(tmp_path, provider, monkeypatch):
    """Factory: an initialized index over *notes* that CLI commands open with ``FakeProvider``.

    Returns the index directory to pass as ``--index``. The vault lives in
    ``tmp_path / "vault"`` as collection ``vault``.
    """
    global_cfg = tmp_path / "global.yaml"

    def _open(index_dir):
        config = load_config(index_dir, global_config_path=global_cfg)
        return Vault(index_dir, config, provider=provider)

    monkeypatch.setattr("obsidx.cli.options.open_vault", _open)

    def _make(notes: dict[str, str]) -> Path:
        vault_dir = write_notes(tmp_path / "vault", notes)
        index_dir = tmp_path / "idx"
        write_project_config(index_dir, {"vault": CollectionCfg(path=str(vault_dir))})
        db = Database(index_dir / DB_NAME)
        initialize(db.local())
        db.close()
        return index_dir

    return _make
