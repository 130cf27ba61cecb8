"""Domain models and content-addressing helpers for the obsidx database layer."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

_TRAILING_WS_RE = re.compile(r"[ \t]+\n")


def hash_bytes(raw: bytes) -> str:
    """Content hash: SHA-256 hex digest of the raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def normalize_chunk_text(text: str) -> str:
    """Canonical form used for chunk identity.

    Line endings are unified, trailing spaces per line dropped, and the whole
    span stripped, so a chunk cut at the same breakpoint hashes the same no
    matter which whitespace followed it in the source.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _TRAILING_WS_RE.sub("\n", text).strip()


def hash_chunk_text(text: str) -> str:
    """chunk_hash: SHA-256 of the normalized chunk text."""
    return hashlib.sha256(normalize_chunk_text(text).encode("utf-8")).hexdigest()


@dataclass
class Content:
    hash: str
    body: bytes
    size: int
    created_at: str | None = None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass
class Document:
    collection: str
    path: str
    content_hash: str
    title: str = ""
    active: bool = True
    mtime: float | None = None
    indexed_at: str | None = None
    id: int | None = None  # set after insert

    @property
    def ref(self) -> str:
        """Display reference: ``collection/path``."""
        return f"{self.collection}/{self.path}"

    @property
    def docid(self) -> str:
        """Short content-hash reference usable as ``#<docid>``."""
        return self.content_hash[:6]


@dataclass
class Chunk:
    content_hash: str
    seq: int
    chunk_hash: str
    text: str
    start: int = 0
    end: int = 0
    tokens: int = 0
    rowid: int | None = None  # set after insert; None for unsaved chunks
