"""Exception hierarchy shared by the storage, model and query layers.

Policy per kind:
  NotFound: surfaced to the caller.
  ModelUnavailable: queries degrade (flagged in results); indexing defers embedding.
  IndexCorrupt: only the affected entry is invalidated and rebuilt; always reported.
  ConfigMismatch: warning; forces a full rechunk + re-embed instead of a partial diff.
  Cancelled: partial query state is discarded.
"""

from __future__ import annotations


class ObsidxError(Exception):
    """Base class for all obsidx errors."""


class NotFound(ObsidxError, LookupError):
    """A document, chunk or reference could not be resolved."""

    def __init__(self, refs: str | list[str]) -> None:
        self.refs = [refs] if isinstance(refs, str) else list(refs)
        super().__init__(f"Not found: {', '.join(self.refs)}")


class ModelUnavailable(ObsidxError):
    """The embedding / expansion / rerank backend is unreachable or timed out."""

    def __init__(self, kind: str, model: str, reason: str = "") -> None:
        self.kind = kind
        self.model = model
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"{kind} model '{model}' unavailable{detail}")


class IndexCorrupt(ObsidxError):
    """A stored content body no longer matches its content hash."""

    def __init__(self, content_hash: str, actual_hash: str) -> None:
        self.content_hash = content_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Content {content_hash[:12]} is corrupt (recomputed {actual_hash[:12]})"
        )


class Cancelled(ObsidxError):
    """The caller aborted a query between pipeline stages."""


class ConfigMismatchWarning(UserWarning):
    """Chunking parameters changed since the last index; a full reindex follows."""
