"""Vault scanner: resolves a directory into ``(collection, path, raw, mtime)`` files."""

from __future__ import annotations

import errno
import fnmatch
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

# Vault/tool directories never indexed.
_SKIP_DIRS = {".obsidian", ".git", ".trash", ".obsidx", "node_modules", "__pycache__"}


@dataclass(frozen=True)
class ScannedFile:
    collection: str
    path: str  # POSIX path relative to the vault root
    raw: bytes
    mtime: float


def scan_vault(
    root: Path,
    collection: str,
    include: Sequence[str] = ("*.md",),
    exclude: Sequence[str] = (),
    max_depth: int = 32,
) -> Iterator[ScannedFile]:
    """Yield every included file under *root*, sorted by relative path.

    Hidden entries and tool directories are skipped; *exclude* glob patterns
    match either the entry name or the relative path.
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(errno.ENOENT, "Vault directory not found", str(root))
    for file in _scan_dir(root, root, include, exclude, depth=0, max_depth=max_depth):
        rel = file.relative_to(root).as_posix()
        try:
            raw = file.read_bytes()
            mtime = file.stat().st_mtime
        except OSError:
            continue
        yield ScannedFile(collection=collection, path=rel, raw=raw, mtime=mtime)


def _scan_dir(
    root: Path,
    directory: Path,
    include: Sequence[str],
    exclude: Sequence[str],
    depth: int,
    max_depth: int,
) -> list[Path]:
    """Return included files in *directory*, recursing up to *max_depth*."""
    if depth > max_depth:
        return []
    files: list[Path] = []
    try:
        entries = sorted(directory.iterdir())
    except PermissionError:
        return []
    for entry in entries:
        if entry.name.startswith(".") or entry.name in _SKIP_DIRS:
            continue
        rel = entry.relative_to(root).as_posix()
        if any(fnmatch.fnmatch(entry.name, pat) or fnmatch.fnmatch(rel, pat) for pat in exclude):
            continue
        if entry.is_file() and any(fnmatch.fnmatch(entry.name, pat) for pat in include):
            files.append(entry)
        elif entry.is_dir():
            files.extend(_scan_dir(root, entry, include, exclude, depth + 1, max_depth))
    return files
