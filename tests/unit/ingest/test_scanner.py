"""Tests for the vault directory scanner."""

from __future__ import annotations

import pytest

from obsidx.ingest.scanner import scan_vault


def _touch(root, rel: str, text: str = "x") -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


@pytest.fixture
def vault(tmp_path):
    root = tmp_path / "vault"
    _touch(root, "b.md", "bee")
    _touch(root, "a.md", "ay")
    _touch(root, "folder/c.md")
    _touch(root, "folder/deep/d.md")
    _touch(root, "image.png")
    _touch(root, ".obsidian/workspace.md")
    _touch(root, ".hidden.md")
    _touch(root, "drafts/wip.md")
    _touch(root, "node_modules/pkg/readme.md")
    return root


def test_scan_yields_sorted_relative_posix_paths(vault):
    paths = [f.path for f in scan_vault(vault, "notes")]
    assert paths == ["a.md", "b.md", "drafts/wip.md", "folder/c.md", "folder/deep/d.md"]


def test_scan_reads_bytes_and_mtime(vault):
    files = {f.path: f for f in scan_vault(vault, "notes")}
    assert files["a.md"].raw == b"ay"
    assert files["a.md"].collection == "notes"
    assert files["a.md"].mtime > 0


def test_exclude_by_name_and_relative_path(vault):
    paths = [f.path for f in scan_vault(vault, "notes", exclude=["drafts", "folder/deep/*"])]
    assert paths == ["a.md", "b.md", "folder/c.md"]


def test_include_patterns(vault):
    paths = [f.path for f in scan_vault(vault, "notes", include=["*.png"])]
    assert paths == ["image.png"]


def test_max_depth(vault):
    paths = [f.path for f in scan_vault(vault, "notes", max_depth=0)]
    assert paths == ["a.md", "b.md"]


def test_missing_root_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        list(scan_vault(tmp_path / "nope", "notes"))
