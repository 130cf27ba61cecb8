"""Options and helpers shared by the obsidx commands."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console

from obsidx.cli.errors import err_config, err_no_index
from obsidx.config import DB_NAME, ConfigError
from obsidx.db.models import Document
from obsidx.vault import open_vault

console = Console()

IndexDir = Annotated[
    Path,
    typer.Option("--index", "-i", envvar="OBSIDX_INDEX", help="Index directory (holds index.db)."),
]
JsonFlag = Annotated[bool, typer.Option("--json", help="Print machine-readable JSON.")]


def open_or_exit(index: Path):
    """Open the vault at *index*, or print an actionable error and exit 1."""
    if not (index / DB_NAME).exists():
        console.print(err_no_index(str(index)))
        raise typer.Exit(1)
    try:
        return open_vault(index)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc


def document_dict(doc: Document) -> dict[str, Any]:
    return {
        "ref": doc.ref,
        "collection": doc.collection,
        "path": doc.path,
        "title": doc.title,
        "docid": doc.docid,
        "content_hash": doc.content_hash,
        "mtime": doc.mtime,
        "indexed_at": doc.indexed_at,
    }
