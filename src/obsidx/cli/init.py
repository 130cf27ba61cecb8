"""obsidx init: register a vault directory and create the index.

Creates:
  <index>/index.db         empty index with schema
  <index>/obsidx.yaml      collection list (vault path, include/exclude globs)
  ~/.obsidx/config.yaml    global model config (created once, mode 0o600)

Running init again with another vault adds it as a further collection;
existing collections and indexed data are preserved.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
import yaml

from obsidx.cli.errors import err_vault_missing
from obsidx.cli.options import IndexDir, console
from obsidx.config import (
    DB_NAME,
    DEFAULT_INDEX_DIR,
    PROJECT_CONFIG_NAME,
    CollectionCfg,
    ensure_global_config,
    write_project_config,
)
from obsidx.db.connection import Database
from obsidx.db.schema import initialize


def init_cmd(
    vault: Annotated[
        Path,
        typer.Argument(help="Vault directory to index (e.g. an Obsidian vault)."),
    ],
    index: IndexDir = DEFAULT_INDEX_DIR,
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Collection name. Defaults to the vault directory name."),
    ] = None,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Glob pattern to exclude (repeatable)."),
    ] = None,
    global_config: Annotated[
        Path | None,
        typer.Option("--global-config", hidden=True, help="Override ~/.obsidx/config.yaml (for testing)."),
    ] = None,
) -> None:
    """Initialize an index for VAULT."""
    vault = vault.expanduser().resolve()
    if not vault.is_dir():
        console.print(err_vault_missing(str(vault)))
        raise typer.Exit(1)

    collection = name or vault.name or "vault"
    collections = _existing_collections(index)
    if collection in collections and Path(collections[collection].path) != vault:
        console.print(
            f"[yellow]⚠[/]  Collection '{collection}' already points to {collections[collection].path}."
        )
        if not typer.confirm("Replace it?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)
    collections[collection] = CollectionCfg(path=str(vault), exclude=list(exclude or []))

    cfg_path = write_project_config(index, collections)
    console.print(f"  [green]✓[/] {cfg_path}")

    db = Database(index / DB_NAME)
    conn = db.connect()
    initialize(conn)
    conn.close()
    console.print(f"  [green]✓[/] {index / DB_NAME}")

    global_path = ensure_global_config(global_config)
    console.print(f"  [green]✓[/] {global_path} (global config)")

    console.print(f"\n[bold green]✓ Collection '{collection}' → {vault}[/]")
    console.print("\nNext steps:")
    console.print("  1. obsidx index                 (chunk + embed the vault)")
    console.print('  2. obsidx search "your query"   (hybrid search)')


def _existing_collections(index: Path) -> dict[str, CollectionCfg]:
    path = index / PROJECT_CONFIG_NAME
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    found: dict[str, CollectionCfg] = {}
    for cname, raw in (data.get("collections") or {}).items():
        if isinstance(raw, str):
            raw = {"path": raw}
        found[str(cname)] = CollectionCfg(
            path=str(raw.get("path", "")),
            include=list(raw.get("include") or ["*.md"]),
            exclude=list(raw.get("exclude") or []),
        )
    return found
