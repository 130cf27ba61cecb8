"""obsidx index: scan collections and update the index incrementally.

Only changed notes are rechunked, and only chunks whose text changed are
embedded. Notes deleted from the vault are deactivated; their rows are
pruned at the end of the run.
"""

from __future__ import annotations

import dataclasses
import json
from typing import Annotated

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from obsidx.cli.errors import err_no_collections, err_not_found, err_vault_missing, warn_pending
from obsidx.cli.options import IndexDir, JsonFlag, console, open_or_exit
from obsidx.config import DEFAULT_INDEX_DIR, PROJECT_CONFIG_NAME
from obsidx.errors import NotFound
from obsidx.index.reindexer import ReindexResult


def index_cmd(
    index: IndexDir = DEFAULT_INDEX_DIR,
    collection: Annotated[
        list[str] | None,
        typer.Option("--collection", "-c", help="Only index this collection (repeatable)."),
    ] = None,
    as_json: JsonFlag = False,
) -> None:
    """Index (or re-index) the configured vault collections."""
    vault = open_or_exit(index)
    try:
        if not vault.config.collections:
            console.print(err_no_collections(str(index / PROJECT_CONFIG_NAME)))
            raise typer.Exit(1)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TextColumn("[dim]{task.completed} notes[/dim]"),
            transient=True,
            console=console,
            disable=as_json,
        ) as prog:
            task = prog.add_task("Indexing…", total=None)

            def _on_progress(result: ReindexResult) -> None:
                prog.update(task, advance=1, description=f"{result.status}: {result.path}")

            try:
                report = vault.index(collections=collection, on_progress=_on_progress)
            except NotFound as exc:
                console.print(err_not_found(exc.refs))
                raise typer.Exit(1) from exc
            except FileNotFoundError as exc:
                console.print(err_vault_missing(exc.filename or str(exc)))
                raise typer.Exit(1) from exc
    finally:
        vault.close()

    if as_json:
        typer.echo(json.dumps(dataclasses.asdict(report), indent=2))
        return

    if report.rebuilt:
        console.print("[yellow]⚠[/] Chunking settings changed: index rebuilt.")
    console.print(
        f"[green]✓[/] {report.scanned} notes scanned: "
        f"{report.added} added, {report.updated} updated, {report.unchanged} unchanged"
        + (f", {report.recovered} recovered" if report.recovered else "")
        + (f", {report.removed} removed" if report.removed else "")
    )
    console.print(f"  [dim]{report.embedded} chunks embedded, {report.pruned_chunks} stale chunks pruned[/]")
    if report.pending:
        console.print(warn_pending(report.pending))
