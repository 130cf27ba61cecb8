"""obsidx get / tags / links: read notes and note metadata from the index."""

from __future__ import annotations

import json
from typing import Annotated

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from obsidx.cli.errors import err_not_found
from obsidx.cli.options import IndexDir, JsonFlag, console, document_dict, open_or_exit
from obsidx.config import DEFAULT_INDEX_DIR
from obsidx.errors import NotFound


def get_cmd(
    refs: Annotated[
        list[str],
        typer.Argument(help="collection/path, path, #<hash-prefix>, or a glob (repeatable)."),
    ],
    index: IndexDir = DEFAULT_INDEX_DIR,
    meta: Annotated[
        bool,
        typer.Option("--meta", help="Show metadata only, not the note body."),
    ] = False,
    as_json: JsonFlag = False,
) -> None:
    """Print one or more notes from the index."""
    vault = open_or_exit(index)
    try:
        try:
            docs = vault.multi_get(refs)
        except NotFound as exc:
            console.print(err_not_found(exc.refs))
            raise typer.Exit(1) from exc
        items = []
        for doc in docs:
            item = document_dict(doc)
            item["tags"] = vault.repo.tags_for_content(doc.content_hash)
            if not meta:
                item["text"] = vault.read(doc)
            items.append(item)
    finally:
        vault.close()

    if as_json:
        typer.echo(json.dumps(items, indent=2))
        return

    for item in items:
        header = f"[bold]{escape(item['title'] or item['path'])}[/]  [dim]{escape(item['ref'])} #{item['docid']}[/]"
        if item["tags"]:
            header += "\n" + " ".join(f"[cyan]#{t}[/]" for t in item["tags"])
        if meta:
            console.print(header)
        else:
            console.print(Panel(Text(item["text"]), title=header, title_align="left", expand=True))


def tags_cmd(
    index: IndexDir = DEFAULT_INDEX_DIR,
    as_json: JsonFlag = False,
) -> None:
    """List tags with the number of notes carrying each."""
    vault = open_or_exit(index)
    try:
        counts = vault.tags()
    finally:
        vault.close()

    if as_json:
        typer.echo(json.dumps(counts, indent=2))
        return
    if not counts:
        console.print("[dim]No tags indexed.[/]")
        return
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 1))
    table.add_column("Tag", style="cyan")
    table.add_column("Notes", justify="right")
    for tag, n in counts.items():
        table.add_row(f"#{tag}", str(n))
    console.print(table)


def links_cmd(
    ref: Annotated[str, typer.Argument(help="Note reference.")],
    index: IndexDir = DEFAULT_INDEX_DIR,
    as_json: JsonFlag = False,
) -> None:
    """Show a note's outgoing links and backlinks."""
    vault = open_or_exit(index)
    try:
        try:
            report = vault.links(ref)
        except NotFound as exc:
            console.print(err_not_found(exc.refs))
            raise typer.Exit(1) from exc
    finally:
        vault.close()

    if as_json:
        payload = {
            "document": document_dict(report.document),
            "outgoing": [
                {"target": target, "ref": doc.ref if doc else None} for target, doc in report.outgoing
            ],
            "backlinks": [document_dict(d) for d in report.backlinks],
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    note = report.document
    console.print(f"[bold]{escape(note.title or note.path)}[/]  [dim]{escape(note.ref)}[/]")
    console.print(f"\n[bold]Outgoing[/] ({len(report.outgoing)})")
    for target, doc in report.outgoing:
        if doc is not None:
            console.print(f"  → {escape(target)}  [dim]{escape(doc.ref)}[/]")
        else:
            console.print(f"  → {escape(target)}  [yellow](unresolved)[/]")
    console.print(f"\n[bold]Backlinks[/] ({len(report.backlinks)})")
    for doc in report.backlinks:
        console.print(f"  ← {escape(doc.title or doc.path)}  [dim]{escape(doc.ref)}[/]")
