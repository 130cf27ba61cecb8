"""obsidx search: hybrid query over the indexed vault."""

from __future__ import annotations

import json
from typing import Annotated

import typer
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from obsidx.cli.errors import warn_degraded
from obsidx.cli.options import IndexDir, JsonFlag, console, document_dict, open_or_exit
from obsidx.config import DEFAULT_INDEX_DIR

_SNIPPET_CHARS = 240


def search_cmd(
    query: Annotated[str, typer.Argument(help="What to search for.")],
    index: IndexDir = DEFAULT_INDEX_DIR,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", min=1, help="Maximum number of notes to return."),
    ] = None,
    collection: Annotated[
        list[str] | None,
        typer.Option("--collection", "-c", help="Restrict to a collection (repeatable)."),
    ] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Only notes carrying this tag (repeatable, all required)."),
    ] = None,
    full: Annotated[
        bool,
        typer.Option("--full", help="Print the whole matching passage instead of a snippet."),
    ] = False,
    as_json: JsonFlag = False,
) -> None:
    """Search notes with BM25 + vector retrieval, fusion and reranking."""
    vault = open_or_exit(index)
    try:
        response = vault.search(query, k=limit, collections=collection, tags=tag)
    finally:
        vault.close()

    if as_json:
        payload = {
            "query": response.query,
            "degraded": response.degraded,
            "skipped": response.skipped,
            "variants": [{"route": v.route.value, "text": v.text} for v in response.variants],
            "results": [
                {
                    **document_dict(r.document),
                    "score": r.score,
                    "fused_score": r.fused_score,
                    "fused_rank": r.fused_rank,
                    "rerank_score": r.rerank_score,
                    "chunk": {
                        "seq": r.chunk.seq,
                        "start": r.chunk.start,
                        "end": r.chunk.end,
                        "text": r.chunk.text,
                    },
                }
                for r in response.results
            ],
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    if response.degraded:
        console.print(warn_degraded(response.degraded))
    if not response.results:
        console.print("[dim]No matching notes.[/]")
        return

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 1))
    table.add_column("#", style="dim", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Note")
    table.add_column("Passage", overflow="fold")
    for i, result in enumerate(response.results, start=1):
        text = " ".join(result.chunk.text.split())
        if not full and len(text) > _SNIPPET_CHARS:
            text = text[:_SNIPPET_CHARS].rstrip() + "…"
        doc = result.document
        note = f"[bold]{escape(doc.title or doc.path)}[/]\n[dim]{escape(doc.ref)} #{doc.docid}[/]"
        table.add_row(str(i), f"{result.score:.3f}", note, Text(text))
    console.print(table)
