"""obsidx status / verify: index overview and integrity check."""

from __future__ import annotations

import json

import typer
from rich.panel import Panel
from rich.table import Table

from obsidx.cli.errors import err_index_corrupt, warn_pending
from obsidx.cli.options import IndexDir, JsonFlag, console, document_dict, open_or_exit
from obsidx.config import DEFAULT_INDEX_DIR


def status_cmd(
    index: IndexDir = DEFAULT_INDEX_DIR,
    as_json: JsonFlag = False,
) -> None:
    """Show index statistics: notes, chunks, embeddings, collections."""
    vault = open_or_exit(index)
    try:
        st = vault.status()
    finally:
        vault.close()

    if as_json:
        payload = {
            "index": str(st.index_path),
            "documents": st.documents,
            "chunks": st.chunks,
            "contents": st.contents,
            "embedded": st.embedded,
            "pending": st.pending,
            "cached": st.cached,
            "collections": st.collections,
            "last_indexed": st.last_indexed,
            "fingerprint": st.fingerprint,
            "stored_fingerprint": st.stored_fingerprint,
            "embedding_model": st.embedding_model,
            "models": st.models,
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    size_mb = st.index_path.stat().st_size / (1024 * 1024) if st.index_path.exists() else 0.0
    lines = [
        f"Index:     {st.index_path} ({size_mb:.1f} MB)",
        f"Notes: [bold]{st.documents}[/]  |  Chunks: [bold]{st.chunks:,}[/]  |  "
        f"Embedded: [bold]{st.embedded:,}[/]  |  Cache: [bold]{st.cached:,}[/]",
        f"Model:     {st.embedding_model}",
    ]
    if st.last_indexed:
        lines.append(f"Last index: [dim]{st.last_indexed}[/]")
    else:
        lines.append("[dim]Nothing indexed yet.  Run:  obsidx index[/]")
    if st.stored_fingerprint and st.stored_fingerprint != st.fingerprint:
        lines.append("[yellow]Chunking settings changed: next index run rebuilds.[/]")
    console.print(Panel("\n".join(lines), title="[bold]obsidx[/]", expand=False))

    if st.collections:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Collection", style="bold")
        table.add_column("Notes", justify="right")
        for name, n in st.collections.items():
            table.add_row(name, str(n))
        console.print(Panel(table, title="[bold]Collections[/]", expand=False))

    if st.pending:
        console.print(warn_pending(st.pending))


def verify_cmd(
    index: IndexDir = DEFAULT_INDEX_DIR,
    as_json: JsonFlag = False,
) -> None:
    """Recompute content hashes and drop chunks of corrupt entries."""
    vault = open_or_exit(index)
    try:
        report = vault.verify()
    finally:
        vault.close()

    if as_json:
        payload = {
            "checked": report.checked,
            "corrupt": [e.content_hash for e in report.corrupt],
            "stale": [document_dict(d) for d in report.stale],
        }
        typer.echo(json.dumps(payload, indent=2))
    elif report.ok:
        console.print(f"[green]✓[/] {report.checked} content entries verified.")
    else:
        console.print(err_index_corrupt(report.corrupt))
        for doc in report.stale:
            console.print(f"  [dim]stale:[/] {doc.ref}")

    if not report.ok:
        raise typer.Exit(1)
