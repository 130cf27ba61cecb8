"""obsidx rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from obsidx.cli.errors import err_no_index
    console.print(err_no_index(".obsidx"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from obsidx.errors import IndexCorrupt


def err_no_index(index_dir: str = ".obsidx") -> str:
    """No index.db in the index directory."""
    return (
        f"[red]Error:[/] No index found at '{index_dir}'.\n"
        "  Run:  obsidx init <vault-dir>"
    )


def err_no_collections(config_path: str) -> str:
    """Config lists no collections to index."""
    return (
        f"[red]Error:[/] No collections configured in '{config_path}'.\n"
        "  Run:  obsidx init <vault-dir>   or add a collections: entry."
    )


def err_vault_missing(path: str) -> str:
    """Collection directory does not exist."""
    return (
        f"[red]Error:[/] Vault directory not found: '{path}'\n"
        "  Check the collection path in obsidx.yaml or re-run obsidx init."
    )


def err_not_found(refs: list[str]) -> str:
    """One or more document references did not resolve."""
    listed = "\n".join(f"    {r}" for r in refs)
    return (
        "[yellow]Not found:[/]\n"
        f"{listed}\n"
        "  Refs are collection/path, a path, or #<hash-prefix>.  Run:  obsidx status"
    )


def err_config(message: str) -> str:
    """Config file failed validation."""
    return f"[red]Config error:[/] {message}"


def err_index_corrupt(errors: list[IndexCorrupt]) -> str:
    """verify found content bodies that no longer match their hash."""
    listed = "\n".join(f"    {e}" for e in errors)
    return (
        f"[red]Error:[/] {len(errors)} corrupt content entr{'y' if len(errors) == 1 else 'ies'}:\n"
        f"{listed}\n"
        "  Their chunks were dropped.  Run:  obsidx index  to rebuild from the vault."
    )


def warn_degraded(flags: list[str]) -> str:
    """Search answered without some stages."""
    return (
        f"[yellow]⚠[/] Degraded search (unavailable: {', '.join(flags)}).\n"
        "  Results use the remaining signals only."
    )


def warn_pending(count: int) -> str:
    """Chunks stored without vectors."""
    return (
        f"[yellow]⚠[/] {count} chunks are waiting for embeddings (model unavailable).\n"
        "  Run:  obsidx index  again once the embedding model is reachable."
    )
