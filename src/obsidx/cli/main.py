"""obsidx CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from obsidx.cli.get import get_cmd, links_cmd, tags_cmd
from obsidx.cli.index import index_cmd
from obsidx.cli.init import init_cmd
from obsidx.cli.search import search_cmd
from obsidx.cli.status import status_cmd, verify_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("obsidx")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"obsidx {_version()}")
        raise typer.Exit()


def _setup_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    logging.captureWarnings(True)
    # litellm logs every retry at INFO; keep it quiet unless debugging
    logging.getLogger("LiteLLM").setLevel(logging.DEBUG if verbose > 1 else logging.WARNING)


app = typer.Typer(
    name="obsidx",
    help=(
        "obsidx: local hybrid search for Markdown vaults.\n\n"
        "  obsidx init VAULT     Register a vault and create the index.\n"
        "  obsidx index          Incrementally chunk + embed changed notes.\n"
        '  obsidx search "..."   BM25 + vector search with fusion and reranking.'
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        int,
        typer.Option("--verbose", "-v", count=True, help="More log output (-vv for debug)."),
    ] = 0,
) -> None:
    """obsidx: local hybrid search for Markdown vaults."""
    _setup_logging(verbose)


app.command("init")(init_cmd)
app.command("index")(index_cmd)
app.command("search")(search_cmd)
app.command("get")(get_cmd)
app.command("tags")(tags_cmd)
app.command("links")(links_cmd)
app.command("status")(status_cmd)
app.command("verify")(verify_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed obsidx version."""
    typer.echo(f"obsidx {_version()}")


if __name__ == "__main__":
    app()
