"""codevault CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from codevault.cli.flush import flush_cmd
from codevault.cli.ingest import ingest_cmd
from codevault.cli.init import init_cmd
from codevault.cli.query import query_cmd
from codevault.cli.remove import remove_cmd
from codevault.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("codevault")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"codevault {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="codevault",
    help=(
        "codevault: embedding index for source code.\n\n"
        "  codevault ingest  Sync files into the index (only changed chunks are embedded).\n"
        "  codevault query   Retrieve the most relevant chunks for a question."
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
) -> None:
    """codevault: embedding index for source code."""


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("query")(query_cmd)
app.command("status")(status_cmd)
app.command("remove")(remove_cmd)
app.command("flush")(flush_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed codevault version."""
    typer.echo(f"codevault {_installed_version()}")


if __name__ == "__main__":
    app()
