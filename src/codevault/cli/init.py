"""codevault init: write the global config file with commented defaults."""

from __future__ import annotations

import typer

from codevault.cli.services import console
from codevault.config import ensure_global_config


def init_cmd() -> None:
    """Create ~/.codevault/config.yaml if it does not exist."""
    try:
        path = ensure_global_config()
    except OSError as exc:
        console.print(f"[red]Error:[/] Cannot write global config: {exc}")
        raise typer.Exit(1) from exc
    console.print(f"[green]✓[/] Global config: {path}")
    console.print("  API keys go in environment variables, never in this file.")
