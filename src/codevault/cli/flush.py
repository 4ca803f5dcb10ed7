"""codevault flush: commit (or discard) embeddings left in the staging buffer."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from codevault.cli.services import DEFAULT_DB, build_staging, console, load_cfg, open_db, require_db
from codevault.db.repository import Repository


def flush_cmd(
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .codevault.db."),
    ] = DEFAULT_DB,
    clear: Annotated[
        bool,
        typer.Option("--clear", help="Discard pending entries instead of committing them."),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt for --clear."),
    ] = False,
) -> None:
    """Commit embeddings buffered by an interrupted ingest."""
    require_db(db)
    cfg = load_cfg(db)

    conn = open_db(db)
    try:
        repo = Repository(conn, model_name=cfg.embedding.model)
        staging = build_staging(repo, cfg, db)
        pending = staging.load()
        if not pending:
            console.print("[dim]Staging buffer is empty.[/]")
            return

        if clear:
            if not yes:
                typer.confirm(f"Discard {pending} pending embedding(s)?", abort=True)
            dropped = staging.clear()
            console.print(f"[green]✓[/] Discarded {dropped} pending embedding(s).")
            return

        result = staging.flush()
    finally:
        conn.close()

    console.print(
        f"[green]✓[/] Committed {len(result.committed)}, "
        f"already stored {len(result.already_stored)}, failed {len(result.failed)}."
    )
    if result.failed:
        console.print("[yellow]Failed entries stay in the buffer.[/] Run:  codevault flush")
        raise typer.Exit(1)
