"""codevault status: index statistics and pending staging entries."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from codevault.cli.errors import warn_pending_staging
from codevault.cli.services import DEFAULT_DB, build_staging, console, load_cfg, open_db
from codevault.db.repository import Repository
from codevault.db.vectors import list_vec_tables

_TOP_FILES = 10


def status_cmd(
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .codevault.db."),
    ] = DEFAULT_DB,
    agent: Annotated[
        str | None,
        typer.Option("--agent", help="Agent id to report on."),
    ] = None,
) -> None:
    """Show index statistics for one agent."""
    cfg = load_cfg(db)
    agent_id = agent or cfg.project.agent_id

    if not db.exists():
        console.print(
            Panel(
                "[yellow]No database found.[/]\n"
                "  Run:  codevault ingest <directory>",
                title="[bold]Index[/]",
                expand=False,
            )
        )
        return

    conn = open_db(db)
    try:
        repo = Repository(conn, model_name=cfg.embedding.model)
        stats = repo.get_statistics(agent_id)
        vec_tables = list_vec_tables(conn)
        staging = build_staging(repo, cfg, db)
        pending = staging.load()
    finally:
        conn.close()

    lines = [
        f"[bold]Database:[/]   {db}",
        f"[bold]Agent:[/]      {agent_id}",
        f"[bold]Model:[/]      {cfg.embedding.model}",
        f"[bold]Embeddings:[/] {stats.total:,} across {stats.file_count:,} file(s)",
        f"[bold]Avg chunk:[/]  {stats.average_chunk_size:,.0f} chars",
    ]
    for etype, n in stats.by_type.items():
        lines.append(f"  {etype}: {n:,}")
    lines.append(f"[bold]Vector tables:[/] {', '.join(vec_tables) or 'none'}")
    console.print(Panel("\n".join(lines), title="[bold]Index[/]", expand=False))

    if stats.by_file:
        table = Table(title=f"Largest files (top {_TOP_FILES})", expand=False)
        table.add_column("File")
        table.add_column("Embeddings", justify="right")
        ranked = sorted(stats.by_file.items(), key=lambda kv: (-kv[1], kv[0]))
        for path, n in ranked[:_TOP_FILES]:
            table.add_row(path, str(n))
        console.print(table)

    if pending:
        console.print(warn_pending_staging(pending))
