"""codevault remove: delete a path's records or purge an agent."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from codevault.cli.errors import err_nothing_to_remove
from codevault.cli.services import DEFAULT_DB, console, load_cfg, open_db, require_db
from codevault.db.repository import Repository


def remove_cmd(
    path: Annotated[
        list[str] | None,
        typer.Option("--path", help="Relative path (file or directory) to remove (repeatable)."),
    ] = None,
    all_records: Annotated[
        bool,
        typer.Option("--all", help="Remove every record owned by the agent."),
    ] = False,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .codevault.db."),
    ] = DEFAULT_DB,
    agent: Annotated[
        str | None,
        typer.Option("--agent", help="Agent id whose records are removed."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove indexed records for paths, or all records of an agent."""
    if not path and not all_records:
        console.print(err_nothing_to_remove())
        raise typer.Exit(1)
    require_db(db)
    cfg = load_cfg(db)
    agent_id = agent or cfg.project.agent_id

    conn = open_db(db)
    try:
        repo = Repository(conn, model_name=cfg.embedding.model)

        if all_records:
            total = repo.get_statistics(agent_id).total
            if total == 0:
                console.print(f"[dim]Nothing indexed for agent '{agent_id}'.[/]")
                return
            if not yes:
                typer.confirm(
                    f"Remove all {total} embedding(s) of agent '{agent_id}'?",
                    abort=True,
                )
            removed = repo.delete_agent(agent_id)
            console.print(f"[green]✓[/] Removed {removed} embedding(s) of agent '{agent_id}'.")
            return

        targets = _expand_paths(repo, agent_id, path or [])
        if not targets:
            console.print(f"[yellow]No indexed files match:[/] {', '.join(path or [])}")
            raise typer.Exit(1)
        if not yes:
            console.print("Files to remove:")
            for target in targets:
                console.print(f"  {target}")
            typer.confirm(f"Remove records of {len(targets)} file(s)?", abort=True)
        removed = repo.delete_embeddings_for_paths(agent_id, targets)
    finally:
        conn.close()

    console.print(f"[green]✓[/] Removed {removed} embedding(s) from {len(targets)} file(s).")


def _expand_paths(repo: Repository, agent_id: str, paths: list[str]) -> list[str]:
    """Indexed files equal to, or under, any of *paths*."""
    prefixes = [p.strip("/") for p in paths if p.strip("/")]
    return [
        indexed
        for indexed in repo.get_all_file_paths_for_agent(agent_id)
        if any(indexed == p or indexed.startswith(p + "/") for p in prefixes)
    ]
