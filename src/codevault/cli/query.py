"""codevault query: retrieve the chunks most relevant to a question or snippet."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Annotated

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from codevault.cli.errors import err_query_failed, warn_no_embeddings
from codevault.cli.services import (
    DEFAULT_DB,
    build_embedder,
    console,
    load_cfg,
    open_db,
    require_api_key,
    require_db,
)
from codevault.db.repository import Repository
from codevault.db.vectors import vec_table_exists
from codevault.rag.retriever import RetrievalError, RetrievalOrchestrator, RetrieverConfig

_PREVIEW_LINES = 12


def query_cmd(
    text: Annotated[
        str,
        typer.Argument(help="Natural-language question or code snippet."),
    ],
    top_k: Annotated[
        int | None,
        typer.Option("--top-k", "-k", min=1, help="Number of results."),
    ] = None,
    path: Annotated[
        list[str] | None,
        typer.Option("--path", help="Restrict to a file or directory (relative, repeatable)."),
    ] = None,
    exclude_type: Annotated[
        list[str] | None,
        typer.Option("--exclude-type", help="Skip chunks of this type, e.g. file_summary (repeatable)."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .codevault.db."),
    ] = DEFAULT_DB,
    agent: Annotated[
        str | None,
        typer.Option("--agent", help="Agent id whose records are searched."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Print results as JSON."),
    ] = False,
) -> None:
    """Search the index and print the best matching chunks."""
    require_db(db)
    cfg = load_cfg(db)
    if not text.strip():
        console.print("[red]Error:[/] Query text is empty.")
        raise typer.Exit(1)
    require_api_key(cfg.embedding.model)

    conn = open_db(db)
    try:
        repo = Repository(conn, model_name=cfg.embedding.model)
        if not vec_table_exists(conn, repo.vec_table):
            console.print(warn_no_embeddings(cfg.embedding.model))
            raise typer.Exit(1)
        retriever = RetrievalOrchestrator(
            repo,
            build_embedder(cfg),
            RetrieverConfig(
                top_k=cfg.retrieval.top_k,
                overfetch_factor=cfg.retrieval.overfetch_factor,
                parent_boost=cfg.retrieval.parent_boost,
                lexical_weight=cfg.retrieval.lexical_weight,
            ),
        )
        try:
            results = retriever.retrieve(
                agent or cfg.project.agent_id,
                text,
                top_k=top_k,
                path_filter=path or None,
                type_exclude=exclude_type or None,
            )
        except RetrievalError as exc:
            console.print(err_query_failed(str(exc)))
            raise typer.Exit(1) from exc
    finally:
        conn.close()

    if json_output:
        typer.echo(json.dumps([asdict(r) for r in results], indent=2))
        return

    if not results:
        console.print("[yellow]No results.[/]")
        return

    for rank, result in enumerate(results, start=1):
        title = f"{rank}. {result.file_path_relative}"
        if result.entity_name:
            title += f" · {result.entity_name}"
        subtitle = f"score {result.score:.3f}" + (" · parent" if result.is_parent else "")
        body = result.ai_summary_text or result.chunk_text
        lines = body.splitlines()
        if len(lines) > _PREVIEW_LINES:
            body = "\n".join(lines[:_PREVIEW_LINES]) + f"\n… ({len(lines) - _PREVIEW_LINES} more lines)"
        console.print(Panel(Text(body), title=f"[bold]{escape(title)}[/]", subtitle=subtitle, expand=False))
