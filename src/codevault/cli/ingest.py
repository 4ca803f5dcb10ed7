"""codevault ingest: sync a file or directory into .codevault.db.

A directory sync embeds new and changed files, reuses vectors of unchanged
chunks, and drops records of files that disappeared under the directory. A
single file that no longer exists has its records removed.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from codevault.cli.errors import err_not_under_root, err_path_not_found, warn_partial_ingest
from codevault.cli.services import (
    DEFAULT_DB,
    build_chunker,
    build_embedder,
    build_staging,
    console,
    load_cfg,
    open_db,
    require_api_key,
)
from codevault.db.repository import Repository
from codevault.ingest.orchestrator import FileStatus, IngestionOrchestrator, IngestionReport
from codevault.ingest.scanner import relative_posix


def ingest_cmd(
    path: Annotated[
        Path,
        typer.Argument(help="File or directory to sync."),
    ],
    root: Annotated[
        Path | None,
        typer.Option("--root", help="Project root stored paths are relative to (default: PATH for a directory, CWD for a file)."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .codevault.db (created if missing)."),
    ] = DEFAULT_DB,
    agent: Annotated[
        str | None,
        typer.Option("--agent", help="Agent id that owns the records."),
    ] = None,
    workers: Annotated[
        int | None,
        typer.Option("--workers", min=1, help="Files read and chunked concurrently."),
    ] = None,
    summaries: Annotated[
        bool | None,
        typer.Option("--summaries/--no-summaries", help="Add an LLM file summary as parent of each file's chunks."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Print the report as JSON."),
    ] = False,
) -> None:
    """Sync a file or directory into the embedding index."""
    cfg = load_cfg(db)
    agent_id = agent or cfg.project.agent_id
    use_summaries = cfg.ingest.summaries if summaries is None else summaries

    if not path.exists() and not db.exists():
        # Nothing indexed yet, so a missing path has nothing to remove either.
        console.print(err_path_not_found(str(path)))
        raise typer.Exit(1)
    is_dir = path.is_dir()
    project_root = root or (path if is_dir else Path.cwd())

    try:
        relative_posix(path, project_root)
    except ValueError as exc:
        console.print(err_not_under_root(str(path), str(project_root)))
        raise typer.Exit(1) from exc

    require_api_key(cfg.embedding.model)
    if use_summaries:
        require_api_key(cfg.ingest.summary_model)

    conn = open_db(db)
    try:
        repo = Repository(conn, model_name=cfg.embedding.model)
        orchestrator = IngestionOrchestrator(
            repo,
            build_staging(repo, cfg, db),
            build_embedder(cfg),
            chunker=build_chunker(cfg, use_summaries),
            agent_id=agent_id,
            workers=workers or cfg.ingest.workers,
            max_file_size=cfg.ingest.max_file_size,
            exclude=cfg.ingest.exclude,
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=console,
        ) as prog:
            prog.add_task(f"Syncing {path}…", total=None)
            if is_dir:
                report = orchestrator.ingest_directory(path, project_root)
            else:
                report = orchestrator.ingest_file(path, project_root)
    except PermissionError as exc:
        console.print(f"[red]Error:[/] Cannot read '{path}': {exc}")
        raise typer.Exit(1) from exc
    finally:
        conn.close()

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _show_report(report)

    if report.errors:
        raise typer.Exit(1)


def _show_report(report: IngestionReport) -> None:
    table = Table(title="Ingest report", show_header=False, expand=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("New embeddings", str(report.new_count))
    table.add_row("Reused embeddings", str(report.reused_count))
    table.add_row("Deleted embeddings", str(report.deleted_count))
    table.add_row("Failed embeddings", str(report.failed_embeddings))
    for status in (FileStatus.DONE, FileStatus.PARTIAL, FileStatus.SKIPPED, FileStatus.REMOVED, FileStatus.ERROR):
        n = report.count(status)
        if n:
            table.add_row(f"Files {status.value}", str(n))
    table.add_row("API requests", f"{report.request_count} ({report.retry_count} retries)")
    table.add_row("Tokens embedded", f"{report.tokens_processed:,}")
    if report.summarization_calls:
        table.add_row("Summaries", str(report.summarization_calls))
    table.add_row("Time", f"{report.total_time_ms / 1000:.1f}s")
    console.print(table)

    for sample in report.new_samples[:5]:
        label = sample.entity_name or sample.file_path_relative
        console.print(f"  [green]+[/] {sample.file_path_relative} [dim]{label}[/]")
    for sample in report.deleted_samples[:5]:
        label = sample.entity_name or sample.file_path_relative
        console.print(f"  [red]-[/] {sample.file_path_relative} [dim]{label}[/]")

    if report.failed_embeddings:
        console.print(warn_partial_ingest(report.failed_embeddings))
    for error in report.errors:
        console.print(f"  [red]✗[/] {error.path}: {error.message}")

