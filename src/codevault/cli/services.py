"""Shared wiring for CLI commands: config, database, pipeline objects."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import typer
from rich.console import Console

from codevault.cli.errors import err_config, err_no_api_key, err_no_db
from codevault.config import CodevaultConfig, ConfigError, load_config
from codevault.db.connection import Database
from codevault.db.repository import Repository
from codevault.db.schema import initialize
from codevault.ingest.base import Chunker, WindowChunker
from codevault.ingest.embedding_client import (
    BatchEmbeddingClient,
    LiteLLMEmbeddingProvider,
    check_api_key,
)
from codevault.ingest.rate_limit import RateLimiter
from codevault.ingest.staging import StagingCache
from codevault.ingest.summarizer import SummarizingChunker
from codevault.logging import configure_logging

console = Console()

DEFAULT_DB = Path(".codevault.db")


def load_cfg(db_path: Path) -> CodevaultConfig:
    """Load config from the database's directory and configure logging.

    A ConfigError becomes an actionable CLI error.
    """
    try:
        cfg = load_config(db_path.resolve().parent)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    configure_logging(
        level=cfg.logging.level,
        json_format=cfg.logging.json,
        log_file=cfg.logging.file,
    )
    return cfg


def require_api_key(model: str) -> None:
    try:
        check_api_key(model)
    except RuntimeError as exc:
        provider = model.split("/")[0] if "/" in model else "openai"
        console.print(err_no_api_key(provider))
        raise typer.Exit(1) from exc


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open (or create) the index database and run migrations."""
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn


def build_embedder(cfg: CodevaultConfig) -> BatchEmbeddingClient:
    e = cfg.embedding
    return BatchEmbeddingClient(
        LiteLLMEmbeddingProvider(e.model, timeout=e.request_timeout),
        model_name=e.model,
        rate_limiter=RateLimiter(max_calls=e.requests_per_minute, window_seconds=60.0),
        max_batch_size=e.batch_size,
        max_tokens_per_batch=e.max_tokens_per_batch,
        max_retries=e.max_retries,
        backoff_seconds=e.backoff_seconds,
    )


def build_chunker(cfg: CodevaultConfig, summaries: bool) -> Chunker:
    chunker: Chunker = WindowChunker(chunk_size=cfg.ingest.chunk_size, overlap=cfg.ingest.overlap)
    if summaries:
        chunker = SummarizingChunker(chunker, model=cfg.ingest.summary_model)
    return chunker


def build_staging(repo: Repository, cfg: CodevaultConfig, db_path: Path) -> StagingCache:
    """Staging buffer lives next to the database it feeds."""
    return StagingCache(repo, db_path.parent / cfg.project.staging_path)


def require_db(db_path: Path) -> None:
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
