"""Per-model sqlite-vec virtual table management."""

from __future__ import annotations

import re
import sqlite3

_SLUG_RE = re.compile(r"[a-z0-9_]+")


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
        "ollama/nomic-embed-text" -> "ollama_nomic_embed_text"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_name(model_slug: str) -> str:
    """Return the full vec table name for a model slug."""
    return f"vec_embeddings_{model_slug}"


def vec_table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def list_vec_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the names of every vec_embeddings_* table, sorted.

    vec0 keeps its data in shadow tables that share the prefix; only the
    virtual tables themselves are returned.
    """
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' "
        "AND name LIKE 'vec\\_embeddings\\_%' ESCAPE '\\' "
        "AND sql LIKE 'CREATE VIRTUAL TABLE%' ORDER BY name"
    ).fetchall()
    return [r[0] for r in rows]


def ensure_vec_table(conn: sqlite3.Connection, model_slug: str, dimensions: int) -> str:
    """Create vec_embeddings_{model_slug} if it doesn't already exist.

    Vectors are compared by cosine distance, so similarity is ``1 - distance``.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        model_slug: Sanitized model identifier (use model_to_slug() to generate).
        dimensions: Embedding vector dimensions (e.g. 1536 for text-embedding-3-small).

    Returns:
        The table name (vec_embeddings_{model_slug}).
    """
    if not _SLUG_RE.fullmatch(model_slug):
        raise ValueError(
            f"Invalid model_slug '{model_slug}'. Use model_to_slug() to sanitize."
        )
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    table = vec_table_name(model_slug)
    if not vec_table_exists(conn, table):
        conn.execute(
            f"CREATE VIRTUAL TABLE {table} USING "
            f"vec0(embedding float[{dimensions}] distance_metric=cosine)"
        )
        conn.commit()

    return table
