"""Forward-only migration runner for codevault's database schema.

Vec tables (vec_embeddings_*) are NOT migration-managed; use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

# id is the stable integer key shared with embeddings_fts and the vec tables;
# embedding_id is the public identifier.
_V1_SQL = """
CREATE TABLE IF NOT EXISTS embeddings (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    embedding_id            TEXT NOT NULL UNIQUE,
    agent_id                TEXT NOT NULL,
    file_path_relative      TEXT NOT NULL,
    full_file_path          TEXT NOT NULL DEFAULT '',
    entity_name             TEXT,
    chunk_text              TEXT NOT NULL,
    ai_summary_text         TEXT,
    vector_dimensions       INTEGER NOT NULL,
    model_name              TEXT NOT NULL,
    chunk_hash              TEXT NOT NULL,
    file_hash               TEXT NOT NULL DEFAULT '',
    metadata_json           TEXT NOT NULL DEFAULT '{}',
    created_timestamp_unix  INTEGER NOT NULL,
    embedding_type          TEXT NOT NULL DEFAULT 'chunk'
                            CHECK (embedding_type IN ('chunk', 'summary')),
    parent_embedding_id     TEXT
);

CREATE INDEX IF NOT EXISTS idx_embeddings_path_agent
    ON embeddings (file_path_relative, agent_id);
CREATE INDEX IF NOT EXISTS idx_embeddings_chunk_hash ON embeddings (chunk_hash);
CREATE INDEX IF NOT EXISTS idx_embeddings_agent ON embeddings (agent_id);
CREATE INDEX IF NOT EXISTS idx_embeddings_parent ON embeddings (parent_embedding_id);

CREATE VIRTUAL TABLE IF NOT EXISTS embeddings_fts
    USING fts5(chunk_text, entity_name, tokenize='porter unicode61');
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row[0] is not None else 0


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here; use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    current = current_version(conn)

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
