"""Repository for all embedding index storage operations.

Single interface for: metadata rows, FTS5 lexical index, per-model vec tables.
Every write that touches more than one of them runs in one transaction so a
record's vector, metadata and FTS row are never out of sync.
"""

from __future__ import annotations

import json
import re
import sqlite3
import time
from collections.abc import Callable, Iterable, Sequence
from typing import TypeVar

import structlog

from codevault.db.models import EmbeddingRecord, EmbeddingStats, ScoredRecord
from codevault.db.vectors import (
    ensure_vec_table,
    list_vec_tables,
    model_to_slug,
    vec_table_exists,
    vec_table_name,
)

log = structlog.get_logger()

T = TypeVar("T")

_COLUMNS = (
    "id, embedding_id, agent_id, file_path_relative, full_file_path, entity_name, "
    "chunk_text, ai_summary_text, vector_dimensions, model_name, chunk_hash, "
    "file_hash, metadata_json, created_timestamp_unix, embedding_type, "
    "parent_embedding_id"
)

# SQLite's default host-parameter limit is 999 on older builds.
_MAX_PARAMS = 500
# vec0 rejects KNN queries with k above this.
_MAX_KNN = 4096
# Nearest neighbours per requested result on the first KNN pass.
_KNN_OVERFETCH = 5
_ENTITY_NAME_BOOST = 0.15

_MAX_ATTEMPTS = 3
_RETRY_BASE_DELAY = 0.5


class Repository:
    """Data access layer for the embedding index.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use. *model_name* selects the vec table used for
    similarity search and vector reads; inserts go to the table of each
    record's own ``model_name``.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        model_name: str = "openai/text-embedding-3-small",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see codevault.db.schema.initialize).
            model_name: Embedding model whose vec table is searched.
            sleep: Called between retries of a locked database.
        """
        self._conn = conn
        self._model_name = model_name
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def vec_table(self) -> str:
        return vec_table_name(model_to_slug(self._model_name))

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    def bulk_insert(self, records: Sequence[EmbeddingRecord]) -> int:
        """Insert *records* (metadata + FTS + vector) as one transaction.

        On any failure the whole batch is rolled back and the error re-raised.

        Returns:
            Number of records inserted.
        """
        if not records:
            return 0
        for record in records:
            if not record.vector:
                raise ValueError(f"Record {record.embedding_id} has no vector")
            if len(record.vector) != record.vector_dimensions:
                raise ValueError(
                    f"Record {record.embedding_id}: vector has {len(record.vector)} "
                    f"values, vector_dimensions is {record.vector_dimensions}"
                )

        tables: dict[str, str] = {}
        for record in records:
            if record.model_name not in tables:
                tables[record.model_name] = ensure_vec_table(
                    self._conn, model_to_slug(record.model_name), record.vector_dimensions
                )

        def _insert() -> list[int]:
            rowids: list[int] = []
            with self._conn:
                for r in records:
                    cur = self._conn.execute(
                        """
                        INSERT INTO embeddings (
                            embedding_id, agent_id, file_path_relative, full_file_path,
                            entity_name, chunk_text, ai_summary_text, vector_dimensions,
                            model_name, chunk_hash, file_hash, metadata_json,
                            created_timestamp_unix, embedding_type, parent_embedding_id
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            r.embedding_id,
                            r.agent_id,
                            r.file_path_relative,
                            r.full_file_path,
                            r.entity_name,
                            r.chunk_text,
                            r.ai_summary_text,
                            r.vector_dimensions,
                            r.model_name,
                            r.chunk_hash,
                            r.file_hash,
                            r.metadata_json,
                            r.created_timestamp_unix,
                            r.embedding_type,
                            r.parent_embedding_id,
                        ),
                    )
                    rowid = cur.lastrowid
                    self._conn.execute(
                        "INSERT INTO embeddings_fts(rowid, chunk_text, entity_name) VALUES (?, ?, ?)",
                        (rowid, r.chunk_text, r.entity_name or ""),
                    )
                    self._conn.execute(
                        f"INSERT INTO {tables[r.model_name]}(rowid, embedding) VALUES (?, ?)",
                        (rowid, json.dumps(r.vector)),
                    )
                    rowids.append(rowid)
            return rowids

        rowids = self._with_retry("bulk_insert", _insert)
        for record, rowid in zip(records, rowids):
            record.rowid = rowid
        log.debug("repository.bulk_insert", count=len(records))
        return len(records)

    def bulk_delete(self, embedding_ids: Iterable[str]) -> int:
        """Delete vector, FTS and metadata rows for each id in one transaction.

        Children whose parent is deleted keep their row; their
        ``parent_embedding_id`` is cleared.

        Returns:
            Number of metadata rows removed (unknown ids are ignored).
        """
        ids = list(dict.fromkeys(embedding_ids))
        if not ids:
            return 0

        rowids: list[int] = []
        for group in _chunked(ids):
            placeholders = ",".join("?" * len(group))
            rowids.extend(
                r[0]
                for r in self._conn.execute(
                    f"SELECT id FROM embeddings WHERE embedding_id IN ({placeholders})",
                    group,
                ).fetchall()
            )
        if not rowids:
            return 0

        vec_tables = list_vec_tables(self._conn)

        def _delete() -> int:
            removed = 0
            with self._conn:
                for group in _chunked(rowids):
                    placeholders = ",".join("?" * len(group))
                    for table in vec_tables:
                        self._conn.execute(
                            f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                            group,
                        )
                    self._conn.execute(
                        f"DELETE FROM embeddings_fts WHERE rowid IN ({placeholders})", group
                    )
                    cur = self._conn.execute(
                        f"DELETE FROM embeddings WHERE id IN ({placeholders})", group
                    )
                    removed += cur.rowcount
                for group in _chunked(ids):
                    placeholders = ",".join("?" * len(group))
                    self._conn.execute(
                        "UPDATE embeddings SET parent_embedding_id = NULL "
                        f"WHERE parent_embedding_id IN ({placeholders})",
                        group,
                    )
            return removed

        removed = self._with_retry("bulk_delete", _delete)
        log.debug("repository.bulk_delete", requested=len(ids), removed=removed)
        return removed

    def update_file_hash(self, embedding_ids: Iterable[str], file_hash: str) -> int:
        """Set ``file_hash`` on existing records (chunk content unchanged).

        Returns:
            Number of rows updated.
        """
        ids = list(embedding_ids)
        if not ids:
            return 0

        def _update() -> int:
            updated = 0
            with self._conn:
                for group in _chunked(ids):
                    placeholders = ",".join("?" * len(group))
                    cur = self._conn.execute(
                        f"UPDATE embeddings SET file_hash = ? WHERE embedding_id IN ({placeholders})",
                        [file_hash, *group],
                    )
                    updated += cur.rowcount
            return updated

        return self._with_retry("update_file_hash", _update)

    def update_parent_ids(self, parents: dict[str, str | None]) -> int:
        """Re-point ``parent_embedding_id`` for each ``{embedding_id: parent_id}``."""
        if not parents:
            return 0

        def _update() -> int:
            updated = 0
            with self._conn:
                for embedding_id, parent_id in parents.items():
                    cur = self._conn.execute(
                        "UPDATE embeddings SET parent_embedding_id = ? WHERE embedding_id = ?",
                        (parent_id, embedding_id),
                    )
                    updated += cur.rowcount
            return updated

        return self._with_retry("update_parent_ids", _update)

    def delete_embeddings_for_paths(self, agent_id: str, paths: Iterable[str]) -> int:
        """Delete every record of *agent_id* under the given relative paths."""
        ids: list[str] = []
        for path in paths:
            ids.extend(r.embedding_id for r in self.get_embeddings_for_file(path, agent_id))
        return self.bulk_delete(ids)

    def delete_agent(self, agent_id: str) -> int:
        """Purge all records owned by *agent_id*. Returns rows removed."""
        ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT embedding_id FROM embeddings WHERE agent_id = ?", (agent_id,)
            ).fetchall()
        ]
        return self.bulk_delete(ids)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_embeddings_for_file(
        self, path: str, agent_id: str | None = None, model_name: str | None = None
    ) -> list[EmbeddingRecord]:
        """Return all records for relative *path*, oldest first (vectors not loaded).

        Args:
            path: Relative file path as stored at ingestion time.
            agent_id: Restrict to one agent; None returns every agent's records.
            model_name: Restrict to one embedding model; None returns all.
        """
        sql = f"SELECT {_COLUMNS} FROM embeddings WHERE file_path_relative = ?"
        params: list[object] = [path]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        if model_name is not None:
            sql += " AND model_name = ?"
            params.append(model_name)
        sql += " ORDER BY id"
        return [_row_to_record(r) for r in self._conn.execute(sql, params).fetchall()]

    def get_embeddings_by_ids(self, embedding_ids: Iterable[str]) -> list[EmbeddingRecord]:
        """Direct lookup by id, in request order. Unknown ids are skipped."""
        ids = list(dict.fromkeys(embedding_ids))
        found: dict[str, EmbeddingRecord] = {}
        for group in _chunked(ids):
            placeholders = ",".join("?" * len(group))
            for row in self._conn.execute(
                f"SELECT {_COLUMNS} FROM embeddings WHERE embedding_id IN ({placeholders})",
                group,
            ).fetchall():
                found[row["embedding_id"]] = _row_to_record(row)
        return [found[i] for i in ids if i in found]

    def has_embedding(self, embedding_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM embeddings WHERE embedding_id = ?", (embedding_id,)
        ).fetchone()
        return row is not None

    def has_chunk_hash(self, chunk_hash: str) -> bool:
        """True if a vector for *chunk_hash* exists for this repository's model."""
        row = self._conn.execute(
            "SELECT 1 FROM embeddings WHERE chunk_hash = ? AND model_name = ? LIMIT 1",
            (chunk_hash, self._model_name),
        ).fetchone()
        return row is not None

    def get_embedding_by_hash(self, chunk_hash: str) -> EmbeddingRecord | None:
        """Return the newest record for *chunk_hash* with its vector loaded.

        Used to reuse an already-computed vector for identical text anywhere in
        the index. Returns None if no record (or no vector row) exists.
        """
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM embeddings WHERE chunk_hash = ? AND model_name = ? "
            "ORDER BY id DESC LIMIT 1",
            (chunk_hash, self._model_name),
        ).fetchone()
        if row is None or not vec_table_exists(self._conn, self.vec_table):
            return None
        vec_row = self._conn.execute(
            f"SELECT vec_to_json(embedding) FROM {self.vec_table} WHERE rowid = ?",
            (row["id"],),
        ).fetchone()
        if vec_row is None:
            return None
        return _row_to_record(row, vector=json.loads(vec_row[0]))

    def get_latest_file_hashes(self, agent_id: str) -> dict[str, str]:
        """Materialise the file-hash index: ``{file_path_relative: file_hash}``.

        Only records of this repository's model count, so a path indexed with
        another model is reported as not yet ingested. When a path's records
        disagree, the most recently written one wins.
        """
        rows = self._conn.execute(
            """
            SELECT file_path_relative, file_hash FROM embeddings
            WHERE agent_id = ? AND model_name = ?
            ORDER BY created_timestamp_unix, id
            """,
            (agent_id, self._model_name),
        ).fetchall()
        index: dict[str, str] = {}
        for row in rows:
            index[row["file_path_relative"]] = row["file_hash"]
        return index

    def get_all_file_paths_for_agent(self, agent_id: str) -> list[str]:
        """Distinct relative paths currently indexed for *agent_id*, sorted."""
        rows = self._conn.execute(
            "SELECT DISTINCT file_path_relative FROM embeddings WHERE agent_id = ? "
            "ORDER BY file_path_relative",
            (agent_id,),
        ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    def find_similar_embeddings_with_metadata(
        self,
        query_vector: list[float],
        query_text: str,
        top_k: int,
        agent_id: str | None = None,
        path_filter: Sequence[str] | None = None,
        type_exclude: Sequence[str] | None = None,
        lexical_weight: float = 0.1,
    ) -> list[ScoredRecord]:
        """Nearest-neighbour search with metadata filters and a lexical signal.

        score = min(1, cosine_similarity + lexical_weight * bm25_signal + name_boost)

        where bm25_signal is the FTS5 bm25 score normalised to (0, 1] across
        the candidates and name_boost rewards an entity name that appears in
        the query.

        Args:
            query_vector: Embedding of *query_text* from the repository's model.
            query_text: Raw query, used for the lexical and entity-name signals.
            top_k: Maximum results to return.
            agent_id: Restrict to one agent.
            path_filter: Relative paths to restrict to; a path also matches
                everything beneath it.
            type_exclude: Embedding types ("chunk"/"summary") or metadata
                ``type`` values to drop.
            lexical_weight: Weight of the bm25 signal.

        Returns:
            ScoredRecords sorted by descending score (vectors not loaded).
        """
        if top_k < 1 or not vec_table_exists(self._conn, self.vec_table):
            return []

        where, where_params = _search_filters(self._model_name, agent_id, path_filter, type_exclude)
        query_json = json.dumps(query_vector)

        # Widen the neighbourhood until enough candidates survive the filters;
        # past vec0's k limit, fall back to a filtered scan of the vec table.
        k = min(top_k * _KNN_OVERFETCH, _MAX_KNN)
        while True:
            vec_rows = self._knn(query_json, k)
            if not vec_rows:
                return []
            similarity = _similarities(vec_rows)
            rows = self._filtered_rows(list(similarity), where, where_params)
            if len(rows) >= top_k or len(vec_rows) < k:
                break
            if k >= _MAX_KNN:
                vec_rows = self._filtered_scan(
                    query_json, top_k * _KNN_OVERFETCH, where, where_params
                )
                similarity = _similarities(vec_rows)
                rows = self._filtered_rows(list(similarity), where, where_params)
                break
            k = min(k * 4, _MAX_KNN)
        if not rows:
            return []

        lexical = self._lexical_scores([r["id"] for r in rows], query_text)
        query_lower = query_text.lower()
        tokens = set(_tokenize(query_text))

        results: list[ScoredRecord] = []
        for row in rows:
            record = _row_to_record(row)
            sim = similarity[row["id"]]
            score = sim + lexical_weight * lexical.get(row["id"], 0.0)
            score += _entity_boost(record.entity_name, query_lower, tokens)
            results.append(ScoredRecord(record=record, score=min(1.0, score), similarity=sim))

        results.sort(key=lambda s: (-s.score, -s.similarity, s.record.rowid or 0))
        return results[:top_k]

    def _knn(self, query_json: str, k: int) -> list[sqlite3.Row]:
        return self._with_retry(
            "find_similar.knn",
            lambda: self._conn.execute(
                f"SELECT rowid, distance FROM {self.vec_table} "
                "WHERE embedding MATCH ? AND k = ? ORDER BY distance",
                (query_json, k),
            ).fetchall(),
        )

    def _filtered_scan(
        self, query_json: str, limit: int, where: str, where_params: list[object]
    ) -> list[sqlite3.Row]:
        """Exact search over every vector whose record passes *where*."""
        return self._with_retry(
            "find_similar.scan",
            lambda: self._conn.execute(
                "SELECT v.rowid AS rowid, vec_distance_cosine(v.embedding, ?) AS distance "
                f"FROM {self.vec_table} v JOIN embeddings ON embeddings.id = v.rowid "
                f"WHERE {where} ORDER BY 2 LIMIT ?",
                [query_json, *where_params, limit],
            ).fetchall(),
        )

    def _filtered_rows(
        self, rowids: list[int], where: str, where_params: list[object]
    ) -> list[sqlite3.Row]:
        """Metadata rows for *rowids* that pass *where*."""
        rows: list[sqlite3.Row] = []
        for group in _chunked(rowids):
            placeholders = ",".join("?" * len(group))
            rows.extend(
                self._conn.execute(
                    f"SELECT {_COLUMNS} FROM embeddings WHERE id IN ({placeholders}) AND {where}",
                    [*group, *where_params],
                ).fetchall()
            )
        return rows

    def _lexical_scores(self, rowids: list[int], query_text: str) -> dict[int, float]:
        """bm25 over *rowids* normalised so the best match scores 1.0."""
        tokens = list(dict.fromkeys(t for t in _tokenize(query_text) if len(t) > 1))
        if not tokens or not rowids:
            return {}
        # FTS5 MATCH treats punctuation as syntax; quote each bare token.
        fts_query = " OR ".join(f'"{t}"' for t in tokens)
        rows: list[sqlite3.Row] = []
        for group in _chunked(rowids):
            placeholders = ",".join("?" * len(group))
            rows.extend(
                self._conn.execute(
                    "SELECT rowid, bm25(embeddings_fts) AS score FROM embeddings_fts "
                    f"WHERE embeddings_fts MATCH ? AND rowid IN ({placeholders})",
                    [fts_query, *group],
                ).fetchall()
            )
        if not rows:
            return {}
        # bm25() is negative; more negative = better.
        best = min(r["score"] for r in rows)
        if best >= 0:
            return {}
        return {r["rowid"]: r["score"] / best for r in rows}

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_statistics(self, agent_id: str) -> EmbeddingStats:
        """Totals, per-type and per-file counts, and average chunk length."""
        stats = EmbeddingStats()
        row = self._conn.execute(
            "SELECT COUNT(*), AVG(LENGTH(chunk_text)), COUNT(DISTINCT file_path_relative) "
            "FROM embeddings WHERE agent_id = ?",
            (agent_id,),
        ).fetchone()
        stats.total = row[0] or 0
        stats.average_chunk_size = float(row[1] or 0.0)
        stats.file_count = row[2] or 0
        for r in self._conn.execute(
            "SELECT embedding_type, COUNT(*) FROM embeddings WHERE agent_id = ? "
            "GROUP BY embedding_type ORDER BY embedding_type",
            (agent_id,),
        ).fetchall():
            stats.by_type[r[0]] = r[1]
        for r in self._conn.execute(
            "SELECT file_path_relative, COUNT(*) FROM embeddings WHERE agent_id = ? "
            "GROUP BY file_path_relative ORDER BY file_path_relative",
            (agent_id,),
        ).fetchall():
            stats.by_file[r[0]] = r[1]
        return stats

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _with_retry(self, op_name: str, fn: Callable[[], T]) -> T:
        """Run *fn*, retrying with exponential backoff while the DB is locked."""
        attempt = 1
        while True:
            try:
                return fn()
            except sqlite3.OperationalError as exc:
                message = str(exc).lower()
                if attempt >= _MAX_ATTEMPTS or ("locked" not in message and "busy" not in message):
                    raise
                delay = _RETRY_BASE_DELAY * 2 ** (attempt - 1)
                log.warning("repository.retry", op=op_name, attempt=attempt, delay=delay, error=str(exc))
                self._sleep(delay)
                attempt += 1


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _chunked(items: Sequence[T], size: int = _MAX_PARAMS) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _tokenize(text: str) -> list[str]:
    return re.findall(r"\w+", text.lower())


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _search_filters(
    model_name: str,
    agent_id: str | None,
    path_filter: Sequence[str] | None,
    type_exclude: Sequence[str] | None,
) -> tuple[str, list[object]]:
    """WHERE clause over ``embeddings`` columns for a similarity search."""
    sql = "model_name = ?"
    params: list[object] = [model_name]
    if agent_id is not None:
        sql += " AND agent_id = ?"
        params.append(agent_id)
    if path_filter:
        clauses = []
        for path in path_filter:
            clauses.append("(file_path_relative = ? OR file_path_relative LIKE ? ESCAPE '\\')")
            params.extend([path.rstrip("/"), _like_escape(path.rstrip("/")) + "/%"])
        sql += " AND (" + " OR ".join(clauses) + ")"
    if type_exclude:
        types = list(type_exclude)
        marks = ",".join("?" * len(types))
        sql += (
            f" AND embedding_type NOT IN ({marks})"
            f" AND COALESCE(json_extract(metadata_json, '$.type'), '') NOT IN ({marks})"
        )
        params.extend(types)
        params.extend(types)
    return sql, params


def _similarities(vec_rows: Sequence[sqlite3.Row]) -> dict[int, float]:
    """Cosine distance to similarity, clamped to [0, 1]."""
    return {r["rowid"]: max(0.0, min(1.0, 1.0 - r["distance"])) for r in vec_rows}


def _entity_boost(entity_name: str | None, query_lower: str, tokens: set[str]) -> float:
    if not entity_name:
        return 0.0
    name = entity_name.lower()
    if name in tokens or (len(name) > 3 and name in query_lower):
        return _ENTITY_NAME_BOOST
    return 0.0


def _row_to_record(row: sqlite3.Row, vector: list[float] | None = None) -> EmbeddingRecord:
    return EmbeddingRecord(
        embedding_id=row["embedding_id"],
        agent_id=row["agent_id"],
        file_path_relative=row["file_path_relative"],
        full_file_path=row["full_file_path"],
        entity_name=row["entity_name"],
        chunk_text=row["chunk_text"],
        ai_summary_text=row["ai_summary_text"],
        vector=vector or [],
        vector_dimensions=row["vector_dimensions"],
        model_name=row["model_name"],
        chunk_hash=row["chunk_hash"],
        file_hash=row["file_hash"],
        metadata_json=row["metadata_json"],
        created_timestamp_unix=row["created_timestamp_unix"],
        embedding_type=row["embedding_type"],
        parent_embedding_id=row["parent_embedding_id"],
        rowid=row["id"],
    )
