"""Parent-document retrieval over the embedding index.

  1. Embed the query (single-item batch through the BatchEmbeddingClient).
  2. Over-fetch ``top_k * overfetch_factor`` hybrid-scored candidates.
  3. Fetch the parents the candidates point at, scored with a fixed boost so
     structural context is not crowded out by near-duplicate leaf chunks.
  4. Dedupe by id (higher score wins), sort, truncate to ``top_k``.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from codevault.db.models import EmbeddingRecord
from codevault.db.repository import Repository
from codevault.ingest.embedding_client import BatchEmbeddingClient

log = structlog.get_logger()


class RetrievalError(RuntimeError):
    """Raised when a query cannot be answered at all (no query vector)."""


@dataclass
class RetrieverConfig:
    """Configuration for parent-document retrieval.

    Attributes:
        top_k: Results returned when the caller does not pass one.
        overfetch_factor: Candidates fetched per requested result.
        parent_boost: Score given to parents pulled in by a candidate.
        lexical_weight: Weight of the bm25 signal in candidate scores.
    """

    top_k: int = 5
    overfetch_factor: int = 2
    parent_boost: float = 0.95
    lexical_weight: float = 0.1


@dataclass
class RetrievedChunk:
    """One retrieval result."""

    embedding_id: str
    chunk_text: str
    file_path_relative: str
    score: float
    entity_name: str | None = None
    ai_summary_text: str | None = None
    embedding_type: str = "chunk"
    metadata: dict[str, Any] = field(default_factory=dict)
    is_parent: bool = False

    @classmethod
    def from_record(
        cls, record: EmbeddingRecord, score: float, is_parent: bool = False
    ) -> RetrievedChunk:
        return cls(
            embedding_id=record.embedding_id,
            chunk_text=record.chunk_text,
            file_path_relative=record.file_path_relative,
            score=score,
            entity_name=record.entity_name,
            ai_summary_text=record.ai_summary_text,
            embedding_type=record.embedding_type,
            metadata=record.metadata.to_dict(),
            is_parent=is_parent,
        )


class RetrievalOrchestrator:
    """Answer free-text or code queries from the index.

    Args:
        repo: Repository searched; its model must match *embedder*'s.
        embedder: Embeds the query text.
        config: Retrieval tuning.
    """

    def __init__(
        self,
        repo: Repository,
        embedder: BatchEmbeddingClient,
        config: RetrieverConfig | None = None,
    ) -> None:
        self._repo = repo
        self._embedder = embedder
        self.config = config or RetrieverConfig()

    def retrieve(
        self,
        agent_id: str,
        query: str,
        top_k: int | None = None,
        path_filter: Sequence[str] | None = None,
        type_exclude: Sequence[str] | None = None,
    ) -> list[RetrievedChunk]:
        """Return up to *top_k* results, best first, without duplicate ids.

        Raises:
            ValueError: If *query* is blank or *top_k* < 1.
            RetrievalError: If the query could not be embedded.
        """
        k = top_k if top_k is not None else self.config.top_k
        if k < 1:
            raise ValueError(f"top_k must be >= 1, got {k}")
        if not query.strip():
            raise ValueError("query must not be empty")

        embedding = self._embedder.embed_query(query, operation="query")
        if embedding is None:
            raise RetrievalError(
                f"Could not embed the query with model '{self._embedder.model_name}'."
            )

        candidates = self._repo.find_similar_embeddings_with_metadata(
            embedding.vector,
            query,
            k * self.config.overfetch_factor,
            agent_id=agent_id,
            path_filter=path_filter,
            type_exclude=type_exclude,
            lexical_weight=self.config.lexical_weight,
        )

        merged: dict[str, RetrievedChunk] = {}
        for hit in candidates:
            _keep_best(merged, RetrievedChunk.from_record(hit.record, hit.score))

        parent_ids = list(
            dict.fromkeys(
                hit.record.parent_embedding_id
                for hit in candidates
                if hit.record.parent_embedding_id
            )
        )
        excluded = set(type_exclude or ())
        for parent in self._fetch_parents(parent_ids, agent_id):
            if parent.embedding_type in excluded or parent.metadata.type in excluded:
                continue
            _keep_best(
                merged,
                RetrievedChunk.from_record(parent, self.config.parent_boost, is_parent=True),
            )

        results = sorted(merged.values(), key=lambda r: (-r.score, r.embedding_id))[:k]
        log.info(
            "retrieve.done",
            agent_id=agent_id,
            candidates=len(candidates),
            parents=len(parent_ids),
            returned=len(results),
        )
        return results

    def _fetch_parents(self, parent_ids: list[str], agent_id: str) -> list[EmbeddingRecord]:
        """Parent records for *parent_ids*; on a lookup failure, none."""
        if not parent_ids:
            return []
        try:
            parents = self._repo.get_embeddings_by_ids(parent_ids)
        except sqlite3.Error as exc:
            log.warning("retrieve.parent_fetch_failed", count=len(parent_ids), error=str(exc))
            return []
        return [p for p in parents if p.agent_id == agent_id]


def _keep_best(merged: dict[str, RetrievedChunk], item: RetrievedChunk) -> None:
    current = merged.get(item.embedding_id)
    if current is None or item.score > current.score:
        merged[item.embedding_id] = item
