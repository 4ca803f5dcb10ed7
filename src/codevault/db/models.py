"""Domain models for the codevault database layer."""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any

EMBEDDING_TYPES = ("chunk", "summary")

# Keys that ChunkMetadata models explicitly; everything else lives in extras.
_KNOWN_META_KEYS = ("type", "start_line", "end_line", "language", "full_name")


def content_hash(text: str) -> str:
    """SHA-256 hex digest of *text* (UTF-8). Used for chunk and file hashes."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class ChunkMetadata:
    """Typed metadata envelope stored as ``metadata_json``.

    Attributes:
        type: Discriminator such as "full_file", "window", "function",
            or "<type>_summary".
        start_line: First source line covered (1-based), if known.
        end_line: Last source line covered (inclusive), if known.
        language: Language tag from the language detector.
        full_name: Qualified entity name (e.g. "module.Class.method").
        extras: Chunker-specific keys that have no dedicated field.
    """

    type: str = "chunk"
    start_line: int | None = None
    end_line: int | None = None
    language: str | None = None
    full_name: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extras)
        for key in _KNOWN_META_KEYS:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChunkMetadata:
        extras = {k: v for k, v in data.items() if k not in _KNOWN_META_KEYS}
        return cls(
            type=str(data.get("type", "chunk")),
            start_line=data.get("start_line"),
            end_line=data.get("end_line"),
            language=data.get("language"),
            full_name=data.get("full_name"),
            extras=extras,
        )

    @classmethod
    def from_json(cls, text: str | None) -> ChunkMetadata:
        """Parse ``metadata_json``; malformed or non-object JSON yields defaults."""
        if not text:
            return cls()
        try:
            data = json.loads(text)
        except ValueError:
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls.from_dict(data)


@dataclass
class Chunk:
    """Candidate unit of text produced by a chunker.

    ``chunk_id`` is a key local to one file's chunk list; ``parent_chunk_id``
    refers to another chunk of the same file by that key. When ``chunk_id``
    is not given, the chunk hash stands in for it.
    """

    text: str
    entity_name: str | None = None
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    embedding_type: str = "chunk"
    ai_summary_text: str | None = None
    chunk_id: str | None = None
    parent_chunk_id: str | None = None

    def __post_init__(self) -> None:
        if self.embedding_type not in EMBEDDING_TYPES:
            raise ValueError(
                f"embedding_type must be one of {EMBEDDING_TYPES}, got {self.embedding_type!r}"
            )

    @property
    def chunk_hash(self) -> str:
        return content_hash(self.text)

    @property
    def key(self) -> str:
        return self.chunk_id or self.chunk_hash


@dataclass
class EmbeddingRecord:
    """The persisted unit: one chunk's vector plus its metadata."""

    embedding_id: str
    agent_id: str
    file_path_relative: str
    chunk_text: str
    chunk_hash: str
    model_name: str
    vector: list[float] = field(default_factory=list)
    vector_dimensions: int = 0
    full_file_path: str = ""
    entity_name: str | None = None
    ai_summary_text: str | None = None
    file_hash: str = ""
    metadata_json: str = "{}"
    created_timestamp_unix: int = field(default_factory=lambda: int(time.time()))
    embedding_type: str = "chunk"
    parent_embedding_id: str | None = None
    rowid: int | None = None  # set after insert; None for unsaved records

    def __post_init__(self) -> None:
        if self.vector and not self.vector_dimensions:
            self.vector_dimensions = len(self.vector)

    @property
    def metadata(self) -> ChunkMetadata:
        return ChunkMetadata.from_json(self.metadata_json)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("rowid")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmbeddingRecord:
        """Rebuild a record from ``to_dict()`` output.

        Raises:
            KeyError: If a required field is missing.
        """
        return cls(
            embedding_id=str(data["embedding_id"]),
            agent_id=str(data["agent_id"]),
            file_path_relative=str(data["file_path_relative"]),
            chunk_text=str(data["chunk_text"]),
            chunk_hash=str(data["chunk_hash"]),
            model_name=str(data["model_name"]),
            vector=[float(x) for x in data.get("vector") or []],
            vector_dimensions=int(data.get("vector_dimensions") or 0),
            full_file_path=str(data.get("full_file_path") or ""),
            entity_name=data.get("entity_name"),
            ai_summary_text=data.get("ai_summary_text"),
            file_hash=str(data.get("file_hash") or ""),
            metadata_json=str(data.get("metadata_json") or "{}"),
            created_timestamp_unix=int(data.get("created_timestamp_unix") or time.time()),
            embedding_type=str(data.get("embedding_type") or "chunk"),
            parent_embedding_id=data.get("parent_embedding_id"),
        )


@dataclass
class ScoredRecord:
    """A search hit: the stored record with its final and raw similarity."""

    record: EmbeddingRecord
    score: float
    similarity: float = 0.0


@dataclass
class EmbeddingStats:
    """Aggregate counts for one agent's index."""

    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_file: dict[str, int] = field(default_factory=dict)
    average_chunk_size: float = 0.0
    file_count: int = 0
