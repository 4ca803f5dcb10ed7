"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import uuid

import pytest

from codevault.db.connection import Database
from codevault.db.models import EmbeddingRecord, content_hash
from codevault.db.repository import Repository
from codevault.db.schema import initialize

MODEL = "openai/text-embedding-3-small"
DIMS = 4


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".codevault.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db, model_name=MODEL, sleep=lambda _s: None)


def vector_for(text: str) -> list[float]:
    """Deterministic, non-zero DIMS-dimensional vector for *text*."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [0.1 + digest[i] / 255.0 for i in range(DIMS)]


class FakeProvider:
    """EmbeddingProvider double: records every request, fails on demand.

    Attributes:
        calls: Texts of each embed() call, in order.
        fail_texts: Texts that come back without a vector.
        errors: Exceptions raised by the next calls, consumed in order.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.fail_texts: set[str] = set()
        self.errors: list[Exception] = []

    def embed(self, texts: list[str]) -> list[list[float] | None]:
        self.calls.append(list(texts))
        if self.errors:
            raise self.errors.pop(0)
        return [None if t in self.fail_texts else vector_for(t) for t in texts]

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def make_record():
    """Factory for EmbeddingRecords with a vector and sensible defaults."""

    def _make(
        text: str = "def hello():\n    return 1\n",
        path: str = "src/app.py",
        agent_id: str = "default",
        vector: list[float] | None = None,
        **overrides,
    ) -> EmbeddingRecord:
        fields = dict(
            embedding_id=str(uuid.uuid4()),
            agent_id=agent_id,
            file_path_relative=path,
            chunk_text=text,
            chunk_hash=content_hash(text),
            model_name=MODEL,
            vector=vector if vector is not None else vector_for(text),
            file_hash="filehash",
        )
        fields.update(overrides)
        return EmbeddingRecord(**fields)

    return _make
