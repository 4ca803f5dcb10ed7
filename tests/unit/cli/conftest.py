"""Fixtures shared by CLI tests: isolated config, API key, patched LiteLLM."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import structlog

from codevault.db.connection import Database
from codevault.db.repository import Repository
from codevault.db.schema import initialize

CLI_MODEL = "openai/text-embedding-3-small"


def fake_vector(text: str) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [0.1 + digest[i] / 255.0 for i in range(4)]


@pytest.fixture(autouse=True)
def cli_env(tmp_path: Path, monkeypatch):
    """Point the global config at tmp_path, quiet logging, provide a fake key."""
    monkeypatch.setattr("codevault.config._GLOBAL_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("CODEVAULT_LOG_LEVEL", "ERROR")
    monkeypatch.delenv("CODEVAULT_AGENT_ID", raising=False)
    monkeypatch.delenv("CODEVAULT_EMBEDDING_MODEL", raising=False)
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / ".codevault.db"


@pytest.fixture
def mock_embedding():
    """Patch litellm.embedding to return one deterministic vector per input."""

    def _embedding(**kwargs):
        return MagicMock(data=[{"embedding": fake_vector(t)} for t in kwargs["input"]])

    with patch(
        "codevault.ingest.embedding_client.litellm.embedding", side_effect=_embedding
    ) as mock:
        yield mock


@pytest.fixture
def open_repo(db_path: Path):
    """Open a Repository on db_path (created if needed); closed after the test."""
    conns = []

    def _open() -> Repository:
        conn = Database(db_path).connect()
        initialize(conn)
        conns.append(conn)
        return Repository(conn, model_name=CLI_MODEL, sleep=lambda _s: None)

    yield _open
    for conn in conns:
        conn.close()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A small source tree with two Python files."""
    root = tmp_path / "proj"
    (root / "pkg").mkdir(parents=True)
    (root / "app.py").write_text(
        "def main():\n    print('hello from app')\n", encoding="utf-8"
    )
    (root / "pkg" / "util.py").write_text(
        "def add(a, b):\n    return a + b\n", encoding="utf-8"
    )
    return root
