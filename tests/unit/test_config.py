"""Tests for codevault config loader."""

from __future__ import annotations

import stat
import warnings
from pathlib import Path

import pytest
import yaml

from codevault.config import (
    CodevaultConfig,
    ConfigError,
    EmbeddingCfg,
    RetrievalCfg,
    ensure_global_config,
    load_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("CODEVAULT_EMBEDDING_MODEL", "CODEVAULT_AGENT_ID", "CODEVAULT_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def missing_global(tmp_path: Path) -> Path:
    return tmp_path / "nonexistent" / "config.yaml"


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path, missing_global: Path) -> None:
    cfg = load_config(project_dir=tmp_path, global_config_path=missing_global)

    assert isinstance(cfg, CodevaultConfig)
    assert cfg.project.agent_id == "default"
    assert cfg.embedding == EmbeddingCfg()
    assert cfg.embedding.model == "openai/text-embedding-3-small"
    assert cfg.embedding.batch_size == 100
    assert cfg.embedding.max_tokens_per_batch == 20_000
    assert cfg.retrieval == RetrievalCfg()
    assert cfg.retrieval.parent_boost == 0.95
    assert cfg.retrieval.overfetch_factor == 2
    assert ".git" in cfg.ingest.exclude
    assert cfg.ingest.summaries is False
    assert cfg.logging.level == "INFO"
    assert cfg.logging.file is None


# ---------------------------------------------------------------------------
# Global config
# ---------------------------------------------------------------------------


def test_global_config_overrides_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"model": "voyage/voyage-code-3"}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.embedding.model == "voyage/voyage-code-3"
    assert cfg.embedding.batch_size == 100


def test_global_config_empty_file(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("", encoding="utf-8")

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.embedding.model == "openai/text-embedding-3-small"


@pytest.mark.parametrize(
    "bad_key",
    ["api_key", "openai_api_key", "apikey", "github_token", "token", "client_secret", "password"],
)
def test_global_config_rejects_credentials(tmp_path: Path, bad_key: str) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {bad_key: "sk-123"}})

    with pytest.raises(ConfigError, match="forbidden key"):
        load_config(project_dir=tmp_path, global_config_path=global_cfg)


def test_global_config_allows_token_budget_keys(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"max_tokens_per_batch": 5000}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.embedding.max_tokens_per_batch == 5000


def test_project_config_is_not_scanned_for_credentials(
    tmp_path: Path, missing_global: Path
) -> None:
    _write_yaml(tmp_path / "codevault.yaml", {"project": {"agent_id": "bot", "api_key": "x"}})

    cfg = load_config(project_dir=tmp_path, global_config_path=missing_global)
    assert cfg.project.agent_id == "bot"


def test_unknown_top_level_key_warns(tmp_path: Path, missing_global: Path) -> None:
    _write_yaml(tmp_path / "codevault.yaml", {"generation": {"model": "x"}})

    with pytest.warns(UserWarning, match="Unknown config key 'generation'"):
        load_config(project_dir=tmp_path, global_config_path=missing_global)


# ---------------------------------------------------------------------------
# Project layer
# ---------------------------------------------------------------------------


def test_project_config_overrides_global(tmp_path: Path) -> None:
    global_cfg = tmp_path / "global.yaml"
    _write_yaml(global_cfg, {"embedding": {"model": "openai/a", "batch_size": 50}})
    _write_yaml(tmp_path / "codevault.yaml", {"embedding": {"model": "openai/b"}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.embedding.model == "openai/b"
    assert cfg.embedding.batch_size == 50


def test_project_config_all_sections(tmp_path: Path, missing_global: Path) -> None:
    _write_yaml(
        tmp_path / "codevault.yaml",
        {
            "project": {"agent_id": "reviewer", "staging_path": "tmp/stage.json"},
            "embedding": {"request_timeout": None, "requests_per_minute": 10},
            "ingest": {"workers": 2, "exclude": ["dist"], "summaries": True},
            "retrieval": {"top_k": 8, "parent_boost": 0.9, "lexical_weight": 0.0},
            "logging": {"level": "DEBUG", "json": True, "file": "logs/cv.log"},
        },
    )

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        cfg = load_config(project_dir=tmp_path, global_config_path=missing_global)

    assert cfg.project.staging_path == "tmp/stage.json"
    assert cfg.embedding.request_timeout is None
    assert cfg.embedding.requests_per_minute == 10
    assert cfg.ingest.workers == 2
    assert cfg.ingest.exclude == ["dist"]
    assert cfg.ingest.summaries is True
    assert cfg.retrieval.top_k == 8
    assert cfg.retrieval.parent_boost == 0.9
    assert cfg.logging.json is True
    assert cfg.logging.file == "logs/cv.log"


def test_project_dir_defaults_to_cwd(tmp_path: Path, missing_global: Path, monkeypatch) -> None:
    _write_yaml(tmp_path / "codevault.yaml", {"project": {"agent_id": "from-cwd"}})
    monkeypatch.chdir(tmp_path)

    cfg = load_config(global_config_path=missing_global)
    assert cfg.project.agent_id == "from-cwd"


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def test_env_overrides_project_config(tmp_path: Path, missing_global: Path, monkeypatch) -> None:
    _write_yaml(
        tmp_path / "codevault.yaml",
        {"project": {"agent_id": "file"}, "embedding": {"model": "openai/file"}},
    )
    monkeypatch.setenv("CODEVAULT_AGENT_ID", "env-agent")
    monkeypatch.setenv("CODEVAULT_EMBEDDING_MODEL", "openai/env-model")
    monkeypatch.setenv("CODEVAULT_LOG_LEVEL", "WARNING")

    cfg = load_config(project_dir=tmp_path, global_config_path=missing_global)
    assert cfg.project.agent_id == "env-agent"
    assert cfg.embedding.model == "openai/env-model"
    assert cfg.logging.level == "WARNING"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "data, message",
    [
        ({"project": {"agent_id": "  "}}, "agent_id"),
        ({"embedding": {"batch_size": 0}}, "batch_size"),
        ({"embedding": {"batch_size": 4096}}, "batch_size"),
        ({"embedding": {"max_tokens_per_batch": 0}}, "max_tokens_per_batch"),
        ({"embedding": {"max_retries": -1}}, "max_retries"),
        ({"embedding": {"requests_per_minute": 0}}, "requests_per_minute"),
        ({"ingest": {"workers": 0}}, "workers"),
        ({"retrieval": {"top_k": 0}}, "top_k"),
        ({"retrieval": {"overfetch_factor": 0}}, "overfetch_factor"),
        ({"retrieval": {"parent_boost": 1.5}}, "parent_boost"),
    ],
)
def test_out_of_range_values_raise(
    tmp_path: Path, missing_global: Path, data: dict, message: str
) -> None:
    _write_yaml(tmp_path / "codevault.yaml", data)

    with pytest.raises(ConfigError, match=message):
        load_config(project_dir=tmp_path, global_config_path=missing_global)


def test_non_numeric_value_raises_config_error(tmp_path: Path, missing_global: Path) -> None:
    _write_yaml(tmp_path / "codevault.yaml", {"embedding": {"batch_size": "lots"}})

    with pytest.raises(ConfigError, match="Invalid config value"):
        load_config(project_dir=tmp_path, global_config_path=missing_global)


def test_yaml_tags_are_not_executed(tmp_path: Path, missing_global: Path) -> None:
    (tmp_path / "codevault.yaml").write_text(
        "project: !!python/object/apply:os.system ['echo hi']\n", encoding="utf-8"
    )

    with pytest.raises(yaml.YAMLError):
        load_config(project_dir=tmp_path, global_config_path=missing_global)


# ---------------------------------------------------------------------------
# ensure_global_config
# ---------------------------------------------------------------------------


def test_ensure_global_config_creates_file(tmp_path: Path) -> None:
    target = tmp_path / ".codevault" / "config.yaml"

    result = ensure_global_config(global_config_path=target)

    assert result == target
    assert target.exists()
    data = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert data["embedding"]["model"] == "openai/text-embedding-3-small"


def test_ensure_global_config_permissions(tmp_path: Path) -> None:
    target = tmp_path / ".codevault" / "config.yaml"
    ensure_global_config(global_config_path=target)

    assert stat.S_IMODE(target.stat().st_mode) == 0o600


def test_ensure_global_config_does_not_overwrite(tmp_path: Path) -> None:
    target = tmp_path / "config.yaml"
    target.write_text("embedding:\n  model: custom/model\n", encoding="utf-8")

    ensure_global_config(global_config_path=target)

    assert "custom/model" in target.read_text(encoding="utf-8")


def test_generated_global_config_loads_cleanly(tmp_path: Path) -> None:
    target = ensure_global_config(global_config_path=tmp_path / "g" / "config.yaml")

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        cfg = load_config(project_dir=tmp_path, global_config_path=target)
    assert cfg.ingest.summary_model == "openai/gpt-4o-mini"
