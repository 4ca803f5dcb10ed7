"""codevault configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (CODEVAULT_EMBEDDING_MODEL, CODEVAULT_AGENT_ID,
                             CODEVAULT_LOG_LEVEL)
  3. Per-project codevault.yaml  (next to .codevault.db)
  4. Global ~/.codevault/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".codevault"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "codevault.yaml"

# Fields that suggest an API key, forbidden in global config.
# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s).
# Does NOT match legitimate config keys like max_tokens_per_batch.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token, auth_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # my_secret, client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["project", "embedding", "ingest", "retrieval", "logging"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ProjectCfg:
    """Project-level settings (codevault.yaml: project:).

    Attributes:
        agent_id: Tenant scope every record is written under.
        staging_path: Staging buffer file, relative to the project directory.
    """

    agent_id: str = "default"
    staging_path: str = ".codevault/staging.json"


@dataclass
class EmbeddingCfg:
    """Embedding client configuration (codevault.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    batch_size: int = 100
    max_tokens_per_batch: int = 20_000
    max_retries: int = 2
    backoff_seconds: float = 6.0
    requests_per_minute: int = 60
    request_timeout: float | None = 60.0


@dataclass
class IngestCfg:
    """Ingestion configuration (codevault.yaml: ingest:)."""

    workers: int = 4
    max_file_size: int = 1024 * 1024
    exclude: list[str] = field(
        default_factory=lambda: [".git", "node_modules", "__pycache__", ".venv", ".codevault*"]
    )
    chunk_size: int = 512
    overlap: float = 0.10
    summaries: bool = False
    summary_model: str = "openai/gpt-4o-mini"


@dataclass
class RetrievalCfg:
    """Retrieval configuration (codevault.yaml: retrieval:)."""

    top_k: int = 5
    overfetch_factor: int = 2
    parent_boost: float = 0.95
    lexical_weight: float = 0.1


@dataclass
class LoggingCfg:
    """Logging configuration (codevault.yaml: logging:)."""

    level: str = "INFO"
    json: bool = False
    file: str | None = None


@dataclass
class CodevaultConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    project: ProjectCfg = field(default_factory=ProjectCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    ingest: IngestCfg = field(default_factory=IngestCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names.

    Global config must never store credentials; they belong in env vars.
    """

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: CodevaultConfig) -> None:
    """Raise ConfigError for values the pipeline cannot run with."""
    if not cfg.project.agent_id.strip():
        raise ConfigError("project.agent_id must not be empty")
    if not 1 <= cfg.embedding.batch_size <= 2048:
        raise ConfigError(
            f"embedding.batch_size must be between 1 and 2048, got {cfg.embedding.batch_size}"
        )
    if cfg.embedding.max_tokens_per_batch < 1:
        raise ConfigError("embedding.max_tokens_per_batch must be >= 1")
    if cfg.embedding.max_retries < 0:
        raise ConfigError("embedding.max_retries must be >= 0")
    if cfg.embedding.requests_per_minute < 1:
        raise ConfigError("embedding.requests_per_minute must be >= 1")
    if cfg.ingest.workers < 1:
        raise ConfigError("ingest.workers must be >= 1")
    if cfg.retrieval.top_k < 1:
        raise ConfigError("retrieval.top_k must be >= 1")
    if cfg.retrieval.overfetch_factor < 1:
        raise ConfigError("retrieval.overfetch_factor must be >= 1")
    if not 0.0 <= cfg.retrieval.parent_boost <= 1.0:
        raise ConfigError(
            f"retrieval.parent_boost must be in [0, 1], got {cfg.retrieval.parent_boost}"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _cfg_from_dict(data: dict[str, Any]) -> CodevaultConfig:
    """Build a *CodevaultConfig* from a merged raw YAML dict."""
    cfg = CodevaultConfig()

    if "project" in data:
        p = data["project"] or {}
        cfg.project = ProjectCfg(
            agent_id=str(p.get("agent_id", cfg.project.agent_id)),
            staging_path=str(p.get("staging_path", cfg.project.staging_path)),
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
            max_tokens_per_batch=int(
                e.get("max_tokens_per_batch", cfg.embedding.max_tokens_per_batch)
            ),
            max_retries=int(e.get("max_retries", cfg.embedding.max_retries)),
            backoff_seconds=float(e.get("backoff_seconds", cfg.embedding.backoff_seconds)),
            requests_per_minute=int(
                e.get("requests_per_minute", cfg.embedding.requests_per_minute)
            ),
            request_timeout=_optional_float(
                e.get("request_timeout", cfg.embedding.request_timeout)
            ),
        )

    if "ingest" in data:
        i = data["ingest"] or {}
        cfg.ingest = IngestCfg(
            workers=int(i.get("workers", cfg.ingest.workers)),
            max_file_size=int(i.get("max_file_size", cfg.ingest.max_file_size)),
            exclude=[str(x) for x in i.get("exclude", cfg.ingest.exclude)],
            chunk_size=int(i.get("chunk_size", cfg.ingest.chunk_size)),
            overlap=float(i.get("overlap", cfg.ingest.overlap)),
            summaries=bool(i.get("summaries", cfg.ingest.summaries)),
            summary_model=str(i.get("summary_model", cfg.ingest.summary_model)),
        )

    if "retrieval" in data:
        r = data["retrieval"] or {}
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            overfetch_factor=int(r.get("overfetch_factor", cfg.retrieval.overfetch_factor)),
            parent_boost=float(r.get("parent_boost", cfg.retrieval.parent_boost)),
            lexical_weight=float(r.get("lexical_weight", cfg.retrieval.lexical_weight)),
        )

    if "logging" in data:
        lg = data["logging"] or {}
        cfg.logging = LoggingCfg(
            level=str(lg.get("level", cfg.logging.level)),
            json=bool(lg.get("json", cfg.logging.json)),
            file=lg.get("file") or cfg.logging.file,
        )

    return cfg


def _apply_env_overrides(cfg: CodevaultConfig) -> CodevaultConfig:
    """Apply CODEVAULT_* environment variable overrides (layer 2)."""
    if model := os.environ.get("CODEVAULT_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if agent := os.environ.get("CODEVAULT_AGENT_ID"):
        cfg.project.agent_id = agent
    if level := os.environ.get("CODEVAULT_LOG_LEVEL"):
        cfg.logging.level = level
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> CodevaultConfig:
    """Load and return a merged *CodevaultConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *codevault.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *CodevaultConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or a
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    try:
        cfg = _cfg_from_dict(merged)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.codevault/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# codevault global configuration: model defaults only.\n"
            "# NEVER store API keys here; use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "ingest:\n"
            "  summary_model: openai/gpt-4o-mini\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
