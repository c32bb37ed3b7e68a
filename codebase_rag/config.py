"""
Engine configuration.

Resolution order: dataclass defaults, then an optional JSON file, then
CODEBASE_RAG_* environment variables. The resolved RAGConfig is passed
explicitly to build_context(); no module reads configuration lazily.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from codebase_rag.errors import ConfigError

LOG = logging.getLogger("codebase_rag.config")

ENV_PREFIX = "CODEBASE_RAG_"
LOG_LEVEL = os.environ.get("CODEBASE_RAG_LOG_LEVEL", "INFO").upper()
DEFAULT_INDEX_DIR = ".codebase_rag"

EMBEDDING_PROVIDERS = ("local", "tfidf", "semantic", "code")
VECTOR_STORES = ("memory", "partitioned", "hnsw")
STRATEGIES = ("semantic", "keyword", "hybrid", "reranked", "corrective")

DEFAULT_EXCLUDE_PATTERNS = [
    "**/node_modules/**",
    "**/.git/**",
    "**/dist/**",
    "**/build/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/*.min.js",
]


@dataclass
class RAGConfig:
    """Configuration for indexing and retrieval."""

    embedding_provider: str = "code"
    embedding_dimension: int = 384
    semantic_vocab_size: int = 10_000

    vector_store: str = "memory"
    partition_key: str = "language"
    index_path: str = DEFAULT_INDEX_DIR  # "" disables persistence
    autosave_interval: float = 30.0

    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef_search: int = 50

    top_k: int = 10
    min_score: float = 0.0
    strategy: str = "hybrid"

    include_patterns: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    max_file_size: int = 1_000_000

    @property
    def persist(self) -> bool:
        return bool(self.index_path)

    def validate(self) -> None:
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ConfigError(
                f"Unknown embedding provider: {self.embedding_provider!r}. Supported: {', '.join(EMBEDDING_PROVIDERS)}"
            )
        if self.vector_store not in VECTOR_STORES:
            raise ConfigError(f"Unknown vector store: {self.vector_store!r}. Supported: {', '.join(VECTOR_STORES)}")
        if self.strategy not in STRATEGIES:
            raise ConfigError(f"Unknown strategy: {self.strategy!r}. Supported: {', '.join(STRATEGIES)}")
        for name in ("embedding_dimension", "top_k", "hnsw_m", "hnsw_ef_construction", "hnsw_ef_search"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RAGConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            LOG.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in d.items() if k in known})


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw


def _apply_env(config: RAGConfig, environ: dict[str, str]) -> RAGConfig:
    for f in fields(config):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        try:
            setattr(config, f.name, _coerce(raw, getattr(config, f.name)))
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from exc
    return config


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> RAGConfig:
    """
    Build a RAGConfig from defaults, an optional JSON file and the environment.

    Args:
        path: JSON config file. Falls back to $CODEBASE_RAG_CONFIG when omitted.
        environ: Mapping to read overrides from (defaults to os.environ).

    Raises:
        ConfigError: Unreadable file, invalid JSON or invalid values.
    """
    env = dict(os.environ) if environ is None else environ
    path = path or env.get(ENV_PREFIX + "CONFIG")

    config = RAGConfig()
    if path:
        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read config file {p}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {p} must contain a JSON object")
        config = RAGConfig.from_dict(data)
        LOG.debug("Loaded config from %s", p)

    config = _apply_env(config, env)
    config.validate()
    return config
