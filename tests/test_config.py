"""Tests for configuration loading and validation."""

from __future__ import annotations

import json

import pytest

from codebase_rag.config import DEFAULT_EXCLUDE_PATTERNS, RAGConfig, load_config
from codebase_rag.errors import ConfigError


class TestRAGConfig:
    def test_defaults(self):
        config = RAGConfig()
        assert config.embedding_provider == "code"
        assert config.embedding_dimension == 384
        assert config.strategy == "hybrid"
        assert config.top_k == 10
        assert config.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS
        assert config.exclude_patterns is not DEFAULT_EXCLUDE_PATTERNS
        assert config.persist

    def test_empty_index_path_disables_persistence(self):
        assert not RAGConfig(index_path="").persist

    @pytest.mark.parametrize(
        "overrides",
        [
            {"embedding_provider": "openai"},
            {"vector_store": "faiss"},
            {"strategy": "magic"},
            {"top_k": 0},
            {"embedding_dimension": -1},
        ],
    )
    def test_validate_rejects(self, overrides):
        with pytest.raises(ConfigError):
            RAGConfig(**overrides).validate()

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            RAGConfig(strategy="magic").validate()

    def test_dict_round_trip(self):
        config = RAGConfig(top_k=3, vector_store="hnsw")
        assert RAGConfig.from_dict(config.to_dict()) == config

    def test_from_dict_ignores_unknown_keys(self, caplog):
        config = RAGConfig.from_dict({"top_k": 4, "colour": "blue"})
        assert config.top_k == 4
        assert "colour" in caplog.text


class TestLoadConfig:
    def test_defaults_without_file_or_env(self):
        assert load_config(environ={}) == RAGConfig()

    def test_json_file(self, tmp_path):
        path = tmp_path / "rag.json"
        path.write_text(json.dumps({"vector_store": "partitioned", "top_k": 7}))
        config = load_config(path, environ={})
        assert config.vector_store == "partitioned"
        assert config.top_k == 7

    def test_config_path_from_env(self, tmp_path):
        path = tmp_path / "rag.json"
        path.write_text(json.dumps({"strategy": "keyword"}))
        config = load_config(environ={"CODEBASE_RAG_CONFIG": str(path)})
        assert config.strategy == "keyword"

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "rag.json"
        path.write_text(json.dumps({"top_k": 7, "min_score": 0.1}))
        config = load_config(
            path,
            environ={
                "CODEBASE_RAG_TOP_K": "12",
                "CODEBASE_RAG_MIN_SCORE": "0.25",
                "CODEBASE_RAG_INCLUDE_PATTERNS": "src/**, lib/**",
                "CODEBASE_RAG_EMBEDDING_PROVIDER": "semantic",
            },
        )
        assert config.top_k == 12
        assert config.min_score == pytest.approx(0.25)
        assert config.include_patterns == ["src/**", "lib/**"]
        assert config.embedding_provider == "semantic"

    def test_invalid_env_value(self):
        with pytest.raises(ConfigError, match="CODEBASE_RAG_TOP_K"):
            load_config(environ={"CODEBASE_RAG_TOP_K": "many"})

    def test_env_value_failing_validation(self):
        with pytest.raises(ConfigError, match="Unknown vector store"):
            load_config(environ={"CODEBASE_RAG_VECTOR_STORE": "faiss"})

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.json", environ={})

    def test_non_object_file(self, tmp_path):
        path = tmp_path / "rag.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError, match="JSON object"):
            load_config(path, environ={})
