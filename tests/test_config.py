"""Tests for configuration defaults, environment resolution and merging."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from hybrid_search.config import (
    EmbeddingConfig,
    HybridQueryConfig,
    VectorSearchConfig,
    load_settings,
    merge_config,
    resolve_db_path,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in (
        "HYBRID_SEARCH_DB_PATH",
        "HYBRID_SEARCH_EMBEDDING_PROVIDER",
        "HYBRID_SEARCH_EMBEDDING_MODEL",
        "HYBRID_SEARCH_EMBEDDING_DIM",
        "HYBRID_SEARCH_EMBEDDING_BATCH_SIZE",
        "HYBRID_SEARCH_FUSION_ALGORITHM",
        "HYBRID_SEARCH_SEARCH_TIMEOUT",
        "OPENAI_API_KEY",
        "GOOGLE_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


def test_component_defaults() -> None:
    vector = VectorSearchConfig()
    hybrid = HybridQueryConfig()

    assert vector.similarity_threshold == 0.7
    assert vector.max_results == 20
    assert (vector.rerank_similarity_weight, vector.rerank_overlap_weight) == (0.7, 0.3)
    assert (hybrid.vector_weight, hybrid.keyword_weight) == (0.7, 0.3)
    assert hybrid.fusion_algorithm == "adaptive"
    assert hybrid.rrf_constant == 60.0
    assert hybrid.final_result_limit == 20


def test_provider_defaults() -> None:
    genai = EmbeddingConfig.for_provider("genai")
    openai = EmbeddingConfig.for_provider("openai", dimensions=256)

    assert (genai.model, genai.dimensions) == ("gemini-embedding-001", 768)
    assert (openai.model, openai.dimensions) == ("text-embedding-3-small", 256)


def test_resolve_db_path_precedence(tmp_path: Path, monkeypatch) -> None:
    env_path = tmp_path / "env" / "db.duckdb"
    monkeypatch.setenv("HYBRID_SEARCH_DB_PATH", str(env_path))

    assert resolve_db_path() == str(env_path.resolve())
    explicit = tmp_path / "explicit.duckdb"
    assert resolve_db_path(str(explicit)) == str(explicit.resolve())
    assert env_path.parent.is_dir()


def test_load_settings_reads_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("HYBRID_SEARCH_EMBEDDING_PROVIDER", "genai")
    monkeypatch.setenv("HYBRID_SEARCH_EMBEDDING_DIM", "384")
    monkeypatch.setenv("HYBRID_SEARCH_FUSION_ALGORITHM", "rrf")
    monkeypatch.setenv("HYBRID_SEARCH_SEARCH_TIMEOUT", "2.5")
    monkeypatch.setenv("GOOGLE_API_KEY", "g-key")

    settings = load_settings(db_path=str(tmp_path / "k.duckdb"))

    assert settings.embedding.provider == "genai"
    assert settings.embedding.dimensions == 384
    assert settings.embedding.api_key is not None
    assert settings.embedding.api_key.get_secret_value() == "g-key"
    assert settings.hybrid.fusion_algorithm == "rrf"
    assert settings.hybrid.search_timeout_seconds == 2.5


def test_explicit_provider_wins_over_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("HYBRID_SEARCH_EMBEDDING_PROVIDER", "genai")

    settings = load_settings(db_path=str(tmp_path / "k.duckdb"), provider="openai")

    assert settings.embedding.provider == "openai"
    assert settings.embedding.api_key is None


def test_load_settings_rejects_unknown_provider(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unsupported embedding provider"):
        load_settings(db_path=str(tmp_path / "k.duckdb"), provider="nope")


def test_merge_config_revalidates_and_merges_nested() -> None:
    merged = merge_config(VectorSearchConfig(), {"max_results": 50, "cache": {"max_size": 5}})

    assert merged.max_results == 50
    assert merged.cache.max_size == 5
    assert merged.cache.ttl_seconds == 1800.0


def test_merge_config_keeps_secret_api_key() -> None:
    config = EmbeddingConfig(api_key="sk-secret")

    merged = merge_config(config, {"batch_size": 10})

    assert merged.api_key.get_secret_value() == "sk-secret"


def test_merge_config_errors() -> None:
    with pytest.raises(KeyError):
        merge_config(HybridQueryConfig(), {"bogus": 1})
    with pytest.raises(PydanticValidationError):
        merge_config(HybridQueryConfig(), {"final_result_limit": 0})
