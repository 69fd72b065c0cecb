"""
Configuration models and environment resolution.

Each component owns one Pydantic model. ``load_settings`` builds them from
environment overrides; explicit arguments always win over the environment,
which wins over the built-in defaults.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr


DEFAULT_DB_PATH = "~/.hybrid_search/knowledge.duckdb"
ENV_DB_PATH = "HYBRID_SEARCH_DB_PATH"
ENV_EMBEDDING_PROVIDER = "HYBRID_SEARCH_EMBEDDING_PROVIDER"
ENV_EMBEDDING_MODEL = "HYBRID_SEARCH_EMBEDDING_MODEL"
ENV_EMBEDDING_DIM = "HYBRID_SEARCH_EMBEDDING_DIM"
ENV_EMBEDDING_BATCH_SIZE = "HYBRID_SEARCH_EMBEDDING_BATCH_SIZE"
ENV_FUSION_ALGORITHM = "HYBRID_SEARCH_FUSION_ALGORITHM"
ENV_SEARCH_TIMEOUT = "HYBRID_SEARCH_SEARCH_TIMEOUT"

EmbeddingProviderName = Literal["openai", "genai"]
FusionAlgorithm = Literal["rrf", "weighted", "adaptive"]

_PROVIDER_DEFAULTS: dict[str, dict[str, Any]] = {
    "openai": {
        "model": "text-embedding-3-small",
        "dimensions": 1536,
        "batch_size": 100,
    },
    "genai": {
        "model": "gemini-embedding-001",
        "dimensions": 768,
        "batch_size": 50,
    },
}


class CacheConfig(BaseModel):
    """Sizing for one in-process cache."""

    model_config = ConfigDict(frozen=True)

    max_size: int = Field(default=1000, ge=1)
    ttl_seconds: float = Field(default=300.0, gt=0)
    sweep_interval_seconds: float | None = Field(default=300.0)
    store_timeout_seconds: float = Field(default=1.0, gt=0)


class EmbeddingConfig(BaseModel):
    """Embedding provider selection, limits and caching."""

    model_config = ConfigDict(frozen=True)

    provider: EmbeddingProviderName = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = Field(default=1536, ge=1)
    batch_size: int = Field(default=100, ge=1)
    api_key: SecretStr | None = None
    base_url: str = "https://api.openai.com/v1"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.5, ge=0)
    max_input_chars: int = Field(default=8000, ge=1)
    requests_per_minute: int = Field(default=3000, ge=1)
    batch_delay_seconds: float = Field(default=1.0, ge=0)
    cache_enabled: bool = True
    cache: CacheConfig = Field(
        default_factory=lambda: CacheConfig(max_size=1000, ttl_seconds=86400.0)
    )

    @classmethod
    def for_provider(cls, provider: EmbeddingProviderName, **overrides: Any) -> "EmbeddingConfig":
        """Return provider defaults merged with *overrides*."""
        values: dict[str, Any] = {"provider": provider, **_PROVIDER_DEFAULTS[provider]}
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


class VectorSearchConfig(BaseModel):
    """Similarity search defaults, reranking and response caching."""

    model_config = ConfigDict(frozen=True)

    similarity_threshold: float = Field(default=0.7, ge=0, le=1)
    max_results: int = Field(default=20, ge=1, le=100)
    enable_reranking: bool = True
    rerank_similarity_weight: float = Field(default=0.7, ge=0)
    rerank_overlap_weight: float = Field(default=0.3, ge=0)
    cache_results: bool = True
    cache: CacheConfig = Field(
        default_factory=lambda: CacheConfig(max_size=100, ttl_seconds=1800.0)
    )


class HybridQueryConfig(BaseModel):
    """Fusion weights, dispatch and response caching for the query engine."""

    model_config = ConfigDict(frozen=True)

    vector_weight: float = Field(default=0.7, ge=0)
    keyword_weight: float = Field(default=0.3, ge=0)
    max_vector_results: int = Field(default=50, ge=1)
    max_keyword_results: int = Field(default=50, ge=1)
    final_result_limit: int = Field(default=20, ge=1, le=100)
    fusion_algorithm: FusionAlgorithm = "adaptive"
    rrf_constant: float = Field(default=60.0, gt=0)
    adaptive_weighted_share: float = Field(default=0.7, ge=0)
    adaptive_rrf_share: float = Field(default=0.3, ge=0)
    enable_query_analysis: bool = True
    search_timeout_seconds: float = Field(default=10.0, gt=0)
    enable_parallel_search: bool = True
    cache_results: bool = True
    cache: CacheConfig = Field(
        default_factory=lambda: CacheConfig(max_size=100, ttl_seconds=300.0)
    )

    def fusion_fingerprint(self) -> dict[str, Any]:
        """Fields that change fused scores, folded into response cache keys."""
        return {
            "vector_weight": self.vector_weight,
            "keyword_weight": self.keyword_weight,
            "fusion_algorithm": self.fusion_algorithm,
            "rrf_constant": self.rrf_constant,
            "adaptive_weighted_share": self.adaptive_weighted_share,
            "adaptive_rrf_share": self.adaptive_rrf_share,
            "max_vector_results": self.max_vector_results,
            "max_keyword_results": self.max_keyword_results,
        }


class Settings(BaseModel):
    """All component configuration in one place."""

    model_config = ConfigDict(frozen=True)

    db_path: str
    embedding: EmbeddingConfig
    vector_search: VectorSearchConfig = Field(default_factory=VectorSearchConfig)
    hybrid: HybridQueryConfig = Field(default_factory=HybridQueryConfig)


def resolve_db_path(override_path: str | None = None) -> str:
    """
    Resolve the DuckDB path from CLI override, env var, or default.

    Precedence:
    1) explicit override_path
    2) HYBRID_SEARCH_DB_PATH
    3) default path
    """
    raw_path = override_path or os.getenv(ENV_DB_PATH) or DEFAULT_DB_PATH
    resolved = Path(raw_path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return str(resolved)


def _env_int(name: str) -> int | None:
    raw = os.getenv(name)
    return int(raw) if raw else None


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    return float(raw) if raw else None


def load_embedding_config(
    provider: str | None = None,
    *,
    api_key: str | None = None,
) -> EmbeddingConfig:
    """Build the embedding config from environment overrides."""
    resolved_provider = provider or os.getenv(ENV_EMBEDDING_PROVIDER) or "openai"
    if resolved_provider not in _PROVIDER_DEFAULTS:
        raise ValueError(
            f"Unsupported embedding provider: {resolved_provider!r}. "
            f"Expected one of: {', '.join(sorted(_PROVIDER_DEFAULTS))}"
        )
    key_env = "OPENAI_API_KEY" if resolved_provider == "openai" else "GOOGLE_API_KEY"
    resolved_key = api_key or os.getenv(key_env)
    return EmbeddingConfig.for_provider(
        resolved_provider,  # type: ignore[arg-type]
        model=os.getenv(ENV_EMBEDDING_MODEL),
        dimensions=_env_int(ENV_EMBEDDING_DIM),
        batch_size=_env_int(ENV_EMBEDDING_BATCH_SIZE),
        api_key=SecretStr(resolved_key) if resolved_key else None,
    )


def load_hybrid_config() -> HybridQueryConfig:
    overrides: dict[str, Any] = {}
    algorithm = os.getenv(ENV_FUSION_ALGORITHM)
    if algorithm:
        overrides["fusion_algorithm"] = algorithm
    timeout = _env_float(ENV_SEARCH_TIMEOUT)
    if timeout is not None:
        overrides["search_timeout_seconds"] = timeout
    return HybridQueryConfig(**overrides)


def load_settings(
    *,
    db_path: str | None = None,
    provider: str | None = None,
    api_key: str | None = None,
) -> Settings:
    """Assemble :class:`Settings` with explicit > environment > default precedence."""
    return Settings(
        db_path=resolve_db_path(db_path),
        embedding=load_embedding_config(provider, api_key=api_key),
        vector_search=VectorSearchConfig(),
        hybrid=load_hybrid_config(),
    )


def merge_config(current: BaseModel, updates: dict[str, Any]) -> Any:
    """Return a re-validated copy of *current* with *updates* applied.

    Nested models accept partial dicts. Raises ``pydantic.ValidationError``
    for invalid values and ``KeyError`` for unknown fields.
    """
    merged = current.model_dump()
    for key, value in updates.items():
        if key not in merged:
            raise KeyError(key)
        if isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        elif isinstance(value, BaseModel):
            merged[key] = value.model_dump()
        else:
            merged[key] = value
    if "api_key" in merged and isinstance(merged["api_key"], SecretStr):
        merged["api_key"] = merged["api_key"].get_secret_value()
    return type(current).model_validate(merged)
