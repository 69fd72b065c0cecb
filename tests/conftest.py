from __future__ import annotations

import hashlib
import math
import threading
import time
from typing import Any

import pytest

from hybrid_search.cache import LRUCache
from hybrid_search.config import (
    CacheConfig,
    EmbeddingConfig,
    HybridQueryConfig,
    Settings,
    VectorSearchConfig,
)
from hybrid_search.embeddings import EmbeddingService
from hybrid_search.errors import ProviderError
from hybrid_search.search import HybridQueryEngine, KeywordSearchAdapter, VectorSearchAdapter


DIMS = 8
NO_SWEEP = CacheConfig(max_size=100, ttl_seconds=300.0, sweep_interval_seconds=None)


def text_vector(text: str, dims: int = DIMS) -> list[float]:
    """Deterministic bag-of-words vector: each word lands in a hashed bucket."""
    values = [0.001] * dims
    for word in text.lower().split():
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dims
        values[bucket] += 1.0
    norm = math.sqrt(sum(value * value for value in values))
    return [value / norm for value in values]


class FakeEmbeddingBackend:
    """Records calls and returns deterministic vectors."""

    def __init__(self, dims: int = DIMS, *, fail_times: int = 0) -> None:
        self.dims = dims
        self.fail_times = fail_times
        self.calls: list[list[str]] = []
        self.tasks: list[str] = []

    def embed(self, texts: list[str], *, task: str = "query") -> list[list[float]]:
        self.calls.append(list(texts))
        self.tasks.append(task)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProviderError("provider unavailable")
        return [text_vector(text, self.dims) for text in texts]


class FakeStorage:
    """In-memory stand-in for the two storage procedures."""

    def __init__(
        self,
        *,
        vector_rows: list[dict[str, Any]] | None = None,
        keyword_rows: list[dict[str, Any]] | None = None,
        vector_error: Exception | None = None,
        keyword_error: Exception | None = None,
        vector_delay: float = 0.0,
        keyword_delay: float = 0.0,
    ) -> None:
        self.vector_rows = vector_rows or []
        self.keyword_rows = keyword_rows or []
        self.vector_error = vector_error
        self.keyword_error = keyword_error
        self.vector_delay = vector_delay
        self.keyword_delay = keyword_delay
        self.vector_calls: list[dict[str, Any]] = []
        self.keyword_calls: list[dict[str, Any]] = []

    def vector_search(self, **kwargs: Any) -> list[dict[str, Any]]:
        self.vector_calls.append(kwargs)
        if self.vector_delay:
            time.sleep(self.vector_delay)
        if self.vector_error is not None:
            raise self.vector_error
        return [dict(row) for row in self.vector_rows[: kwargs["max_results"]]]

    def keyword_search(self, **kwargs: Any) -> list[dict[str, Any]]:
        self.keyword_calls.append(kwargs)
        if self.keyword_delay:
            time.sleep(self.keyword_delay)
        if self.keyword_error is not None:
            raise self.keyword_error
        return [dict(row) for row in self.keyword_rows[: kwargs["max_results"]]]


class FakeCacheStore:
    def __init__(self, *, fail: bool = False, block: str | None = None) -> None:
        self.fail = fail
        # Calls for keys under this prefix stall until `release` is set.
        self.block = block
        self.release = threading.Event()
        self.values: dict[str, str] = {}
        self.puts: list[tuple[str, int]] = []

    def _wait(self, key: str) -> None:
        if self.block is not None and key.startswith(self.block):
            self.release.wait(timeout=5.0)

    def get(self, key: str) -> str | None:
        self._wait(key)
        if self.fail:
            raise ConnectionError("store down")
        return self.values.get(key)

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._wait(key)
        if self.fail:
            raise ConnectionError("store down")
        self.values[key] = value
        self.puts.append((key, ttl_seconds))


def vector_row(doc_id: str, similarity: float, content: str | None = None) -> dict[str, Any]:
    return {
        "id": doc_id,
        "content": content or f"content of {doc_id}",
        "similarity": similarity,
        "metadata": {"nodeType": "faq", "tags": ["billing"]},
    }


def keyword_row(doc_id: str, rank: float, content: str | None = None) -> dict[str, Any]:
    return {
        "id": doc_id,
        "content": content or f"content of {doc_id}",
        "rank": rank,
        "metadata": {"nodeType": "faq", "tags": []},
    }


def embedding_config(**overrides: Any) -> EmbeddingConfig:
    values: dict[str, Any] = {
        "dimensions": DIMS,
        "batch_delay_seconds": 0.0,
        "retry_backoff_seconds": 0.0,
        "cache": NO_SWEEP,
    }
    values.update(overrides)
    return EmbeddingConfig(**values)


def make_engine(
    storage: FakeStorage,
    *,
    backend: FakeEmbeddingBackend | None = None,
    hybrid: dict[str, Any] | None = None,
    vector: dict[str, Any] | None = None,
    cache_store: FakeCacheStore | None = None,
) -> HybridQueryEngine:
    service = EmbeddingService(
        embedding_config(),
        backend=backend or FakeEmbeddingBackend(),
        cache_store=cache_store,
    )
    vector_config = VectorSearchConfig(**{"cache": NO_SWEEP, "enable_reranking": False, **(vector or {})})
    hybrid_config = HybridQueryConfig(**{"cache": NO_SWEEP, **(hybrid or {})})
    return HybridQueryEngine(
        hybrid_config,
        service,
        VectorSearchAdapter(storage, vector_config, cache_store=cache_store),
        KeywordSearchAdapter(storage),
        cache_store=cache_store,
    )


def make_settings(db_path: str, **hybrid: Any) -> Settings:
    return Settings(
        db_path=db_path,
        embedding=embedding_config(),
        vector_search=VectorSearchConfig(cache=NO_SWEEP, similarity_threshold=0.1),
        hybrid=HybridQueryConfig(cache=NO_SWEEP, **hybrid),
    )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lru(clock: FakeClock) -> LRUCache[str, str]:
    cache: LRUCache[str, str] = LRUCache(
        max_size=3,
        ttl_seconds=10.0,
        sweep_interval_seconds=None,
        clock=clock,
        name="test",
    )
    yield cache
    cache.close()
