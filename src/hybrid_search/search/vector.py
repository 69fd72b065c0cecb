"""
Vector similarity search over the storage backend.

The backend does the similarity computation; this adapter owns threshold and
limit defaulting, optional lexical reranking and a response cache.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..cache import CacheStore, LRUCache, TieredCache
from ..config import VectorSearchConfig, merge_config
from ..errors import BackendUnavailable, ValidationError
from ..logs import preview
from ..models import MAX_LIMIT, RawResult
from ..stats import RunningAverage
from ..storage.base import StorageBackend, row_to_result


logger = structlog.get_logger(__name__)

_RESULTS_ADAPTER = TypeAdapter(list[RawResult])
_HEALTH_CHECK_TENANT = "test"


def keyword_overlap(query: str, content: str) -> float:
    """Fraction of query tokens found as a substring of some content token."""
    query_tokens = query.lower().split()
    if not query_tokens:
        return 0.0
    content_tokens = content.lower().split()
    matched = sum(
        1 for token in query_tokens if any(token in candidate for candidate in content_tokens)
    )
    return matched / len(query_tokens)


def rerank_results(
    query: str,
    results: list[RawResult],
    *,
    similarity_weight: float = 0.7,
    overlap_weight: float = 0.3,
) -> list[RawResult]:
    """Blend similarity with lexical overlap and re-sort descending."""
    rescored = [
        result.model_copy(
            update={
                "score": result.score * similarity_weight
                + keyword_overlap(query, result.content) * overlap_weight
            }
        )
        for result in results
    ]
    return sorted(rescored, key=lambda result: -result.score)


@dataclass(frozen=True)
class VectorSearchStats:
    """Snapshot of vector adapter counters."""

    total_searches: int
    average_processing_time_ms: float
    average_result_count: float
    cache_hit_rate: float
    cache_size: int
    reranked_searches: int
    errors: int


class VectorSearchAdapter:
    """Similarity search with reranking and response caching."""

    def __init__(
        self,
        storage: StorageBackend,
        config: VectorSearchConfig | None = None,
        *,
        cache_store: CacheStore | None = None,
    ) -> None:
        self.storage = storage
        self.config = config or VectorSearchConfig()
        self._cache = TieredCache(
            LRUCache(
                max_size=self.config.cache.max_size,
                ttl_seconds=self.config.cache.ttl_seconds,
                sweep_interval_seconds=self.config.cache.sweep_interval_seconds,
                name="vector-search",
            ),
            store=cache_store,
            namespace="vector",
            store_timeout_seconds=self.config.cache.store_timeout_seconds,
        )
        self._searches = 0
        self._latency = RunningAverage()
        self._result_count = RunningAverage()
        self._reranked = 0
        self._errors = 0

    async def search(
        self,
        embedding: list[float],
        tenant_id: str,
        *,
        query: str | None = None,
        threshold: float | None = None,
        limit: int | None = None,
        filters: dict[str, Any] | None = None,
    ) -> list[RawResult]:
        """Return results ordered by (possibly reranked) similarity."""
        start = time.perf_counter()
        self._searches += 1
        if not embedding:
            self._errors += 1
            raise ValidationError("Query embedding cannot be empty")
        if not tenant_id or not tenant_id.strip():
            self._errors += 1
            raise ValidationError("Tenant ID is required")

        resolved_threshold = self.config.similarity_threshold if threshold is None else threshold
        resolved_limit = min(limit or self.config.max_results, MAX_LIMIT)
        key = self._cache_key(
            embedding,
            tenant_id,
            query=query,
            threshold=resolved_threshold,
            limit=resolved_limit,
            filters=filters,
        )

        if self.config.cache_results:
            cached = await self._cache.get(key)
            if cached is not None:
                logger.debug("vector cache hit", tenant_id=tenant_id)
                return _RESULTS_ADAPTER.validate_json(cached)

        try:
            rows = await asyncio.to_thread(
                self.storage.vector_search,
                query_embedding=embedding,
                tenant_id=tenant_id,
                similarity_threshold=resolved_threshold,
                max_results=resolved_limit,
                filters=filters,
            )
            results = [row_to_result(row, score_field="similarity") for row in rows]
        except ValidationError:
            self._errors += 1
            raise
        except Exception as exc:
            self._errors += 1
            logger.error(
                "vector search failed",
                tenant_id=tenant_id,
                query=preview(query or ""),
                error=str(exc),
            )
            raise BackendUnavailable(f"Vector search failed: {exc}") from exc

        if self.config.enable_reranking and query and len(results) > 1:
            results = self._rerank(query, results)

        if self.config.cache_results:
            await self._cache.set(key, _RESULTS_ADAPTER.dump_json(results).decode("utf-8"))

        self._latency.add((time.perf_counter() - start) * 1000)
        self._result_count.add(len(results))
        return results

    def _rerank(self, query: str, results: list[RawResult]) -> list[RawResult]:
        try:
            reranked = rerank_results(
                query,
                results,
                similarity_weight=self.config.rerank_similarity_weight,
                overlap_weight=self.config.rerank_overlap_weight,
            )
        except Exception as exc:
            logger.warning("reranking failed, returning original results", error=str(exc))
            return results
        self._reranked += 1
        return reranked

    @staticmethod
    def _cache_key(
        embedding: list[float],
        tenant_id: str,
        *,
        query: str | None,
        threshold: float,
        limit: int,
        filters: dict[str, Any] | None,
    ) -> str:
        digest = hashlib.sha256(json.dumps(embedding).encode("utf-8")).hexdigest()
        payload = {
            "query": query,
            "embedding": digest,
            "tenant_id": tenant_id,
            "filters": filters,
            "limit": limit,
            "threshold": threshold,
        }
        raw = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def get_stats(self) -> VectorSearchStats:
        return VectorSearchStats(
            total_searches=self._searches,
            average_processing_time_ms=self._latency.value,
            average_result_count=self._result_count.value,
            cache_hit_rate=self._cache.counter.hit_rate,
            cache_size=len(self._cache),
            reranked_searches=self._reranked,
            errors=self._errors,
        )

    def get_config(self) -> VectorSearchConfig:
        return self.config

    def update_config(self, updates: dict[str, Any]) -> VectorSearchConfig:
        try:
            new_config = merge_config(self.config, updates)
        except KeyError as exc:
            raise ValidationError(f"Unknown vector search config field: {exc.args[0]}") from exc
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid vector search config: {exc}") from exc
        self.config = new_config
        return new_config

    async def clear_cache(self) -> None:
        self._cache.clear()

    async def health_check(self, dimensions: int) -> bool:
        """Run a zero-result probe against the backend."""
        try:
            await asyncio.to_thread(
                self.storage.vector_search,
                query_embedding=[1.0] + [0.0] * (dimensions - 1),
                tenant_id=_HEALTH_CHECK_TENANT,
                similarity_threshold=1.0,
                max_results=1,
                filters=None,
            )
        except Exception as exc:
            logger.error("vector search health check failed", error=str(exc))
            return False
        return True

    def close(self) -> None:
        self._cache.close()
