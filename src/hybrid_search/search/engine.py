"""
Hybrid query engine.

Runs a request through validate -> cache check -> dispatch -> fuse -> cache
store. Vector and keyword retrieval are dispatched concurrently for the
``hybrid`` and ``auto`` strategies and the whole dispatch is bounded by the
configured search timeout.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..cache import CacheStore, LRUCache, TieredCache
from ..config import HybridQueryConfig, Settings, merge_config
from ..embeddings import EmbeddingBackend, EmbeddingService
from ..errors import HybridSearchError, SearchTimeout, ValidationError
from ..logs import preview
from ..models import (
    HybridSearchResponse,
    RawResult,
    ResponseMetadata,
    SearchRequest,
    validate_request,
)
from ..stats import RunningAverage
from ..storage.base import StorageBackend
from .analysis import QueryAnalysis, analyze_query
from .fusion import FusionSettings, fuse_results
from .keyword import KeywordSearchAdapter
from .vector import VectorSearchAdapter


logger = structlog.get_logger(__name__)

HEALTH_CHECK_REQUEST: dict[str, Any] = {
    "query": "health check test",
    "tenant_id": "test",
    "limit": 1,
}

_COMPONENT_SECTIONS = ("embedding", "vector_search")


@dataclass(frozen=True)
class HybridSearchStats:
    """Snapshot of engine counters."""

    total_searches: int
    average_processing_time_ms: float
    vector_only_searches: int
    keyword_only_searches: int
    hybrid_searches: int
    average_vector_time_ms: float
    average_keyword_time_ms: float
    average_fusion_time_ms: float
    average_result_count: float
    average_fusion_score: float
    cache_hit_rate: float
    cache_size: int
    errors: int


@dataclass(frozen=True)
class _Dispatch:
    """Raw per-source results and timings from one dispatch."""

    vector_results: list[RawResult]
    keyword_results: list[RawResult]
    vector_time_ms: float | None
    keyword_time_ms: float | None


async def _timed(call: Callable[[], Awaitable[list[RawResult]]]) -> tuple[list[RawResult], float]:
    start = time.perf_counter()
    results = await call()
    return results, (time.perf_counter() - start) * 1000


class HybridQueryEngine:
    """Fuse vector and keyword retrieval into one ranked response."""

    def __init__(
        self,
        config: HybridQueryConfig | None,
        embedding_service: EmbeddingService,
        vector_adapter: VectorSearchAdapter,
        keyword_adapter: KeywordSearchAdapter,
        *,
        cache_store: CacheStore | None = None,
    ) -> None:
        self.config = config or HybridQueryConfig()
        self.embedding_service = embedding_service
        self.vector_adapter = vector_adapter
        self.keyword_adapter = keyword_adapter
        self._cache = TieredCache(
            LRUCache(
                max_size=self.config.cache.max_size,
                ttl_seconds=self.config.cache.ttl_seconds,
                sweep_interval_seconds=self.config.cache.sweep_interval_seconds,
                name="hybrid-search",
            ),
            store=cache_store,
            namespace="hybrid",
            store_timeout_seconds=self.config.cache.store_timeout_seconds,
        )
        self._closers: list[Callable[[], None]] = []

        self._searches = 0
        self._errors = 0
        self._strategy_counts = {"vector": 0, "keyword": 0, "hybrid": 0}
        self._latency = RunningAverage()
        self._vector_time = RunningAverage()
        self._keyword_time = RunningAverage()
        self._fusion_time = RunningAverage()
        self._result_count = RunningAverage()
        self._fusion_score = RunningAverage()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def search(
        self,
        request: SearchRequest | dict[str, Any],
        *,
        use_cache: bool = True,
    ) -> HybridSearchResponse:
        start = time.perf_counter()
        try:
            validated = validate_request(request)
        except ValidationError as exc:
            self._errors += 1
            logger.info("rejected search request", error=exc.message)
            raise

        config = self.config
        limit = validated.limit or config.final_result_limit
        caching = use_cache and config.cache_results
        key = self._cache_key(validated, config, limit)

        with structlog.contextvars.bound_contextvars(
            tenant_id=validated.tenant_id,
            strategy=validated.strategy,
        ):
            if caching:
                cached = await self._cache.get(key)
                if cached is not None:
                    self._searches += 1
                    logger.debug("hybrid cache hit", query=preview(validated.query))
                    return HybridSearchResponse.model_validate_json(cached)

            analysis = analyze_query(validated.query) if config.enable_query_analysis else None
            try:
                dispatch = await asyncio.wait_for(
                    self._dispatch(validated, config),
                    timeout=config.search_timeout_seconds,
                )
            except asyncio.TimeoutError:
                self._errors += 1
                logger.error(
                    "hybrid search timed out",
                    query=preview(validated.query),
                    timeout_seconds=config.search_timeout_seconds,
                )
                raise SearchTimeout(
                    f"Search exceeded {config.search_timeout_seconds:g}s timeout",
                    timeout_seconds=config.search_timeout_seconds,
                ) from None
            except HybridSearchError as exc:
                self._errors += 1
                logger.error(
                    "hybrid search failed",
                    query=preview(validated.query),
                    kind=exc.kind,
                    error=exc.message,
                )
                raise

            fusion_start = time.perf_counter()
            results = fuse_results(
                dispatch.vector_results,
                dispatch.keyword_results,
                settings=FusionSettings.from_config(config),
                limit=limit,
            )
            fusion_ms = (time.perf_counter() - fusion_start) * 1000

            response = HybridSearchResponse(
                results=results,
                metadata=self._metadata(
                    validated,
                    dispatch,
                    analysis,
                    fused=len(results),
                    fusion_ms=fusion_ms,
                    processing_ms=(time.perf_counter() - start) * 1000,
                ),
            )

            if caching:
                await self._cache.set(key, response.model_dump_json())
            self._record(validated, dispatch, response, fusion_ms)
            logger.debug(
                "hybrid search complete",
                results=len(results),
                processing_time_ms=round(response.metadata.processing_time_ms, 2),
            )
            return response

    def get_stats(self) -> HybridSearchStats:
        return HybridSearchStats(
            total_searches=self._searches,
            average_processing_time_ms=self._latency.value,
            vector_only_searches=self._strategy_counts["vector"],
            keyword_only_searches=self._strategy_counts["keyword"],
            hybrid_searches=self._strategy_counts["hybrid"],
            average_vector_time_ms=self._vector_time.value,
            average_keyword_time_ms=self._keyword_time.value,
            average_fusion_time_ms=self._fusion_time.value,
            average_result_count=self._result_count.value,
            average_fusion_score=self._fusion_score.value,
            cache_hit_rate=self._cache.counter.hit_rate,
            cache_size=len(self._cache),
            errors=self._errors,
        )

    def get_config(self) -> HybridQueryConfig:
        return self.config

    def update_config(self, updates: dict[str, Any]) -> HybridQueryConfig:
        """Apply a partial update atomically.

        Top-level keys update the engine config. ``embedding`` and
        ``vector_search`` sections are forwarded to those components. Every
        section is validated before any of them is applied.
        """
        engine_updates = {k: v for k, v in updates.items() if k not in _COMPONENT_SECTIONS}
        sections = {k: updates[k] for k in _COMPONENT_SECTIONS if k in updates}
        for name, section in sections.items():
            if not isinstance(section, dict):
                raise ValidationError(f"Config section {name!r} must be an object")

        try:
            new_config = merge_config(self.config, engine_updates)
            if "embedding" in sections:
                merge_config(self.embedding_service.config, sections["embedding"])
            if "vector_search" in sections:
                merge_config(self.vector_adapter.config, sections["vector_search"])
        except KeyError as exc:
            raise ValidationError(f"Unknown config field: {exc.args[0]}") from exc
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid config: {exc}") from exc

        if "embedding" in sections:
            self.embedding_service.update_config(sections["embedding"])
        if "vector_search" in sections:
            self.vector_adapter.update_config(sections["vector_search"])
        if sections:
            # Fused responses depend on component settings the key does not cover.
            self._cache.clear()
        self.config = new_config
        logger.info("hybrid config updated", fields=sorted(updates))
        return new_config

    async def clear_cache(self) -> None:
        """Drop fused responses and the caches of the components beneath."""
        self._cache.clear()
        await self.vector_adapter.clear_cache()
        await self.embedding_service.clear_cache()

    async def health_check(self) -> bool:
        """Run a canned query end-to-end, bypassing the response cache."""
        try:
            await self.search(HEALTH_CHECK_REQUEST, use_cache=False)
        except Exception as exc:
            logger.error("hybrid engine health check failed", error=str(exc))
            return False
        return True

    def own(self, *closers: Callable[[], None]) -> None:
        """Register cleanup callbacks that run on :meth:`close`."""
        self._closers.extend(closers)

    def close(self) -> None:
        self._cache.close()
        for closer in reversed(self._closers):
            closer()
        self._closers.clear()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, request: SearchRequest, config: HybridQueryConfig) -> _Dispatch:
        run_vector = request.strategy in {"vector", "hybrid", "auto"}
        run_keyword = request.strategy in {"keyword", "hybrid", "auto"}

        async def vector() -> list[RawResult]:
            embedding = await self.embedding_service.generate(request.query)
            return await self.vector_adapter.search(
                embedding.embedding,
                request.tenant_id,
                query=request.query,
                threshold=request.threshold,
                limit=config.max_vector_results,
                filters=request.filters,
            )

        async def keyword() -> list[RawResult]:
            return await self.keyword_adapter.search(
                request.query,
                request.tenant_id,
                filters=request.filters,
                limit=config.max_keyword_results,
            )

        if run_vector and run_keyword and config.enable_parallel_search:
            tasks = [
                asyncio.create_task(_timed(vector)),
                asyncio.create_task(_timed(keyword)),
            ]
            try:
                (vector_results, vector_ms), (keyword_results, keyword_ms) = await asyncio.gather(
                    *tasks
                )
            except Exception:
                # No partial results: stop whichever side is still running.
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            return _Dispatch(vector_results, keyword_results, vector_ms, keyword_ms)

        vector_results: list[RawResult] = []
        keyword_results: list[RawResult] = []
        vector_ms: float | None = None
        keyword_ms: float | None = None
        if run_vector:
            vector_results, vector_ms = await _timed(vector)
        if run_keyword:
            keyword_results, keyword_ms = await _timed(keyword)
        return _Dispatch(vector_results, keyword_results, vector_ms, keyword_ms)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_key(request: SearchRequest, config: HybridQueryConfig, limit: int) -> str:
        payload = {
            "query": request.query,
            "tenant_id": request.tenant_id,
            "filters": request.filters,
            "strategy": request.strategy,
            "limit": limit,
            "threshold": request.threshold,
            "config": config.fusion_fingerprint(),
        }
        raw = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @staticmethod
    def _metadata(
        request: SearchRequest,
        dispatch: _Dispatch,
        analysis: QueryAnalysis | None,
        *,
        fused: int,
        fusion_ms: float,
        processing_ms: float,
    ) -> ResponseMetadata:
        return ResponseMetadata(
            total_results=fused,
            search_strategy=request.strategy,
            processing_time_ms=processing_ms,
            vector_results=len(dispatch.vector_results),
            keyword_results=len(dispatch.keyword_results),
            fused_results=fused,
            vector_search_time_ms=dispatch.vector_time_ms,
            keyword_search_time_ms=dispatch.keyword_time_ms,
            fusion_time_ms=fusion_ms,
            query_type=analysis.type if analysis else None,
            query_complexity=analysis.complexity if analysis else None,
        )

    def _record(
        self,
        request: SearchRequest,
        dispatch: _Dispatch,
        response: HybridSearchResponse,
        fusion_ms: float,
    ) -> None:
        self._searches += 1
        if request.strategy == "vector":
            self._strategy_counts["vector"] += 1
        elif request.strategy == "keyword":
            self._strategy_counts["keyword"] += 1
        else:
            self._strategy_counts["hybrid"] += 1

        self._latency.add(response.metadata.processing_time_ms)
        if dispatch.vector_time_ms is not None:
            self._vector_time.add(dispatch.vector_time_ms)
        if dispatch.keyword_time_ms is not None:
            self._keyword_time.add(dispatch.keyword_time_ms)
        self._fusion_time.add(fusion_ms)
        self._result_count.add(len(response.results))
        if response.results:
            average = sum(result.fusion_score for result in response.results) / len(response.results)
            self._fusion_score.add(average)


def create_engine(
    settings: Settings,
    *,
    storage: StorageBackend | None = None,
    embedding_backend: EmbeddingBackend | None = None,
    cache_store: CacheStore | None = None,
) -> HybridQueryEngine:
    """Wire storage, embeddings and both adapters into an engine that owns them."""
    closers: list[Callable[[], None]] = []
    if storage is None:
        from ..storage.duckdb import DuckDBStorage

        duck = DuckDBStorage(settings.db_path)
        closers.append(duck.close)
        storage = duck

    embedding_service = EmbeddingService(
        settings.embedding,
        backend=embedding_backend,
        cache_store=cache_store,
    )
    closers.append(embedding_service.close)
    vector_adapter = VectorSearchAdapter(
        storage,
        settings.vector_search,
        cache_store=cache_store,
    )
    closers.append(vector_adapter.close)
    keyword_adapter = KeywordSearchAdapter(
        storage,
        default_limit=settings.hybrid.max_keyword_results,
    )
    engine = HybridQueryEngine(
        settings.hybrid,
        embedding_service,
        vector_adapter,
        keyword_adapter,
        cache_store=cache_store,
    )
    engine.own(*closers)
    return engine
