"""
Embedding service for query and document vectors.

Wraps a provider backend (OpenAI-compatible HTTP API or Google GenAI)
behind content-hash caching, input validation, batch chunking, a shared
request budget and retry with backoff.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Protocol

import httpx
import structlog
from google.genai import Client as GenAIClient
from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .cache import CacheStore, LRUCache, TieredCache
from .config import EmbeddingConfig, merge_config
from .errors import (
    HybridSearchError,
    InputTooLarge,
    InvalidEmbeddingResult,
    ProviderError,
    RateLimited,
    ValidationError,
)
from .logs import preview
from .models import EmbeddingResult
from .ratelimit import RateLimiter
from .stats import HitCounter, RunningAverage


logger = structlog.get_logger(__name__)

_HEALTH_CHECK_TEXT = "Health check test"
_MAX_BACKOFF_SECONDS = 10.0

EmbeddingTask = Literal["query", "document"]
_GENAI_TASK_TYPES: dict[str, str] = {"query": "RETRIEVAL_QUERY", "document": "RETRIEVAL_DOCUMENT"}

EmbeddingTask = Literal["query", "document"]
_GENAI_TASK_TYPES: dict[str, str] = {"query": "RETRIEVAL_QUERY", "document": "RETRIEVAL_DOCUMENT"}


class EmbeddingBackend(Protocol):
    """Capability every provider implements."""

    def embed(self, texts: list[str], *, task: EmbeddingTask = "query") -> list[list[float]]:
        """Return one vector per input text, in order.

        *task* says whether the texts are search queries or corpus documents;
        providers without asymmetric embeddings ignore it.
        """


class OpenAIEmbeddingBackend:
    """OpenAI-compatible ``/embeddings`` endpoint over HTTP."""

    def __init__(self, config: EmbeddingConfig, *, client: httpx.Client | None = None) -> None:
        api_key = config.api_key.get_secret_value() if config.api_key else os.getenv("OPENAI_API_KEY")
        if api_key is None:
            raise ValueError(
                "OPENAI_API_KEY not found. "
                "Provide api_key or set the environment variable."
            )
        self.model = config.model
        self.dimensions = config.dimensions
        self._url = config.base_url.rstrip("/") + "/embeddings"
        self._client = client or httpx.Client(timeout=config.request_timeout_seconds)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def embed(self, texts: list[str], *, task: EmbeddingTask = "query") -> list[list[float]]:
        payload: dict[str, Any] = {
            "input": texts[0] if len(texts) == 1 else texts,
            "model": self.model,
            "encoding_format": "float",
        }
        if self.model.startswith("text-embedding-3"):
            payload["dimensions"] = self.dimensions

        try:
            response = self._client.post(self._url, json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Embedding request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimited(
                f"Embedding provider rate limit ({response.status_code}): {response.text[:200]}"
            )
        if not response.is_success:
            raise ProviderError(
                f"Embedding provider error ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()["data"]
            rows = sorted(data, key=lambda row: row.get("index", 0))
            return [list(row["embedding"]) for row in rows]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError("Invalid response from embedding provider") from exc

    def close(self) -> None:
        self._client.close()


class GenAIEmbeddingBackend:
    """Google GenAI embedding models."""

    def __init__(self, config: EmbeddingConfig, *, client: Any | None = None) -> None:
        self.model = config.model
        self.dimensions = config.dimensions
        if client is not None:
            self._client = client
        else:
            resolved_key = (
                config.api_key.get_secret_value() if config.api_key else os.getenv("GOOGLE_API_KEY")
            )
            if resolved_key is None:
                raise ValueError(
                    "GOOGLE_API_KEY not found. "
                    "Provide api_key or set the environment variable."
                )
            self._client = GenAIClient(api_key=resolved_key)

    def embed(self, texts: list[str], *, task: EmbeddingTask = "query") -> list[list[float]]:
        try:
            result = self._client.models.embed_content(
                model=self.model,
                contents=texts,
                config={
                    "task_type": _GENAI_TASK_TYPES[task],
                    "output_dimensionality": self.dimensions,
                },
            )
        except Exception as exc:
            raise ProviderError(f"GenAI embedding failed: {exc}") from exc
        if not result.embeddings:
            raise ProviderError("Invalid response from GenAI embedding API")
        return [list(emb.values) for emb in result.embeddings]


_BACKENDS: dict[str, Callable[..., EmbeddingBackend]] = {
    "openai": OpenAIEmbeddingBackend,
    "genai": GenAIEmbeddingBackend,
}


def resolve_backend(config: EmbeddingConfig, *, client: Any | None = None) -> EmbeddingBackend:
    """Build the backend registered for ``config.provider``."""
    try:
        factory = _BACKENDS[config.provider]
    except KeyError:
        raise ValueError(f"Unsupported embedding provider: {config.provider}") from None
    return factory(config, client=client)


@dataclass(frozen=True)
class EmbeddingStats:
    """Snapshot of embedding service counters."""

    provider: str
    model: str
    total_embeddings_generated: int
    average_processing_time_ms: float
    cache_hits: int
    cache_misses: int
    cache_hit_rate: float
    cache_size: int
    errors: int
    batches_processed: int
    batch_success_rate: float


@dataclass
class _BatchItem:
    """One text moving through the batch pipeline; carries a vector or an error kind."""

    index: int
    text: str
    key: str | None = None
    vector: list[float] | None = None
    cached: bool = False
    error: str | None = None

    @property
    def pending(self) -> bool:
        return self.error is None and self.vector is None


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and not isinstance(exc, InvalidEmbeddingResult)


class EmbeddingService:
    """Turn text into validated, cached embedding vectors."""

    def __init__(
        self,
        config: EmbeddingConfig,
        *,
        backend: EmbeddingBackend | None = None,
        client: Any | None = None,
        cache_store: CacheStore | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.config = config
        self._client = client
        self.backend = backend or resolve_backend(config, client=client)
        self._owns_limiter = rate_limiter is None
        self.rate_limiter = rate_limiter or RateLimiter(config.requests_per_minute)
        self._clock = clock
        self._cache = TieredCache(
            LRUCache(
                max_size=config.cache.max_size,
                ttl_seconds=config.cache.ttl_seconds,
                sweep_interval_seconds=config.cache.sweep_interval_seconds,
                name="embeddings",
            ),
            store=cache_store,
            namespace="embedding",
            store_timeout_seconds=config.cache.store_timeout_seconds,
        )
        self._generated = 0
        self._latency = RunningAverage()
        self._hits = HitCounter()
        self._errors = 0
        self._batches = 0
        self._batch_success = RunningAverage()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def content_key(self, text: str, task: EmbeddingTask = "query") -> str:
        """Cache key for *text* under the active model and embedding task."""
        digest = hashlib.sha256()
        digest.update(text.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(self.config.model.encode("utf-8"))
        if task != "query":
            digest.update(b"\x00" + task.encode("utf-8"))
        return digest.hexdigest()

    async def generate(
        self,
        text: str,
        *,
        use_cache: bool = True,
        task: EmbeddingTask = "query",
    ) -> EmbeddingResult:
        """Embed a single text, serving from cache when possible."""
        start = self._clock()
        try:
            self._validate_text(text)
        except ValidationError:
            self._errors += 1
            raise
        key = self.content_key(text, task)
        caching = use_cache and self.config.cache_enabled

        if caching:
            cached = await self._lookup(key)
            if cached is not None:
                return self._result(key, cached, start, cached=True)

        try:
            vectors = await self._call_provider([text], task)
            vector = self._verify(vectors[0])
        except HybridSearchError as exc:
            self._errors += 1
            logger.error(
                "embedding generation failed",
                provider=self.config.provider,
                kind=exc.kind,
                error=exc.message,
                text=preview(text, 50),
            )
            raise

        if caching:
            await self._cache.set(key, json.dumps(vector))
        result = self._result(key, vector, start, cached=False)
        self._generated += 1
        self._latency.add(result.processing_time_ms)
        return result

    async def generate_batch(
        self,
        texts: list[str],
        *,
        task: EmbeddingTask = "query",
    ) -> list[EmbeddingResult]:
        """Embed many texts with best-effort semantics.

        Invalid items are skipped (and counted as errors) rather than failing
        the batch. Results keep input order with failed items omitted.
        Provider calls are chunked by ``batch_size`` with a delay between
        chunks; exhausting the request budget raises ``RateLimited``. Pass
        ``task="document"`` when embedding corpus text for storage.
        """
        if not texts:
            return []
        start = self._clock()
        items = [_BatchItem(index=i, text=text) for i, text in enumerate(texts)]

        self._stage_validate(items, task)
        if self.config.cache_enabled:
            await self._stage_cache_lookup(items)
        await self._stage_fetch(items, task)
        self._stage_verify(items)
        if self.config.cache_enabled:
            await self._stage_store(items)

        results: list[EmbeddingResult] = []
        failed = 0
        for item in items:
            if item.error is not None or item.vector is None or item.key is None:
                failed += 1
                continue
            results.append(self._result(item.key, item.vector, start, cached=item.cached))
            if not item.cached:
                self._generated += 1
                self._latency.add(results[-1].processing_time_ms)

        self._errors += failed
        self._batches += 1
        self._batch_success.add(len(results) / len(items))
        if failed:
            logger.warning(
                "batch embedding skipped items",
                requested=len(items),
                succeeded=len(results),
                failed=failed,
            )
        return results

    def get_stats(self) -> EmbeddingStats:
        return EmbeddingStats(
            provider=self.config.provider,
            model=self.config.model,
            total_embeddings_generated=self._generated,
            average_processing_time_ms=self._latency.value,
            cache_hits=self._hits.hits,
            cache_misses=self._hits.misses,
            cache_hit_rate=self._hits.hit_rate,
            cache_size=len(self._cache),
            errors=self._errors,
            batches_processed=self._batches,
            batch_success_rate=self._batch_success.value if self._batches else 0.0,
        )

    def get_config(self) -> EmbeddingConfig:
        return self.config

    def update_config(self, updates: dict[str, Any]) -> EmbeddingConfig:
        """Apply a partial config update; re-resolve the backend if the provider changed."""
        try:
            new_config = merge_config(self.config, updates)
        except KeyError as exc:
            raise ValidationError(f"Unknown embedding config field: {exc.args[0]}") from exc
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid embedding config: {exc}") from exc

        provider_changed = any(
            getattr(new_config, name) != getattr(self.config, name)
            for name in ("provider", "model", "dimensions", "api_key", "base_url")
        )
        if provider_changed:
            self.backend = resolve_backend(new_config, client=self._client)
        if self._owns_limiter and new_config.requests_per_minute != self.config.requests_per_minute:
            self.rate_limiter = RateLimiter(new_config.requests_per_minute)
        self.config = new_config
        return new_config

    async def clear_cache(self) -> None:
        self._cache.clear()
        self._hits.reset()

    async def health_check(self) -> bool:
        try:
            result = await self.generate(_HEALTH_CHECK_TEXT, use_cache=False)
        except Exception as exc:
            logger.error("embedding health check failed", error=str(exc))
            return False
        return result.dimensions == self.config.dimensions

    def close(self) -> None:
        self._cache.close()
        close_backend = getattr(self.backend, "close", None)
        if callable(close_backend):
            close_backend()

    # ------------------------------------------------------------------
    # Batch pipeline stages
    # ------------------------------------------------------------------

    def _stage_validate(self, items: list[_BatchItem], task: EmbeddingTask) -> None:
        for item in items:
            try:
                self._validate_text(item.text)
            except ValidationError as exc:
                item.error = exc.kind
                continue
            item.key = self.content_key(item.text, task)

    async def _stage_cache_lookup(self, items: list[_BatchItem]) -> None:
        for item in items:
            if item.error is None and item.key is not None:
                cached = await self._lookup(item.key)
                if cached is not None:
                    item.vector = cached
                    item.cached = True

    async def _stage_fetch(self, items: list[_BatchItem], task: EmbeddingTask) -> None:
        pending = [item for item in items if item.pending]
        size = self.config.batch_size
        chunks = [pending[i : i + size] for i in range(0, len(pending), size)]
        for position, chunk in enumerate(chunks):
            if position > 0 and self.config.batch_delay_seconds > 0:
                await asyncio.sleep(self.config.batch_delay_seconds)
            try:
                vectors = await self._call_provider([item.text for item in chunk], task)
            except RateLimited:
                raise
            except ProviderError as exc:
                logger.warning(
                    "batch chunk failed, retrying items individually",
                    chunk=position,
                    size=len(chunk),
                    error=exc.message,
                )
                await self._fetch_individually(chunk, task)
                continue
            for item, vector in zip(chunk, vectors):
                item.vector = vector

    async def _fetch_individually(self, chunk: list[_BatchItem], task: EmbeddingTask) -> None:
        for item in chunk:
            try:
                item.vector = (await self._call_provider([item.text], task))[0]
            except RateLimited:
                raise
            except ProviderError as exc:
                item.error = exc.kind

    def _stage_verify(self, items: list[_BatchItem]) -> None:
        for item in items:
            if item.error is not None or item.vector is None or item.cached:
                continue
            try:
                item.vector = self._verify(item.vector)
            except InvalidEmbeddingResult as exc:
                item.error = exc.kind
                item.vector = None

    async def _stage_store(self, items: list[_BatchItem]) -> None:
        for item in items:
            if item.error is None and item.vector is not None and not item.cached and item.key:
                await self._cache.set(item.key, json.dumps(item.vector))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_text(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Content cannot be empty")
        if len(text) > self.config.max_input_chars:
            raise InputTooLarge(
                f"Content too long: maximum {self.config.max_input_chars} characters allowed",
                length=len(text),
            )

    def _verify(self, vector: Any) -> list[float]:
        if not isinstance(vector, (list, tuple)) or len(vector) != self.config.dimensions:
            actual = len(vector) if isinstance(vector, (list, tuple)) else None
            logger.warning(
                "invalid embedding result",
                expected_dimensions=self.config.dimensions,
                actual_length=actual,
                model=self.config.model,
            )
            raise InvalidEmbeddingResult(
                "Generated embedding failed validation",
                expected_dimensions=self.config.dimensions,
                actual_length=actual,
            )
        values: list[float] = []
        for value in vector:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise InvalidEmbeddingResult("Generated embedding contains non-numeric values")
            values.append(float(value))
        return values

    async def _lookup(self, key: str) -> list[float] | None:
        raw = await self._cache.get(key)
        vector: list[float] | None = None
        if raw is not None:
            try:
                decoded = json.loads(raw)
                vector = self._verify(decoded)
            except (ValueError, InvalidEmbeddingResult):
                await self._cache.delete(key)
                vector = None
        self._hits.record(vector is not None)
        return vector

    async def _call_provider(
        self,
        texts: list[str],
        task: EmbeddingTask = "query",
    ) -> list[list[float]]:
        vectors: list[list[float]] = []
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_seconds,
                max=_MAX_BACKOFF_SECONDS,
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                self.rate_limiter.acquire()
                try:
                    vectors = await asyncio.to_thread(self.backend.embed, texts, task=task)
                except HybridSearchError:
                    raise
                except Exception as exc:
                    raise ProviderError(f"Embedding provider call failed: {exc}") from exc
        if len(vectors) != len(texts):
            raise InvalidEmbeddingResult(
                f"Provider returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors

    def _result(
        self,
        key: str,
        vector: list[float],
        start: float,
        *,
        cached: bool,
    ) -> EmbeddingResult:
        return EmbeddingResult(
            id=key,
            embedding=vector,
            dimensions=len(vector),
            model=self.config.model,
            processing_time_ms=(self._clock() - start) * 1000,
            cached=cached,
        )
