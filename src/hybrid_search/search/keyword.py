"""
Full-text keyword search over the storage backend.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any

import structlog

from ..errors import ValidationError
from ..logs import preview
from ..models import RawResult
from ..stats import RunningAverage
from ..storage.base import StorageBackend, row_to_result


logger = structlog.get_logger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_MIN_TERM_LENGTH = 3


def prepare_search_query(query: str) -> str:
    """Build a disjunctive prefix query (``refund:* | policy:*``) from free text.

    Falls back to the raw query when no term of three or more characters
    survives normalization.
    """
    normalized = _WHITESPACE_RE.sub(" ", _NON_WORD_RE.sub(" ", query)).strip()
    words = [word for word in normalized.split(" ") if len(word) >= _MIN_TERM_LENGTH]
    if not words:
        return query
    return " | ".join(f"{word}:*" for word in words)


@dataclass(frozen=True)
class KeywordSearchStats:
    """Snapshot of keyword adapter counters."""

    total_searches: int
    failed_searches: int
    average_processing_time_ms: float
    average_result_count: float


class KeywordSearchAdapter:
    """Keyword search that degrades to no results when the backend fails."""

    def __init__(self, storage: StorageBackend, *, default_limit: int = 20) -> None:
        self.storage = storage
        self.default_limit = default_limit
        self._searches = 0
        self._failures = 0
        self._latency = RunningAverage()
        self._result_count = RunningAverage()

    async def search(
        self,
        query: str,
        tenant_id: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[RawResult]:
        if not tenant_id or not tenant_id.strip():
            raise ValidationError("Tenant ID is required")
        start = time.perf_counter()
        self._searches += 1
        search_query = prepare_search_query(query)
        try:
            rows = await asyncio.to_thread(
                self.storage.keyword_search,
                search_query=search_query,
                tenant_id=tenant_id,
                max_results=limit or self.default_limit,
                filters=filters,
            )
            results = [row_to_result(row, score_field="rank") for row in rows]
        except ValidationError:
            raise
        except Exception as exc:
            self._failures += 1
            logger.warning(
                "keyword search failed, continuing without keyword results",
                tenant_id=tenant_id,
                query=preview(query),
                error=str(exc),
            )
            return []

        self._latency.add((time.perf_counter() - start) * 1000)
        self._result_count.add(len(results))
        return results

    def get_stats(self) -> KeywordSearchStats:
        return KeywordSearchStats(
            total_searches=self._searches,
            failed_searches=self._failures,
            average_processing_time_ms=self._latency.value,
            average_result_count=self._result_count.value,
        )
