"""Tests for keyword query preparation and the keyword adapter."""

from __future__ import annotations

import pytest

from hybrid_search.errors import ValidationError
from hybrid_search.search import KeywordSearchAdapter, prepare_search_query

from conftest import FakeStorage, keyword_row


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("refund policy", "refund:* | policy:*"),
        ("What's the refund-policy?!", "What:* | the:* | refund:* | policy:*"),
        ("  multiple   spaces\there ", "multiple:* | spaces:* | here:*"),
        ("a b", "a b"),
        ("?!", "?!"),
    ],
)
def test_prepare_search_query(query: str, expected: str) -> None:
    assert prepare_search_query(query) == expected


@pytest.mark.asyncio
async def test_search_maps_rows_and_passes_prepared_query() -> None:
    storage = FakeStorage(keyword_rows=[keyword_row("a", 0.9), keyword_row("b", 0.4)])
    adapter = KeywordSearchAdapter(storage)

    results = await adapter.search("refund policy", "tenant-1", filters={"node_type": "faq"}, limit=5)

    assert [r.id for r in results] == ["a", "b"]
    assert results[0].score == 0.9
    assert results[0].metadata.node_type == "faq"
    call = storage.keyword_calls[0]
    assert call["search_query"] == "refund:* | policy:*"
    assert call["tenant_id"] == "tenant-1"
    assert call["max_results"] == 5
    assert call["filters"] == {"node_type": "faq"}


@pytest.mark.asyncio
async def test_default_limit_applies() -> None:
    storage = FakeStorage(keyword_rows=[keyword_row(str(i), 0.5) for i in range(10)])
    adapter = KeywordSearchAdapter(storage, default_limit=3)

    results = await adapter.search("refund", "tenant-1")

    assert len(results) == 3


@pytest.mark.asyncio
async def test_backend_failure_degrades_to_empty_list() -> None:
    storage = FakeStorage(keyword_error=RuntimeError("text index unavailable"))
    adapter = KeywordSearchAdapter(storage)

    assert await adapter.search("refund", "tenant-1") == []
    stats = adapter.get_stats()
    assert stats.total_searches == 1
    assert stats.failed_searches == 1


@pytest.mark.asyncio
async def test_invalid_filter_is_not_swallowed() -> None:
    storage = FakeStorage(keyword_error=ValidationError("bad filter"))
    adapter = KeywordSearchAdapter(storage)

    with pytest.raises(ValidationError):
        await adapter.search("refund", "tenant-1")


@pytest.mark.asyncio
@pytest.mark.parametrize("tenant", ["", "   "])
async def test_blank_tenant_rejected(tenant: str) -> None:
    adapter = KeywordSearchAdapter(FakeStorage())

    with pytest.raises(ValidationError):
        await adapter.search("refund", tenant)
