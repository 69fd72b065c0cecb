import pytest
from pydantic import ValidationError as PydanticValidationError

from hybrid_search.errors import ValidationError
from hybrid_search.models import FusedResult, SearchRequest, validate_request
from hybrid_search.storage import row_to_result


def test_validate_request_applies_defaults() -> None:
    request = validate_request({"query": "refund policy", "tenant_id": "t1"})

    assert request.strategy == "auto"
    assert request.limit is None
    assert request.filters is None
    assert validate_request(request) is request


def test_validate_request_collects_messages() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_request({"query": "", "tenant_id": "", "limit": 0})

    assert exc_info.value.details["errors"] == 3
    assert "tenant_id" in exc_info.value.message


def test_search_request_is_immutable() -> None:
    request = SearchRequest(query="refund", tenant_id="t1")

    with pytest.raises(PydanticValidationError):
        request.query = "other"  # type: ignore[misc]


def test_fused_result_sources_must_match_ranks() -> None:
    FusedResult(
        id="a",
        content="x",
        score=0.9,
        fusion_score=0.1,
        sources=["vector"],
        vector_rank=1,
    )
    with pytest.raises(PydanticValidationError):
        FusedResult(id="a", content="x", score=0.9, fusion_score=0.1, sources=[])
    with pytest.raises(PydanticValidationError):
        FusedResult(
            id="a",
            content="x",
            score=0.9,
            fusion_score=0.1,
            sources=["vector"],
            keyword_rank=2,
        )


def test_row_to_result_maps_known_metadata() -> None:
    result = row_to_result(
        {
            "id": 42,
            "content": "refund policy",
            "similarity": 0.83,
            "metadata": {
                "nodeType": "faq",
                "tags": ["billing"],
                "createdAt": "2024-03-01T10:00:00",
                "priority": 3,
            },
        },
        score_field="similarity",
    )

    assert result.id == "42"
    assert result.score == 0.83
    assert result.metadata.node_type == "faq"
    assert result.metadata.tags == ["billing"]
    assert result.metadata.created_at is not None
    assert result.metadata.created_at.year == 2024
    assert result.metadata.extra == {"priority": 3}


def test_row_to_result_tolerates_sparse_rows() -> None:
    result = row_to_result({"id": "a", "metadata": "not a dict"}, score_field="rank")

    assert result.content == ""
    assert result.score == 0.0
    assert result.metadata.node_type == "unknown"
