"""Tests for rank fusion scoring and merging."""

from __future__ import annotations

import pytest

from hybrid_search.config import HybridQueryConfig
from hybrid_search.models import RawResult
from hybrid_search.search import (
    FusionSettings,
    adaptive_score,
    fuse_results,
    rrf_score,
    weighted_score,
)


def _raw(doc_id: str, score: float) -> RawResult:
    return RawResult(id=doc_id, content=f"content of {doc_id}", score=score)


RRF = FusionSettings(algorithm="rrf", rrf_constant=60.0)


def test_rrf_sums_reciprocal_ranks() -> None:
    assert rrf_score(1, 2) == pytest.approx(1 / 61 + 1 / 62)
    assert rrf_score(3, None) == 1 / 63
    assert rrf_score(None, None) == 0.0
    assert rrf_score(1, None, k=10) == 1 / 11


@pytest.mark.parametrize("vector_score", [-0.5, 0.0, 0.4, 1.0, 3.0, None])
@pytest.mark.parametrize("keyword_score", [-1.0, 0.0, 0.6, 1.0, 12.0, None])
def test_weighted_score_stays_within_weight_sum(vector_score, keyword_score) -> None:
    score = weighted_score(vector_score, keyword_score, vector_weight=0.7, keyword_weight=0.3)

    assert 0.0 <= score <= 1.0 + 1e-12


def test_weighted_score_clamps_each_input() -> None:
    assert weighted_score(2.0, 5.0) == pytest.approx(1.0)
    assert weighted_score(0.5, None, vector_weight=0.6, keyword_weight=0.4) == pytest.approx(0.3)


def test_adaptive_blends_weighted_and_rrf() -> None:
    expected = weighted_score(0.9, 0.5) * 0.7 + rrf_score(1, 2) * 0.3

    assert adaptive_score(0.9, 0.5, 1, 2) == pytest.approx(expected)


def test_settings_follow_config() -> None:
    settings = FusionSettings.from_config(
        HybridQueryConfig(fusion_algorithm="weighted", vector_weight=0.5, keyword_weight=0.5)
    )

    assert settings.algorithm == "weighted"
    assert settings.score(
        vector_score=1.0, keyword_score=0.0, vector_rank=1, keyword_rank=None
    ) == pytest.approx(0.5)


def test_rrf_scenario_prefers_document_in_both_sources() -> None:
    fused = fuse_results(
        [_raw("a", 0.9)],
        [_raw("b", 1.0), _raw("a", 0.5)],
        settings=RRF,
        limit=10,
    )

    assert [r.id for r in fused] == ["a", "b"]
    a, b = fused
    assert a.fusion_score == pytest.approx(1 / 61 + 1 / 62)
    assert b.fusion_score == pytest.approx(1 / 61)
    assert a.sources == ["vector", "keyword"]
    assert (a.vector_rank, a.keyword_rank) == (1, 2)
    assert a.vector_score == 0.9
    assert a.keyword_score == 0.5


def test_single_source_documents_keep_absent_fields_unset() -> None:
    fused = fuse_results([_raw("v", 0.8)], [_raw("k", 0.7)], settings=RRF, limit=10)

    by_id = {r.id: r for r in fused}
    assert by_id["v"].sources == ["vector"]
    assert by_id["v"].keyword_rank is None
    assert by_id["v"].keyword_score is None
    assert by_id["v"].fusion_score == 1 / 61
    assert by_id["k"].sources == ["keyword"]
    assert by_id["k"].vector_rank is None


def test_base_fields_come_from_vector_result() -> None:
    vector = RawResult(id="a", content="vector copy", score=0.9)
    keyword = RawResult(id="a", content="keyword copy", score=0.2)

    (fused,) = fuse_results([vector], [keyword], settings=RRF, limit=5)

    assert fused.content == "vector copy"
    assert fused.score == 0.9


def test_results_sorted_and_truncated() -> None:
    vector = [_raw(f"v{i}", 0.9 - i * 0.1) for i in range(5)]
    keyword = [_raw(f"k{i}", 0.9 - i * 0.1) for i in range(5)]

    fused = fuse_results(vector, keyword, settings=FusionSettings(algorithm="weighted"), limit=3)

    assert len(fused) == 3
    scores = [r.fusion_score for r in fused]
    assert scores == sorted(scores, reverse=True)
    assert fused[0].id == "v0"


def test_duplicate_ids_keep_first_position() -> None:
    fused = fuse_results([_raw("a", 0.9), _raw("a", 0.1)], [], settings=RRF, limit=10)

    assert len(fused) == 1
    assert fused[0].vector_rank == 1


def test_every_result_claims_a_source_it_appears_in() -> None:
    vector = [_raw("a", 0.9), _raw("b", 0.8), _raw("c", 0.7)]
    keyword = [_raw("c", 1.0), _raw("d", 0.5)]
    vector_ids = {r.id for r in vector}
    keyword_ids = {r.id for r in keyword}

    for result in fuse_results(vector, keyword, settings=FusionSettings(), limit=10):
        assert result.sources
        assert ("vector" in result.sources) == (result.id in vector_ids)
        assert ("keyword" in result.sources) == (result.id in keyword_ids)


def test_empty_inputs_produce_empty_output() -> None:
    assert fuse_results([], [], settings=RRF, limit=10) == []
