"""
Rank fusion for merging vector and keyword result sets.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from ..config import FusionAlgorithm, HybridQueryConfig
from ..models import FusedResult, RawResult, SearchSource


def rrf_score(vector_rank: int | None, keyword_rank: int | None, *, k: float = 60.0) -> float:
    """Reciprocal Rank Fusion: sum of ``1/(k + rank)`` over contributing sources."""
    score = 0.0
    if vector_rank is not None:
        score += 1.0 / (k + vector_rank)
    if keyword_rank is not None:
        score += 1.0 / (k + keyword_rank)
    return score


def _clamp(score: float | None) -> float:
    if score is None:
        return 0.0
    return min(max(score, 0.0), 1.0)


def weighted_score(
    vector_score: float | None,
    keyword_score: float | None,
    *,
    vector_weight: float = 0.7,
    keyword_weight: float = 0.3,
) -> float:
    """Blend raw scores, each clamped to [0, 1] first."""
    return _clamp(vector_score) * vector_weight + _clamp(keyword_score) * keyword_weight


@dataclass(frozen=True)
class FusionSettings:
    """Scoring parameters captured from the engine config for one search."""

    algorithm: FusionAlgorithm = "adaptive"
    vector_weight: float = 0.7
    keyword_weight: float = 0.3
    rrf_constant: float = 60.0
    adaptive_weighted_share: float = 0.7
    adaptive_rrf_share: float = 0.3

    @classmethod
    def from_config(cls, config: HybridQueryConfig) -> "FusionSettings":
        return cls(
            algorithm=config.fusion_algorithm,
            vector_weight=config.vector_weight,
            keyword_weight=config.keyword_weight,
            rrf_constant=config.rrf_constant,
            adaptive_weighted_share=config.adaptive_weighted_share,
            adaptive_rrf_share=config.adaptive_rrf_share,
        )

    def score(
        self,
        *,
        vector_score: float | None,
        keyword_score: float | None,
        vector_rank: int | None,
        keyword_rank: int | None,
    ) -> float:
        if self.algorithm == "rrf":
            return rrf_score(vector_rank, keyword_rank, k=self.rrf_constant)
        weighted = weighted_score(
            vector_score,
            keyword_score,
            vector_weight=self.vector_weight,
            keyword_weight=self.keyword_weight,
        )
        if self.algorithm == "weighted":
            return weighted
        rrf = rrf_score(vector_rank, keyword_rank, k=self.rrf_constant)
        return weighted * self.adaptive_weighted_share + rrf * self.adaptive_rrf_share


def adaptive_score(
    vector_score: float | None,
    keyword_score: float | None,
    vector_rank: int | None,
    keyword_rank: int | None,
    *,
    settings: FusionSettings | None = None,
) -> float:
    """Weighted blend plus a rank-agreement term."""
    active = replace(settings or FusionSettings(), algorithm="adaptive")
    return active.score(
        vector_score=vector_score,
        keyword_score=keyword_score,
        vector_rank=vector_rank,
        keyword_rank=keyword_rank,
    )


def _rank_map(results: list[RawResult]) -> dict[str, tuple[int, RawResult]]:
    ranks: dict[str, tuple[int, RawResult]] = {}
    for position, result in enumerate(results, start=1):
        # A backend repeating an id keeps its best (first) position.
        ranks.setdefault(result.id, (position, result))
    return ranks


def fuse_results(
    vector_results: list[RawResult],
    keyword_results: list[RawResult],
    *,
    settings: FusionSettings,
    limit: int,
) -> list[FusedResult]:
    """Merge both result sets by id, score them and return the top ``limit``.

    Ranks are 1-based positions within each source's own ordering. A result
    missing from one source keeps ``None`` for that source's rank and score.
    Ordering is by fusion score descending; ties keep first-seen order
    (vector results before keyword-only results).
    """
    vector_ranks = _rank_map(vector_results)
    keyword_ranks = _rank_map(keyword_results)

    ordered_ids = list(vector_ranks)
    ordered_ids.extend(doc_id for doc_id in keyword_ranks if doc_id not in vector_ranks)

    fused: list[FusedResult] = []
    for doc_id in ordered_ids:
        vector_entry = vector_ranks.get(doc_id)
        keyword_entry = keyword_ranks.get(doc_id)
        vector_rank = vector_entry[0] if vector_entry else None
        keyword_rank = keyword_entry[0] if keyword_entry else None
        vector_score = vector_entry[1].score if vector_entry else None
        keyword_score = keyword_entry[1].score if keyword_entry else None

        sources: list[SearchSource] = []
        if vector_entry:
            sources.append("vector")
        if keyword_entry:
            sources.append("keyword")

        base = vector_entry[1] if vector_entry else keyword_entry[1]  # type: ignore[index]
        fused.append(
            FusedResult(
                id=base.id,
                content=base.content,
                score=base.score,
                metadata=base.metadata,
                vector_score=vector_score,
                keyword_score=keyword_score,
                fusion_score=settings.score(
                    vector_score=vector_score,
                    keyword_score=keyword_score,
                    vector_rank=vector_rank,
                    keyword_rank=keyword_rank,
                ),
                sources=sources,
                vector_rank=vector_rank,
                keyword_rank=keyword_rank,
            )
        )

    fused.sort(key=lambda result: -result.fusion_score)
    return fused[: max(limit, 1)]
