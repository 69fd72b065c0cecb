"""Retrieval adapters, fusion and the hybrid query engine."""

from .analysis import QueryAnalysis, analyze_query, analyze_query_complexity, detect_query_intent
from .engine import HybridQueryEngine, HybridSearchStats, create_engine
from .filters import (
    MetadataFilter,
    MetadataFilterParseError,
    filters_from_mapping,
    parse_filter_expression,
    parse_metadata_filters,
    supported_filter_syntax,
)
from .fusion import FusionSettings, adaptive_score, fuse_results, rrf_score, weighted_score
from .keyword import KeywordSearchAdapter, prepare_search_query
from .vector import VectorSearchAdapter, keyword_overlap, rerank_results

__all__ = [
    "QueryAnalysis",
    "analyze_query",
    "analyze_query_complexity",
    "detect_query_intent",
    "HybridQueryEngine",
    "HybridSearchStats",
    "create_engine",
    "MetadataFilter",
    "MetadataFilterParseError",
    "filters_from_mapping",
    "parse_filter_expression",
    "parse_metadata_filters",
    "supported_filter_syntax",
    "FusionSettings",
    "adaptive_score",
    "fuse_results",
    "rrf_score",
    "weighted_score",
    "KeywordSearchAdapter",
    "prepare_search_query",
    "VectorSearchAdapter",
    "keyword_overlap",
    "rerank_results",
]
