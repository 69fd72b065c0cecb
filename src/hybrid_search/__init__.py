"""
HybridSearch - hybrid vector + keyword retrieval with rank fusion.

This package embeds queries, dispatches them to vector and keyword search
backends in parallel, and fuses the two result lists into a single ranking
(Reciprocal Rank Fusion, weighted blending or an adaptive mix of both).

Example usage:
    >>> from hybrid_search import create_engine, load_settings
    >>> engine = create_engine(load_settings())
    >>> response = await engine.search({"query": "refund policy", "tenant_id": "t1"})
"""

from .cache import CacheStats, CacheStore, LRUCache, TieredCache
from .config import (
    CacheConfig,
    EmbeddingConfig,
    HybridQueryConfig,
    Settings,
    VectorSearchConfig,
    load_settings,
)
from .embeddings import EmbeddingService, EmbeddingStats
from .errors import (
    BackendUnavailable,
    HybridSearchError,
    InputTooLarge,
    InvalidEmbeddingResult,
    ProviderError,
    RateLimited,
    SearchTimeout,
    ValidationError,
)
from .ingest import IngestResult, KnowledgeIngestor
from .models import (
    EmbeddingResult,
    FusedResult,
    HybridSearchResponse,
    KnowledgeNode,
    RawResult,
    SearchRequest,
)
from .search import (
    HybridQueryEngine,
    HybridSearchStats,
    KeywordSearchAdapter,
    VectorSearchAdapter,
    create_engine,
)

__all__ = [
    # Cache
    "CacheStats",
    "CacheStore",
    "LRUCache",
    "TieredCache",
    # Config
    "CacheConfig",
    "EmbeddingConfig",
    "HybridQueryConfig",
    "Settings",
    "VectorSearchConfig",
    "load_settings",
    # Embeddings
    "EmbeddingService",
    "EmbeddingStats",
    # Errors
    "BackendUnavailable",
    "HybridSearchError",
    "InputTooLarge",
    "InvalidEmbeddingResult",
    "ProviderError",
    "RateLimited",
    "SearchTimeout",
    "ValidationError",
    # Ingestion
    "IngestResult",
    "KnowledgeIngestor",
    # Models
    "EmbeddingResult",
    "FusedResult",
    "HybridSearchResponse",
    "KnowledgeNode",
    "RawResult",
    "SearchRequest",
    # Search
    "HybridQueryEngine",
    "HybridSearchStats",
    "KeywordSearchAdapter",
    "VectorSearchAdapter",
    "create_engine",
]
