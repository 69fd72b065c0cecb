from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

SearchStrategy: TypeAlias = Literal["auto", "vector", "keyword", "hybrid"]
SearchSource: TypeAlias = Literal["vector", "keyword"]
QueryType: TypeAlias = Literal["semantic", "keyword", "mixed"]

MAX_QUERY_CHARS = 1000
MAX_LIMIT = 100


class SearchRequest(BaseModel):
    """A validated, immutable hybrid search request"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    query: str = Field(description="Natural-language query", max_length=MAX_QUERY_CHARS)
    tenant_id: str = Field(description="Tenant (business) scope for the search")
    filters: dict[str, Any] | None = Field(
        default=None, description="Structured metadata predicate"
    )
    limit: int | None = Field(default=None, ge=1, le=MAX_LIMIT)
    threshold: float | None = Field(default=None, ge=0, le=1)
    strategy: SearchStrategy = "auto"

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Query cannot be empty")
        return value

    @field_validator("tenant_id")
    @classmethod
    def _tenant_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Tenant ID is required")
        return value


def validate_request(request: SearchRequest | dict[str, Any]) -> SearchRequest:
    """Coerce *request* into a SearchRequest, raising the domain ValidationError."""
    if isinstance(request, SearchRequest):
        return request
    try:
        return SearchRequest.model_validate(request)
    except PydanticValidationError as exc:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"]) or "request"
            messages.append(f"{location}: {error['msg']}")
        raise ValidationError("; ".join(messages), errors=len(messages)) from exc


class ResultMetadata(BaseModel):
    """Metadata attached to every stored knowledge node"""

    node_type: str = "unknown"
    tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    tenant_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class RawResult(BaseModel):
    """A single backend hit. ``score`` is backend-specific and not comparable across backends"""

    id: str
    content: str
    score: float
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)


class FusedResult(RawResult):
    """A merged hit carrying per-source scores and ranks"""

    vector_score: float | None = None
    keyword_score: float | None = None
    fusion_score: float
    sources: list[SearchSource]
    vector_rank: int | None = None
    keyword_rank: int | None = None

    @model_validator(mode="after")
    def _sources_match_ranks(self) -> "FusedResult":
        if not self.sources:
            raise ValueError("A fused result needs at least one source")
        if ("vector" in self.sources) != (self.vector_rank is not None):
            raise ValueError("vector source and vector_rank must agree")
        if ("keyword" in self.sources) != (self.keyword_rank is not None):
            raise ValueError("keyword source and keyword_rank must agree")
        return self


class ResponseMetadata(BaseModel):
    """Search breakdown, timings and query analysis"""

    total_results: int
    search_strategy: SearchStrategy
    processing_time_ms: float
    vector_results: int = 0
    keyword_results: int = 0
    fused_results: int = 0
    vector_search_time_ms: float | None = None
    keyword_search_time_ms: float | None = None
    fusion_time_ms: float | None = None
    query_type: QueryType | None = None
    query_complexity: float | None = None


class HybridSearchResponse(BaseModel):
    """Fused, ranked results and how they were produced"""

    results: list[FusedResult]
    metadata: ResponseMetadata


class EmbeddingResult(BaseModel):
    """A validated embedding vector for one input text"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Content hash of (text, model, task)")
    embedding: list[float]
    dimensions: int
    model: str
    processing_time_ms: float
    cached: bool = False


class KnowledgeNode(BaseModel):
    """A unit of tenant knowledge to be indexed for retrieval"""

    id: str
    tenant_id: str
    content: str
    node_type: str = "document"
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float] | None = None
