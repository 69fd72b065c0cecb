"""
Storage interfaces and row mapping for the retrieval backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..models import KnowledgeNode, RawResult, ResultMetadata


class StorageBackend(Protocol):
    """Protocol for the two remote procedures retrieval depends on."""

    def vector_search(
        self,
        *,
        query_embedding: list[float],
        tenant_id: str,
        similarity_threshold: float,
        max_results: int,
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows ``{id, content, similarity, metadata, ...}`` ordered by similarity."""

    def keyword_search(
        self,
        *,
        search_query: str,
        tenant_id: str,
        max_results: int,
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows ``{id, content, rank, metadata, ...}`` ordered by rank."""


class WritableStorage(StorageBackend, Protocol):
    """Storage that can also persist knowledge nodes."""

    def upsert_node(self, node: KnowledgeNode) -> None:
        """Insert or replace a knowledge node."""

    def count_nodes(self, *, tenant_id: str) -> int:
        """Count active nodes for a tenant."""


def _as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def row_to_result(row: dict[str, Any], *, score_field: str) -> RawResult:
    """Map a backend row to a RawResult, reading the score from *score_field*."""
    metadata = row.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    known = {"nodeType", "node_type", "tags", "createdAt", "updatedAt", "tenantId"}
    tags = metadata.get("tags") or []
    return RawResult(
        id=str(row["id"]),
        content=str(row.get("content") or ""),
        score=float(row.get(score_field) or 0.0),
        metadata=ResultMetadata(
            node_type=str(metadata.get("nodeType") or metadata.get("node_type") or "unknown"),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
            created_at=_as_datetime(row.get("created_at") or metadata.get("createdAt")),
            updated_at=_as_datetime(row.get("updated_at") or metadata.get("updatedAt")),
            tenant_id=row.get("tenant_id") or metadata.get("tenantId"),
            extra={key: value for key, value in metadata.items() if key not in known},
        ),
    )
