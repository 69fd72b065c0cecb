"""
DuckDB storage backend implementing the vector and keyword procedures.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import duckdb

from ..models import KnowledgeNode
from ..search.filters import MetadataFilter, MetadataFilterParseError, filters_from_mapping


_NODE_COLUMNS = "n.id, n.content, n.node_type, n.tags, n.metadata_json, n.tenant_id, n.created_at, n.updated_at"


def _keyword_terms(search_query: str, max_terms: int = 16) -> list[str]:
    """Split a prepared ``term:* | term:*`` query (or raw text) into match terms."""
    text = search_query.strip().lower()
    if "|" in text or text.endswith(":*"):
        raw_terms = [part.strip().removesuffix(":*").strip() for part in text.split("|")]
    else:
        raw_terms = re.findall(r"\w+", text)
    terms: list[str] = []
    for term in raw_terms:
        if term and term not in terms:
            terms.append(term)
        if len(terms) >= max_terms:
            break
    if terms:
        return terms
    return [text] if text else []


class DuckDBStorage:
    """DuckDB-backed knowledge store partitioned by tenant."""

    def __init__(
        self,
        db_path: str,
        *,
        read_only: bool = False,
        initialize: bool = True,
    ) -> None:
        self.db_path = db_path if db_path == ":memory:" else str(Path(db_path).expanduser().resolve())
        self.read_only = read_only
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = duckdb.connect(self.db_path, read_only=read_only)
        if initialize and not read_only:
            self.initialize()

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self._conn.close()

    def initialize(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS knowledge_nodes (
                id VARCHAR NOT NULL,
                tenant_id VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                node_type VARCHAR NOT NULL DEFAULT 'document',
                tags VARCHAR[] NOT NULL DEFAULT [],
                metadata_json VARCHAR NOT NULL DEFAULT '{}',
                embedding DOUBLE[],
                is_active BOOLEAN DEFAULT TRUE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (tenant_id, id)
            );
            """
        )

    def upsert_node(self, node: KnowledgeNode) -> None:
        existing = self._conn.execute(
            "SELECT created_at FROM knowledge_nodes WHERE tenant_id = ? AND id = ?",
            [node.tenant_id, node.id],
        ).fetchone()
        # Delete + insert keeps DuckDB away from updating list columns in place.
        self._conn.execute(
            "DELETE FROM knowledge_nodes WHERE tenant_id = ? AND id = ?",
            [node.tenant_id, node.id],
        )
        self._conn.execute(
            """
            INSERT INTO knowledge_nodes (
                id, tenant_id, content, node_type, tags, metadata_json, embedding,
                is_active, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, TRUE, coalesce(?, now()), now())
            """,
            [
                node.id,
                node.tenant_id,
                node.content,
                node.node_type,
                list(node.tags),
                json.dumps(node.metadata, sort_keys=True, default=str),
                [float(value) for value in node.embedding] if node.embedding else None,
                existing[0] if existing else None,
            ],
        )

    def delete_node(self, *, tenant_id: str, node_id: str) -> bool:
        row = self._conn.execute(
            """
            UPDATE knowledge_nodes
            SET is_active = FALSE, updated_at = now()
            WHERE tenant_id = ? AND id = ? AND is_active = TRUE
            RETURNING id
            """,
            [tenant_id, node_id],
        ).fetchone()
        return row is not None

    def count_nodes(self, *, tenant_id: str) -> int:
        row = self._conn.execute(
            """
            SELECT COUNT(*)
            FROM knowledge_nodes
            WHERE tenant_id = ? AND is_active = TRUE
            """,
            [tenant_id],
        ).fetchone()
        return int(row[0]) if row else 0

    def has_embeddings(self, *, tenant_id: str) -> bool:
        row = self._conn.execute(
            """
            SELECT COUNT(*)
            FROM knowledge_nodes
            WHERE tenant_id = ? AND is_active = TRUE AND embedding IS NOT NULL
            """,
            [tenant_id],
        ).fetchone()
        return bool(row and row[0])

    def get_node(self, *, tenant_id: str, node_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            f"""
            SELECT {_NODE_COLUMNS}
            FROM knowledge_nodes n
            WHERE n.tenant_id = ? AND n.id = ? AND n.is_active = TRUE
            LIMIT 1
            """,
            [tenant_id, node_id],
        ).fetchone()
        if row is None:
            return None
        return self._row_to_dict(row)

    def vector_search(
        self,
        *,
        query_embedding: list[float],
        tenant_id: str,
        similarity_threshold: float,
        max_results: int,
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        if not query_embedding:
            return []
        where, where_params = self._filter_sql(filters_from_mapping(filters))
        sql = f"""
            SELECT * FROM (
                SELECT
                    {_NODE_COLUMNS},
                    list_cosine_similarity(n.embedding, ?::DOUBLE[]) AS similarity
                FROM knowledge_nodes n
                WHERE n.tenant_id = ?
                  AND n.is_active = TRUE
                  AND n.embedding IS NOT NULL
                  AND len(n.embedding) = ?
                  {where}
            ) scored
            WHERE similarity > ?
            ORDER BY similarity DESC, id ASC
            LIMIT ?
        """
        params: list[Any] = [[float(value) for value in query_embedding], tenant_id, len(query_embedding)]
        params.extend(where_params)
        params.append(similarity_threshold)
        params.append(max_results)
        rows = self._fetchall(sql, params)

        results: list[dict[str, Any]] = []
        for row in rows:
            result = self._row_to_dict(row)
            result["similarity"] = float(row[8])
            results.append(result)
        return results

    def keyword_search(
        self,
        *,
        search_query: str,
        tenant_id: str,
        max_results: int,
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        terms = _keyword_terms(search_query)
        if not terms:
            return []

        where, where_params = self._filter_sql(filters_from_mapping(filters))
        score_expr = " + ".join(
            ["CASE WHEN lower(n.content) LIKE '%' || ? || '%' THEN 1 ELSE 0 END"] * len(terms)
        )
        sql = f"""
            SELECT * FROM (
                SELECT
                    {_NODE_COLUMNS},
                    ({score_expr}) / ?::DOUBLE AS rank
                FROM knowledge_nodes n
                WHERE n.tenant_id = ?
                  AND n.is_active = TRUE
                  {where}
            ) ranked
            WHERE rank > 0
            ORDER BY rank DESC, updated_at DESC, id ASC
            LIMIT ?
        """
        params: list[Any] = []
        params.extend(terms)
        params.append(float(len(terms)))
        params.append(tenant_id)
        params.extend(where_params)
        params.append(max_results)
        rows = self._fetchall(sql, params)

        results: list[dict[str, Any]] = []
        for row in rows:
            result = self._row_to_dict(row)
            result["rank"] = float(row[8])
            results.append(result)
        return results

    def _fetchall(self, sql: str, params: list[Any]) -> list[tuple[Any, ...]]:
        # Searches run on worker threads; each gets its own cursor.
        cursor = self._conn.cursor()
        try:
            return cursor.execute(sql, params).fetchall()
        finally:
            cursor.close()

    def _filter_sql(self, filters: list[MetadataFilter]) -> tuple[str, list[Any]]:
        sql = ""
        params: list[Any] = []
        for flt in filters:
            condition, condition_params = _condition_sql(flt)
            sql += f"\n  AND {condition}"
            params += condition_params
        return sql, params

    @staticmethod
    def _row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
        metadata = json.loads(str(row[4])) if row[4] else {}
        metadata["nodeType"] = str(row[2])
        metadata["tags"] = list(row[3] or [])
        return {
            "id": str(row[0]),
            "content": str(row[1]),
            "metadata": metadata,
            "tenant_id": str(row[5]),
            "created_at": row[6].isoformat() if row[6] is not None else None,
            "updated_at": row[7].isoformat() if row[7] is not None else None,
        }


_COMPARATORS = {"eq": "=", "ne": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def _as_text(value: Any) -> str:
    # JSON booleans come back from json_extract_string as 'true'/'false'.
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).lower()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _condition_sql(flt: MetadataFilter) -> tuple[str, list[Any]]:
    """Translate one validated filter into a WHERE fragment and its parameters."""
    op, value = flt.operator, flt.value

    if flt.field == "tags":
        if op == "in":
            return "list_has_any(n.tags, ?::VARCHAR[])", [[str(item) for item in value]]
        if op in ("eq", "contains"):
            return "list_contains(n.tags, ?)", [str(value)]
        if op == "ne":
            return "NOT list_contains(n.tags, ?)", [str(value)]
        raise MetadataFilterParseError(f"Operator {op!r} is not supported for tags")

    if flt.field == "node_type":
        column, params = "n.node_type", []
    else:
        column, params = "json_extract_string(n.metadata_json, ?)", [f"$.{flt.field}"]
    text = f"lower(coalesce({column}, ''))"
    number = f"try_cast({column} AS DOUBLE)"

    if op == "contains":
        return f"{text} LIKE '%' || ? || '%'", params + [_as_text(value)]

    if op == "in":
        items = list(value)
        slots = ", ".join("?" for _ in items)
        if all(_is_number(item) for item in items):
            return f"{number} IN ({slots})", params + [float(item) for item in items]
        return f"{text} IN ({slots})", params + [_as_text(item) for item in items]

    if op not in _COMPARATORS:
        raise MetadataFilterParseError(f"Unsupported filter operator: {op!r}")
    if _is_number(value):
        return f"{number} {_COMPARATORS[op]} ?", params + [float(value)]
    if op not in ("eq", "ne"):
        raise MetadataFilterParseError(
            f"Operator {op!r} needs a numeric value for field {flt.field!r}"
        )
    return f"{text} {_COMPARATORS[op]} ?", params + [_as_text(value)]
