"""
Knowledge ingestion: embed nodes and write them to storage.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from .embeddings import EmbeddingService
from .errors import ValidationError
from .models import KnowledgeNode
from .storage.base import WritableStorage


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IngestResult:
    """Summary output for an ingestion run."""

    ingested: int
    skipped: int
    skipped_ids: tuple[str, ...]
    embeddings_generated: int
    embeddings_cached: int


def stable_node_id(tenant_id: str, content: str) -> str:
    digest = hashlib.sha1(f"{tenant_id}\x00{content}".encode("utf-8")).hexdigest()
    return f"node_{digest[:16]}"


def load_jsonl(path: str | Path, *, tenant_id: str | None = None) -> list[KnowledgeNode]:
    """Read one knowledge node per line.

    ``tenant_id`` fills in (and overrides) each record's tenant. Records
    without an ``id`` get one derived from tenant and content.
    """
    nodes: list[KnowledgeNode] = []
    source = Path(path)
    with source.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                record: dict[str, Any] = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"{source}:{line_number}: invalid JSON ({exc.msg})") from exc
            if not isinstance(record, dict):
                raise ValidationError(f"{source}:{line_number}: expected a JSON object")
            if tenant_id is not None:
                record["tenant_id"] = tenant_id
            if "id" not in record and isinstance(record.get("content"), str):
                record["id"] = stable_node_id(str(record.get("tenant_id", "")), record["content"])
            try:
                nodes.append(KnowledgeNode.model_validate(record))
            except PydanticValidationError as exc:
                raise ValidationError(f"{source}:{line_number}: {exc.errors()[0]['msg']}") from exc
    return nodes


class KnowledgeIngestor:
    """Embed knowledge nodes in batches and upsert them into storage."""

    def __init__(self, storage: WritableStorage, embedding_service: EmbeddingService) -> None:
        self.storage = storage
        self.embedding_service = embedding_service

    async def ingest(self, nodes: list[KnowledgeNode]) -> IngestResult:
        """Embed nodes lacking a vector, then write every node that has one.

        Nodes whose embedding could not be produced are skipped and reported,
        never written without a vector.
        """
        pending = [node for node in nodes if not node.embedding]
        vectors: dict[str, list[float]] = {}
        generated = 0
        cached = 0
        if pending:
            results = await self.embedding_service.generate_batch(
                [node.content for node in pending],
                task="document",
            )
            for result in results:
                vectors[result.id] = result.embedding
                if result.cached:
                    cached += 1
                else:
                    generated += 1

        ingested = 0
        skipped: list[str] = []
        for node in nodes:
            if node.embedding:
                ready = node
            else:
                vector = vectors.get(self.embedding_service.content_key(node.content, "document"))
                if vector is None:
                    skipped.append(node.id)
                    continue
                ready = node.model_copy(update={"embedding": vector})
            await asyncio.to_thread(self.storage.upsert_node, ready)
            ingested += 1

        if skipped:
            logger.warning("skipped nodes without embeddings", count=len(skipped))
        logger.info("ingestion complete", ingested=ingested, skipped=len(skipped))
        return IngestResult(
            ingested=ingested,
            skipped=len(skipped),
            skipped_ids=tuple(skipped),
            embeddings_generated=generated,
            embeddings_cached=cached,
        )
