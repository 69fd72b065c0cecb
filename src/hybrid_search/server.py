"""
FastAPI server exposing the hybrid search engine.

Errors raised by the engine are reported as
``{"error": {"kind": ..., "message": ...}}`` with a status code derived from
the error kind.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

import structlog
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import load_settings
from .errors import HybridSearchError
from .logs import configure_logging
from .models import SearchStrategy
from .search import HybridQueryEngine, create_engine, parse_filter_expression


logger = structlog.get_logger(__name__)

app = FastAPI(title="HybridSearch", description="Hybrid vector + keyword retrieval")

_STATUS_BY_KIND: dict[str, int] = {
    "validation_error": 400,
    "invalid_filter": 400,
    "input_too_large": 413,
    "rate_limited": 429,
    "provider_error": 502,
    "invalid_embedding_result": 502,
    "backend_unavailable": 503,
    "timeout": 504,
}

_engine: HybridQueryEngine | None = None


def get_engine() -> HybridQueryEngine:
    """Return the process engine, building it from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine(load_settings())
    return _engine


def set_engine(engine: HybridQueryEngine) -> None:
    global _engine
    _engine = engine


def reset_engine() -> None:
    """Close and forget the process engine."""
    global _engine
    if _engine is not None:
        _engine.close()
    _engine = None


def _error_response(kind: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": {"kind": kind, "message": message}}, status_code=status_code)


@app.exception_handler(HybridSearchError)
async def handle_search_error(request: Request, exc: HybridSearchError) -> JSONResponse:
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("request failed", path=request.url.path, kind=exc.kind, error=exc.message)
    return _error_response(exc.kind, exc.message, status_code)


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location or 'body'}: {error.get('msg')}")
    return _error_response("validation_error", "; ".join(messages), 400)


class SearchBody(BaseModel):
    """Request model for search queries."""

    query: str
    tenant_id: str
    filters: dict[str, Any] | str | None = None
    limit: int | None = None
    threshold: float | None = None
    strategy: SearchStrategy = "auto"


@app.post("/api/search")
async def search(body: SearchBody):
    """Run a hybrid search and return fused results with metadata."""
    filters = body.filters
    if isinstance(filters, str):
        filters = parse_filter_expression(filters)
    response = await get_engine().search(
        {
            "query": body.query,
            "tenant_id": body.tenant_id,
            "filters": filters,
            "limit": body.limit,
            "threshold": body.threshold,
            "strategy": body.strategy,
        }
    )
    return response.model_dump(mode="json")


@app.get("/api/stats")
async def stats():
    engine = get_engine()
    return {
        "engine": asdict(engine.get_stats()),
        "embedding": asdict(engine.embedding_service.get_stats()),
        "vector_search": asdict(engine.vector_adapter.get_stats()),
        "keyword_search": asdict(engine.keyword_adapter.get_stats()),
    }


def _config_payload(engine: HybridQueryEngine) -> dict[str, Any]:
    return {
        "hybrid": engine.get_config().model_dump(mode="json"),
        "vector_search": engine.vector_adapter.get_config().model_dump(mode="json"),
        "embedding": engine.embedding_service.get_config().model_dump(
            mode="json", exclude={"api_key"}
        ),
    }


@app.get("/api/config")
async def get_config():
    return _config_payload(get_engine())


@app.patch("/api/config")
async def update_config(updates: dict[str, Any] = Body(...)):
    """Apply a partial config update; invalid updates leave the config unchanged."""
    engine = get_engine()
    engine.update_config(updates)
    return _config_payload(engine)


@app.delete("/api/cache")
async def clear_cache():
    await get_engine().clear_cache()
    return {"cleared": True}


@app.get("/api/health")
async def health():
    healthy = await get_engine().health_check()
    return JSONResponse({"healthy": healthy}, status_code=200 if healthy else 503)


def run_server(host: str = "127.0.0.1", port: int = 8000, *, log_level: str | None = None):
    """Run the FastAPI server."""
    import uvicorn

    configure_logging(log_level)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
