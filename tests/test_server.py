"""Tests for the REST endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from hybrid_search import server
from hybrid_search.server import app

from conftest import FakeStorage, keyword_row, make_engine, vector_row


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage(
        vector_rows=[vector_row("a", 0.9), vector_row("c", 0.8)],
        keyword_rows=[keyword_row("b", 1.0), keyword_row("a", 0.5)],
    )


@pytest.fixture()
def client(storage: FakeStorage):
    server.set_engine(make_engine(storage))
    yield TestClient(app)
    server.reset_engine()


def test_search_endpoint_returns_fused_results(client: TestClient) -> None:
    response = client.post(
        "/api/search",
        json={"query": "refund policy", "tenant_id": "t1", "strategy": "hybrid"},
    )

    assert response.status_code == 200
    data = response.json()
    assert [hit["id"] for hit in data["results"]] == ["a", "c", "b"]
    assert data["results"][0]["sources"] == ["vector", "keyword"]
    assert data["metadata"]["search_strategy"] == "hybrid"


def test_search_endpoint_accepts_filter_expression(client: TestClient, storage: FakeStorage) -> None:
    response = client.post(
        "/api/search",
        json={"query": "refund policy", "tenant_id": "t1", "filters": "node_type=faq, priority>=2"},
    )

    assert response.status_code == 200
    assert storage.keyword_calls[0]["filters"] == {"node_type": "faq", "priority": {"gte": 2}}


def test_search_endpoint_with_invalid_filter(client: TestClient) -> None:
    response = client.post(
        "/api/search",
        json={"query": "refund", "tenant_id": "t1", "filters": "priority>high"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "invalid_filter"


@pytest.mark.parametrize(
    "body",
    [
        {"query": "", "tenant_id": "t1"},
        {"query": "x" * 1001, "tenant_id": "t1"},
        {"query": "refund", "tenant_id": "t1", "limit": 500},
        {"query": "refund"},
        {"query": "refund", "tenant_id": "t1", "strategy": "fuzzy"},
    ],
)
def test_search_endpoint_rejects_invalid_requests(client: TestClient, body: dict) -> None:
    response = client.post("/api/search", json=body)

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["kind"] == "validation_error"
    assert error["message"]


def test_backend_failure_maps_to_503(storage: FakeStorage, client: TestClient) -> None:
    storage.vector_error = RuntimeError("rpc failed")

    response = client.post("/api/search", json={"query": "refund", "tenant_id": "t1"})

    assert response.status_code == 503
    assert response.json()["error"]["kind"] == "backend_unavailable"


def test_stats_endpoint(client: TestClient) -> None:
    client.post("/api/search", json={"query": "refund policy", "tenant_id": "t1"})

    response = client.get("/api/stats")

    assert response.status_code == 200
    data = response.json()
    assert data["engine"]["total_searches"] == 1
    assert data["embedding"]["total_embeddings_generated"] == 1
    assert data["vector_search"]["total_searches"] == 1
    assert data["keyword_search"]["total_searches"] == 1


def test_config_roundtrip(client: TestClient) -> None:
    response = client.patch(
        "/api/config",
        json={"fusion_algorithm": "rrf", "vector_search": {"similarity_threshold": 0.4}},
    )

    assert response.status_code == 200
    assert response.json()["hybrid"]["fusion_algorithm"] == "rrf"
    current = client.get("/api/config").json()
    assert current["vector_search"]["similarity_threshold"] == 0.4
    assert "api_key" not in current["embedding"]


def test_invalid_config_update_is_rejected(client: TestClient) -> None:
    response = client.patch("/api/config", json={"vector_weight": -3})

    assert response.status_code == 400
    assert client.get("/api/config").json()["hybrid"]["vector_weight"] == 0.7


def test_clear_cache_endpoint(client: TestClient, storage: FakeStorage) -> None:
    body = {"query": "refund policy", "tenant_id": "t1"}
    client.post("/api/search", json=body)

    assert client.delete("/api/cache").json() == {"cleared": True}
    client.post("/api/search", json=body)

    assert len(storage.keyword_calls) == 2


def test_health_endpoint(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"healthy": True}


def test_health_endpoint_reports_failure(client: TestClient, storage: FakeStorage) -> None:
    storage.vector_error = RuntimeError("down")
    response = client.get("/api/health")

    assert response.status_code == 503
    assert response.json() == {"healthy": False}
