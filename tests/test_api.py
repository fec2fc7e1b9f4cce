"""
Tests for the retrieval FastAPI routes.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.api.main import create_app
from src.rag import HybridRetriever

from tests.fakes import DIM


@pytest.fixture
def empty_client(pipeline, rag_config) -> TestClient:
    """Client over a retriever with nothing indexed (lifespan is not run)."""
    app = create_app()
    app.state.retriever = HybridRetriever(pipeline, rag_config)
    return TestClient(app)


@pytest.fixture
def client(retriever: HybridRetriever) -> TestClient:
    app = create_app()
    app.state.retriever = retriever
    return TestClient(app)


def test_health(client: TestClient):
    """GET /api/health reports the indexed corpus."""
    r = client.get("/api/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["indexed"] is True
    assert data["documents"] == 4
    assert data["chunks"] >= 4


def test_health_before_startup():
    """Health reports "starting" before a retriever is attached."""
    r = TestClient(create_app()).get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "starting"


def test_stats(client: TestClient):
    """GET /api/stats returns store, BM25 and cache statistics."""
    r = client.get("/api/stats")
    assert r.status_code == 200
    data = r.json()
    assert data["vector_store"]["dimension"] == DIM
    assert data["bm25"]["num_documents"] == data["chunks"]
    assert "size" in data["cache"]


def test_search_requires_body(client: TestClient):
    """POST /api/search without body returns 422."""
    r = client.post("/api/search", json={})
    assert r.status_code == 422


def test_search_unindexed_returns_503(empty_client: TestClient):
    """Searching before anything is indexed returns 503."""
    r = empty_client.post("/api/search", json={"query": "deadlock"})
    assert r.status_code == 503
    assert "detail" in r.json()


def test_search_with_query(client: TestClient):
    """POST /api/search returns grouped passages and context."""
    r = client.post("/api/search", json={"query": "deadlock resource", "top_k": 2})
    assert r.status_code == 200
    data = r.json()
    assert data["query"] == "deadlock resource"
    assert 1 <= len(data["results"]) <= 2
    top = data["results"][0]
    assert top["doc_id"] == "deadlock"
    assert top["passages"][0]["chunk_id"] == "deadlock::chunk_0"
    assert "text" not in top["metadata"]
    assert data["context"]["text"].startswith("\n[Document 1]")
    assert data["metrics"]["fusion_method"] == "RRF"
    assert data["chunk_based"] is True


def test_search_validates_weight(client: TestClient):
    """vector_weight outside [0, 1] is rejected."""
    r = client.post("/api/search", json={"query": "x", "vector_weight": 1.5})
    assert r.status_code == 422


def test_index_then_search(empty_client: TestClient):
    """Documents posted to /api/index become searchable."""
    r = empty_client.post(
        "/api/index",
        json={"documents": [{"id": "n1", "text": "neural networks learn weights"}, {"id": "n2", "text": "bm25 ranks terms"}]},
    )
    assert r.status_code == 200
    assert r.json()["documents"] == 2

    r = empty_client.post("/api/search", json={"query": "bm25 terms", "vector_weight": 0.0})
    assert r.status_code == 200
    assert r.json()["results"][0]["doc_id"] == "n2"


def test_index_rejects_empty_corpus(empty_client: TestClient):
    """Empty or blank corpora are rejected."""
    r = empty_client.post("/api/index", json={"documents": []})
    assert r.status_code == 422

    r = empty_client.post("/api/index", json={"documents": [{"id": "blank", "text": "   "}]})
    assert r.status_code == 400


def test_embed(client: TestClient):
    """POST /api/embed returns one vector per text."""
    r = client.post("/api/embed", json={"texts": ["hello world", ""], "mode": "question"})
    assert r.status_code == 200
    data = r.json()
    assert data["mode"] == "query"
    assert data["dimension"] == DIM
    assert len(data["vectors"]) == 2
    assert len(data["vectors"][0]) == DIM
    assert not any(data["vectors"][1])
