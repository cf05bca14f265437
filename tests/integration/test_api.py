"""Integration tests for the HTTP API using TestClient over the in-memory stores."""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from knowledge_service.api.dependencies import ServiceContainer
from knowledge_service.domain.exceptions import EmbeddingProviderUnavailableError
from knowledge_service.main import create_app

_HANDBOOK = (
    "Discounts above 20% need approval.\n\n"
    "Annual contracts renew automatically.\n\n"
    "Support is included in the enterprise tier."
)


def _basis(position: int, dimensions: int = 8) -> list[float]:
    vector = [0.0] * dimensions
    vector[position] = 1.0
    return vector


@pytest.fixture
def client(knowledge_service, orchestrator, retrieval_service, chunking_service, embedder):
    container = ServiceContainer(
        knowledge=knowledge_service,
        ingestion=orchestrator,
        retrieval=retrieval_service,
        chunking=chunking_service,
        chunk_store="memory",
        embedding_model=embedder.model_name,
    )
    with TestClient(create_app(container)) as test_client:
        yield test_client


@pytest.fixture
def headers(tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-ID": tenant_id}


def _create(client: TestClient, headers: dict[str, str], content: str = _HANDBOOK, **extra) -> dict:
    body = {"title": "Pricing handbook", "content": content, **extra}
    response = client.post("/documents", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    def test_reports_store_and_model(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["chunk_store"] == "memory"
        assert body["embedding_model"] == "fake-embedding"


class TestDocuments:
    def test_tenant_header_is_required(self, client: TestClient) -> None:
        response = client.get("/documents")

        assert response.status_code == 422

    def test_create_without_chunking_stores_document_only(self, client, headers) -> None:
        created = _create(client, headers)

        assert created["ingestion"] is None
        assert created["document"]["chunking_method"] is None
        assert created["document"]["content_length"] == len(_HANDBOOK)

    def test_create_with_chunking_ingests(self, client, headers) -> None:
        created = _create(client, headers, chunking={"method": "paragraph"})

        report = created["ingestion"]
        assert report["state"] == "done"
        assert report["inserted_count"] == 3
        assert report["summary"] == "inserted 3 of 3 chunks"
        assert created["document"]["chunking_method"] == "paragraph"

    def test_documents_are_tenant_scoped(self, client, headers) -> None:
        created = _create(client, headers)
        document_id = created["document"]["document_id"]

        response = client.get(f"/documents/{document_id}", headers={"X-Tenant-ID": "tenant_other"})

        assert response.status_code == 404
        assert response.json()["error_code"] == "DOCUMENT_NOT_FOUND"
        assert client.get("/documents", headers={"X-Tenant-ID": "tenant_other"}).json() == []

    def test_delete_removes_document_and_chunks(self, client, headers) -> None:
        created = _create(client, headers, chunking={"method": "paragraph"})
        document_id = created["document"]["document_id"]

        assert client.delete(f"/documents/{document_id}", headers=headers).status_code == 204
        assert client.get(f"/documents/{document_id}/chunks", headers=headers).status_code == 404
        stats = client.get("/chunks/stats", headers=headers).json()
        assert stats["total_chunks"] == 0


class TestIngestion:
    def test_empty_document_is_unprocessable(self, client, headers) -> None:
        created = _create(client, headers, content="   ")
        document_id = created["document"]["document_id"]

        response = client.post(
            f"/documents/{document_id}/ingest", json={"chunking": {"method": "paragraph"}}, headers=headers
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "NO_CHUNKS_GENERATED"

    def test_embedding_outage_reports_failing_chunk(self, client, headers, embedder) -> None:
        embedder.failures["Annual contracts renew automatically."] = lambda: (
            EmbeddingProviderUnavailableError("HTTP 500")
        )
        created = _create(client, headers)
        document_id = created["document"]["document_id"]
        correlation_id = str(uuid.uuid4())

        response = client.post(
            f"/documents/{document_id}/ingest",
            json={"chunking": {"method": "paragraph"}},
            headers={**headers, "X-Correlation-ID": correlation_id},
        )

        assert response.status_code == 503
        body = response.json()
        assert body["error_code"] == "EMBEDDING_API_UNAVAILABLE"
        assert body["chunk_index"] == 2
        assert body["details"] == {
            "inserted_count": 0,
            "total_chunks": 3,
            "failed_count": 1,
            "failed_chunk_indices": [2],
        }
        assert "inserted 0 of 3 chunks" in body["message"]
        assert body["document_id"] == document_id
        assert body["correlation_id"] == correlation_id
        chunks = client.get(f"/documents/{document_id}/chunks", headers=headers).json()
        assert chunks == []

    def test_reingest_replaces_chunks(self, client, headers) -> None:
        created = _create(client, headers, chunking={"method": "paragraph"})
        document_id = created["document"]["document_id"]

        response = client.post(
            f"/documents/{document_id}/ingest",
            json={"chunking": {"method": "line_break"}},
            headers=headers,
        )

        assert response.status_code == 200
        chunks = client.get(f"/documents/{document_id}/chunks", headers=headers).json()
        assert [c["sequence"] for c in chunks] == [1, 2, 3]
        assert all(c["metadata"]["chunking_method"] == "line_break" for c in chunks)

    def test_invalid_chunking_options_are_rejected(self, client, headers) -> None:
        created = _create(client, headers)
        document_id = created["document"]["document_id"]

        response = client.post(
            f"/documents/{document_id}/ingest",
            json={"chunking": {"method": "fixed_size", "chunk_size": 1}},
            headers=headers,
        )

        assert response.status_code == 422


class TestChunks:
    def test_edit_disable_delete_lifecycle(self, client, headers) -> None:
        created = _create(client, headers, chunking={"method": "paragraph"})
        document_id = created["document"]["document_id"]
        chunks = client.get(f"/documents/{document_id}/chunks", headers=headers).json()
        chunk_id = chunks[0]["chunk_id"]

        edited = client.patch(f"/chunks/{chunk_id}", json={"content": "Discounts need approval."}, headers=headers)
        assert edited.status_code == 200
        assert edited.json()["embedding_stale"] is True
        assert edited.json()["has_embedding"] is True

        disabled = client.patch(f"/chunks/{chunk_id}/enabled", json={"enabled": False}, headers=headers)
        assert disabled.json()["enabled"] is False
        enabled_only = client.get(
            f"/documents/{document_id}/chunks", params={"enabled_only": True}, headers=headers
        ).json()
        assert [c["sequence"] for c in enabled_only] == [2, 3]

        assert client.delete(f"/chunks/{chunk_id}", headers=headers).status_code == 204
        missing = client.delete(f"/chunks/{chunk_id}", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "CHUNK_NOT_FOUND"

    def test_blank_content_edit_is_rejected(self, client, headers) -> None:
        created = _create(client, headers, chunking={"method": "paragraph"})
        document_id = created["document"]["document_id"]
        chunk_id = client.get(f"/documents/{document_id}/chunks", headers=headers).json()[0]["chunk_id"]

        response = client.patch(f"/chunks/{chunk_id}", json={"content": "   "}, headers=headers)

        assert response.status_code == 422

    def test_add_search_and_clear(self, client, headers) -> None:
        created = _create(client, headers, chunking={"method": "paragraph"})
        document_id = created["document"]["document_id"]

        added = client.post(
            f"/documents/{document_id}/chunks",
            json={"content": "Enterprise support has a 4 hour SLA.", "metadata": {"source": "faq"}},
            headers=headers,
        )
        assert added.status_code == 201
        assert added.json()["sequence"] == 4

        found = client.get(
            f"/documents/{document_id}/chunks", params={"search": "SUPPORT"}, headers=headers
        ).json()
        assert [c["sequence"] for c in found] == [3, 4]

        cleared = client.delete(f"/documents/{document_id}/chunks", headers=headers)
        assert cleared.json() == {"document_id": document_id, "deleted_count": 4}

    def test_stats_and_reembed(self, client, headers) -> None:
        created = _create(client, headers, chunking={"method": "paragraph"})
        document_id = created["document"]["document_id"]
        chunk_id = client.get(f"/documents/{document_id}/chunks", headers=headers).json()[0]["chunk_id"]
        client.patch(f"/chunks/{chunk_id}", json={"content": "Discounts need approval."}, headers=headers)

        before = client.get("/chunks/stats", params={"document_id": document_id}, headers=headers).json()
        reembed = client.post("/chunks/reembed", json={"document_id": document_id}, headers=headers).json()
        after = client.get("/chunks/stats", params={"document_id": document_id}, headers=headers).json()

        assert before["stale_embedding_chunks"] == 1
        assert reembed["updated_count"] == 1
        assert after["stale_embedding_chunks"] == 0


class TestRetrieval:
    @pytest.fixture
    def indexed(self, client, headers, embedder) -> str:
        for position, paragraph in enumerate(_HANDBOOK.split("\n\n")):
            embedder.vectors[paragraph] = _basis(position)
        created = _create(client, headers, chunking={"method": "paragraph"})
        return created["document"]["document_id"]

    def test_search_by_vector(self, client, headers, indexed) -> None:
        response = client.post("/search", json={"query_embedding": _basis(1)}, headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["has_context"] is True
        (result,) = body["results"]
        assert result["sequence"] == 2
        assert result["document_id"] == indexed
        assert result["similarity_score"] == pytest.approx(1.0)

    def test_query_by_text(self, client, headers, embedder, indexed) -> None:
        embedder.vectors["who approves discounts?"] = _basis(0)

        response = client.post("/query", json={"query": "who approves discounts?"}, headers=headers)

        (result,) = response.json()["results"]
        assert result["content"] == "Discounts above 20% need approval."

    def test_no_match_means_no_context(self, client, headers, indexed) -> None:
        response = client.post("/search", json={"query_embedding": _basis(7)}, headers=headers)

        assert response.json() == {"results": [], "has_context": False}

    @pytest.mark.parametrize(
        "body",
        [
            {"query_embedding": []},
            {"query_embedding": [1.0] * 8, "top_k": 0},
            {"query_embedding": [1.0] * 8, "similarity_threshold": 2.0},
        ],
    )
    def test_invalid_search_is_unprocessable(self, client, headers, indexed, body) -> None:
        response = client.post("/search", json=body, headers=headers)

        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_QUERY_VECTOR"


class TestPreview:
    def test_preview_does_not_persist(self, client, headers) -> None:
        response = client.post(
            "/chunking/preview",
            json={"content": "# A\none\n## B\ntwo", "chunking": {"method": "header", "max_depth": 2}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["chunks"] == ["# A\none", "## B\ntwo"]
        assert body["chunking_method"] == "header"
        assert client.get("/chunks/stats", headers=headers).json()["total_chunks"] == 0

    def test_ai_preview_without_model_falls_back(self, client) -> None:
        response = client.post(
            "/chunking/preview",
            json={"content": "A\n\nB", "chunking": {"method": "ai_assisted"}},
        )

        body = response.json()
        assert body["chunks"] == ["A", "B"]
        assert body["chunking_method"] == "paragraph"
        assert body["notices"]
