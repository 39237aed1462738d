from __future__ import annotations

import os
from pathlib import Path

import httpx
import pytest

os.environ["RAG_CHUNK_STORE"] = "memory"
os.environ["EMBEDDING_PROVIDER"] = "hash"
os.environ["EMBEDDING_DIMENSION"] = "256"
os.environ["RAG_CHUNKING_PROVIDER"] = "local"
os.environ["RAG_CHUNK_TOKENS"] = "50"
os.environ["RAG_CHUNK_OVERLAP"] = "0"
os.environ["RAG_DISABLE_TIKTOKEN"] = "true"
os.environ["RAG_FILE_MAX_BYTES"] = "10240"

from context_engine.app.dependencies import reset_engine_cache
from context_engine.app.main import app

pytestmark = pytest.mark.anyio

HANDBOOK = (
    b"Vacation policy: employees receive 25 days of paid leave per year.\f"
    b"Expense policy: receipts are required for purchases above 50 euros."
)


def get_client() -> httpx.AsyncClient:
    reset_engine_cache()
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


async def _upload(client: httpx.AsyncClient, name: str = "handbook.txt", data: bytes = HANDBOOK):
    return await client.post("/documents", files={"file": (name, data, "text/plain")})


async def test_health_endpoint() -> None:
    async with get_client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Request-ID"]


async def test_upload_processes_document() -> None:
    async with get_client() as client:
        response = await _upload(client)
        assert response.status_code == 200
        document = response.json()
        assert document["status"] == "completed"
        assert document["total_chunks"] >= 1

        chunks = await client.get(f"/documents/{document['document_id']}/chunks")
        summary = await client.get("/documents/summary")
        stats = await client.get("/stats")

    assert chunks.status_code == 200
    pages = {page for chunk in chunks.json()["chunks"] for page in chunk["page_numbers"]}
    assert pages == {1, 2}
    assert summary.json() == {"total": 1, "completed": 1, "pending": 0, "processing": 0, "failed": 0}
    assert stats.json()["backend"] == "memory"
    assert stats.json()["dimension"] == 256


async def test_empty_upload_is_reported_as_failed() -> None:
    async with get_client() as client:
        response = await _upload(client, name="empty.txt", data=b"")
        listing = await client.get("/documents")

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["document"]["status"] == "failed"
    assert listing.json()["documents"][0]["error"] == "Source document is empty"


async def test_unsupported_file_type_is_rejected() -> None:
    async with get_client() as client:
        response = await _upload(client, name="sheet.xlsx", data=b"binary")
    assert response.status_code == 400


async def test_oversized_upload_is_rejected() -> None:
    async with get_client() as client:
        response = await _upload(client, name="big.txt", data=b"x" * 20000)
    assert response.status_code == 400


async def test_unknown_document_returns_404() -> None:
    async with get_client() as client:
        response = await client.get("/documents/missing")
        delete = await client.delete("/documents/missing")
    assert response.status_code == 404
    assert delete.status_code == 404


async def test_search_returns_ranked_chunks() -> None:
    async with get_client() as client:
        empty = await client.post("/search", json={"query": "vacation days"})
        await _upload(client)
        response = await client.post("/search", json={"query": "vacation paid leave", "limit": 1})

    assert empty.json() == {"results": []}
    results = response.json()["results"]
    assert len(results) == 1
    assert "Vacation policy" in results[0]["text"]


async def test_session_context_flow() -> None:
    async with get_client() as client:
        document = (await _upload(client)).json()
        document_id = document["document_id"]
        session = (await client.post("/sessions", json={"session_id": "chat-1"})).json()
        assert session["items"] == []

        pin = await client.post(
            "/sessions/chat-1/items",
            json={"kind": "page_range", "document_id": document_id, "page_numbers": [2]},
        )
        again = await client.post(
            "/sessions/chat-1/items",
            json={"kind": "page_range", "document_id": document_id, "page_numbers": [2]},
        )
        context = await client.post(
            "/sessions/chat-1/context",
            json={"message": "How many vacation days do employees get?"},
        )
        cleared = await client.post("/sessions/chat-1/clear")
        after = await client.get("/sessions/chat-1")

    assert pin.json()["added"] is True
    assert again.json()["added"] is False
    payload = context.json()
    assert context.status_code == 200
    assert payload["retrieval_status"] == "ok"
    sources = [piece["source"] for piece in payload["contexts"]]
    assert sources[0] == "explicit"
    assert "Page 2" in payload["rendered"]
    assert payload["rendered"].endswith("User Query: How many vacation days do employees get?")
    assert cleared.json() == {"removed": 1}
    assert after.json()["items"] == []


async def test_pin_document_not_ready_returns_409() -> None:
    async with get_client() as client:
        failed = (await _upload(client, name="empty.txt", data=b"")).json()
        document_id = failed["detail"]["document"]["document_id"]
        await client.post("/sessions", json={"session_id": "chat-2"})
        response = await client.post(
            "/sessions/chat-2/items", json={"kind": "document", "document_id": document_id}
        )
    assert response.status_code == 409


async def test_deleting_document_detaches_session_items() -> None:
    async with get_client() as client:
        document_id = (await _upload(client)).json()["document_id"]
        await client.post("/sessions", json={"session_id": "chat-3"})
        await client.post(
            "/sessions/chat-3/items", json={"kind": "document", "document_id": document_id}
        )
        deleted = await client.delete(f"/documents/{document_id}")
        session = await client.get("/sessions/chat-3")

    assert deleted.status_code == 200
    assert deleted.json()["chunks_removed"] >= 1
    assert session.json()["items"] == []


async def test_reprocess_completed_document() -> None:
    async with get_client() as client:
        document_id = (await _upload(client)).json()["document_id"]
        response = await client.post(f"/documents/{document_id}/process")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"


async def test_metrics_endpoint() -> None:
    async with get_client() as client:
        await client.get("/health")
        response = await client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text


async def test_upload_is_stored_under_server_generated_name() -> None:
    async with get_client() as client:
        response = await _upload(client, name="../../handbook.txt")
        document = response.json()
        reprocessed = await client.post(f"/documents/{document['document_id']}/process")

    stored = Path(document["source_path"])
    assert response.status_code == 200
    assert stored.parent == Path(os.environ["RAG_UPLOAD_DIR"])
    assert stored.suffix == ".txt"
    assert ".." not in stored.name
    assert reprocessed.json()["status"] == "completed"


async def test_search_can_be_restricted_to_documents() -> None:
    async with get_client() as client:
        first = (await _upload(client)).json()["document_id"]
        second = (await _upload(client, name="copy.txt")).json()["document_id"]
        response = await client.post(
            "/search", json={"query": "vacation", "limit": 10, "document_ids": [second]}
        )

    results = response.json()["results"]
    assert results
    assert {hit["document_id"] for hit in results} == {second}
    assert first != second
