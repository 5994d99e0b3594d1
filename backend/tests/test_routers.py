"""API endpoint tests."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from httpx import AsyncClient

from kine_rag.errors import CompletionError, VectorStoreError
from kine_rag.main import lifespan

USER = {"X-User-Id": "kine-0001-abcdef"}

ENTORSE = (
    "Entorse latérale de cheville: protocole de rééducation en trois phases, "
    "proprioception sur plateau instable, renforcement des fibulaires et reprise "
    "progressive de la course."
)

ADMIN_MESSAGES = "/api/v1/assistants/administrative/messages"
ADMIN_HISTORY = "/api/v1/assistants/administrative/history"


async def test_health_check(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


# --- Assistants ---


async def test_send_message(client: AsyncClient, mock_completer) -> None:
    response = await client.post(
        "/api/v1/assistants/basique/messages",
        json={"message": "Comment rééduquer une entorse de cheville ?"},
        headers=USER,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["message"] == "Réponse de test pour vos patients."
    assert data["metadata"]["assistant_type"] == "basique"
    mock_completer.complete.assert_awaited_once()


async def test_send_message_with_sources(client: AsyncClient, app_context) -> None:
    await app_context.ingestion.ingest_document(
        ENTORSE, "Entorse de cheville", "protocoles"
    )

    response = await client.post(
        "/api/v1/assistants/clinique/messages",
        json={"message": "Rééducation pour une entorse latérale de cheville ?"},
        headers=USER,
    )

    source = response.json()["sources"][0]
    assert source["title"] == "Entorse de cheville"
    assert source["category"] == "protocoles"
    assert source["similarity"].endswith("%")
    assert source["rank"] == 1


async def test_send_message_unknown_assistant(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/assistants/patient/messages", json={"message": "Bonjour"}, headers=USER
    )
    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert data["details"]["code"] == "UNKNOWN_ASSISTANT_TYPE"


async def test_send_message_empty(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/assistants/basique/messages", json={"message": " "}, headers=USER
    )
    assert response.status_code == 400
    assert response.json()["details"]["code"] == "EMPTY_MESSAGE"


async def test_send_message_without_user(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/assistants/basique/messages", json={"message": "Bonjour"}
    )
    assert response.status_code == 400
    assert response.json()["details"]["code"] == "MISSING_USER_ID"


async def test_send_message_completion_failure(
    client: AsyncClient, mock_completer
) -> None:
    mock_completer.complete.side_effect = CompletionError(
        "quota", code="QUOTA_EXCEEDED"
    )

    response = await client.post(
        "/api/v1/assistants/basique/messages", json={"message": "Bonjour"}, headers=USER
    )

    assert response.status_code == 502
    data = response.json()
    assert data["success"] is False
    assert data["details"]["code"] == "QUOTA_EXCEEDED"
    assert "indisponible" in data["error"]


async def test_history_round_trip(client: AsyncClient) -> None:
    await client.post(ADMIN_MESSAGES, json={"message": "Cotation AMK ?"}, headers=USER)

    response = await client.get(ADMIN_HISTORY, headers=USER)
    assert response.status_code == 200
    data = response.json()
    assert data["assistant_type"] == "administrative"
    assert [h["message"] for h in data["history"]] == ["Cotation AMK ?"]

    response = await client.delete(ADMIN_HISTORY, headers=USER)
    assert response.json() == {"success": True, "deleted": 1}

    response = await client.get(ADMIN_HISTORY, headers=USER)
    assert response.json()["history"] == []


async def test_history_unknown_assistant(client: AsyncClient) -> None:
    response = await client.get("/api/v1/assistants/inconnu/history", headers=USER)
    assert response.status_code == 400
    assert response.json()["detail"]["details"]["code"] == "UNKNOWN_ASSISTANT_TYPE"


# --- Documents ---


async def test_ingest_and_search(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/documents",
        json={
            "content": ENTORSE,
            "title": "Entorse de cheville",
            "category": "protocoles",
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["chunks"] == 1
    assert data["documents"][0]["duplicate_detected"] is False

    response = await client.post(
        "/api/v1/documents/search",
        json={"query": "entorse cheville proprioception"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    assert data["results"][0]["title"] == "Entorse de cheville"


async def test_ingest_duplicate_flagged(client: AsyncClient) -> None:
    body = {"content": ENTORSE, "title": "Entorse de cheville"}
    await client.post("/api/v1/documents", json=body)
    response = await client.post("/api/v1/documents", json=body)

    assert response.json()["documents"][0]["duplicate_detected"] is True

    stats = (await client.get("/api/v1/documents/stats")).json()
    assert stats["count"] == 1


async def test_ingest_empty_content(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/documents", json={"content": "   ", "title": "Vide"}
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "chunks": 0, "documents": []}


async def test_stats_and_delete(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/documents",
        json={"content": ENTORSE, "title": "Entorse", "category": "protocoles"},
    )
    doc_id = response.json()["documents"][0]["id"]

    stats = (await client.get("/api/v1/documents/stats")).json()
    assert stats == {"success": True, "count": 1, "categories": ["protocoles"]}

    response = await client.delete(f"/api/v1/documents/{doc_id}")
    assert response.json() == {"success": True, "deleted": doc_id}
    assert (await client.get("/api/v1/documents/stats")).json()["count"] == 0


async def test_search_store_failure_is_502(client: AsyncClient, app_context) -> None:
    app_context.knowledge.search = AsyncMock(side_effect=VectorStoreError("down"))

    response = await client.post("/api/v1/documents/search", json={"query": "genou"})

    assert response.status_code == 502
    assert response.json()["detail"]["details"]["code"] == "VECTOR_STORE_ERROR"


# --- Lifespan ---


def _make_lifespan_context() -> MagicMock:
    ctx = MagicMock()
    ctx.vector_store.ensure_collection = AsyncMock()
    ctx.aclose = AsyncMock()
    return ctx


async def test_lifespan_builds_and_closes_context() -> None:
    ctx = _make_lifespan_context()
    ctx.vector_store.ensure_collection.side_effect = VectorStoreError("down")
    app = FastAPI()

    with (
        patch("kine_rag.main.AppContext.create", return_value=ctx),
        patch("kine_rag.main.create_tables", new=AsyncMock()) as create_tables,
    ):
        async with lifespan(app):
            assert app.state.context is ctx
            ctx.aclose.assert_not_awaited()

    create_tables.assert_awaited_once_with(ctx.engine)
    ctx.aclose.assert_awaited_once()


async def test_lifespan_closes_context_when_startup_fails() -> None:
    ctx = _make_lifespan_context()
    failing = AsyncMock(side_effect=RuntimeError("database unreachable"))

    with (
        patch("kine_rag.main.AppContext.create", return_value=ctx),
        patch("kine_rag.main.create_tables", new=failing),
        pytest.raises(RuntimeError, match="database unreachable"),
    ):
        async with lifespan(FastAPI()):
            pass

    ctx.aclose.assert_awaited_once()
