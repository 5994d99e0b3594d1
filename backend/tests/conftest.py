"""Test fixtures and configuration."""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from qdrant_client import AsyncQdrantClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kine_rag.config import Settings
from kine_rag.context import AppContext, get_context
from kine_rag.main import app
from kine_rag.models.orm import Base
from kine_rag.services.embedding_service import QUERY_TASK
from kine_rag.services.vector_store import QdrantVectorStore

TEST_DIMENSIONS = 64

_WORD = re.compile(r"\w+")


class FakeEmbedder:
    """Deterministic bag-of-words embedder: shared words -> similar vectors."""

    def __init__(self, dimensions: int = TEST_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        values = [0.0] * self.dimensions
        for word in _WORD.findall(text.lower()):
            if len(word) > 3:
                digest = hashlib.sha1(word.encode()).digest()
                values[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in values))
        if norm == 0:
            values[0] = 1.0
            return values
        return [v / norm for v in values]

    async def embed(self, text: str, *, task_type: str = QUERY_TASK) -> list[float]:
        return (await self.embed_batch([text], task_type=task_type))[0]

    async def embed_batch(
        self, texts: list[str], *, task_type: str = ""
    ) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        qdrant_collection="test_documents",
        embedding_dimensions=TEST_DIMENSIONS,
        google_api_key="",
        anthropic_api_key="",
        retrieval_retry_delay=0.0,
    )


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
async def qdrant() -> AsyncIterator[AsyncQdrantClient]:
    """In-memory Qdrant, one per test."""
    client = AsyncQdrantClient(":memory:")
    yield client
    await client.close()


@pytest.fixture
async def vector_store(
    qdrant: AsyncQdrantClient, test_settings: Settings
) -> QdrantVectorStore:
    store = QdrantVectorStore(qdrant, test_settings)
    await store.ensure_collection()
    return store


@pytest.fixture
async def test_engine():
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def mock_completer() -> AsyncMock:
    completer = AsyncMock()
    completer.complete.return_value = "Réponse de test pour vos patients."
    return completer


@pytest.fixture
async def app_context(
    test_settings: Settings,
    test_engine,
    session_factory: async_sessionmaker[AsyncSession],
    qdrant: AsyncQdrantClient,
    fake_embedder: FakeEmbedder,
    mock_completer: AsyncMock,
) -> AppContext:
    ctx = AppContext(
        settings=test_settings,
        engine=test_engine,
        session_factory=session_factory,
        qdrant=qdrant,
        embedder=fake_embedder,
        completer=mock_completer,
    )
    await ctx.vector_store.ensure_collection()
    return ctx


@pytest.fixture
async def client(app_context: AppContext) -> AsyncIterator[AsyncClient]:
    app.dependency_overrides[get_context] = lambda: app_context
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
