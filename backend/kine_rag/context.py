"""Application context: every long-lived client, built once and closed once."""

from __future__ import annotations

import logging

from fastapi import Request
from qdrant_client import AsyncQdrantClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from kine_rag.config import Settings
from kine_rag.database import create_engine_and_sessionmaker
from kine_rag.services.assistant_service import AssistantService
from kine_rag.services.completion_service import ClaudeCompletionClient, Completer
from kine_rag.services.conversation_service import ConversationRepository
from kine_rag.services.embedding_service import Embedder, EmbeddingGateway
from kine_rag.services.ingestion_service import IngestionService
from kine_rag.services.knowledge_service import KnowledgeService
from kine_rag.services.vector_store import QdrantVectorStore, qdrant_kwargs

logger = logging.getLogger(__name__)


class AppContext:
    """Shared by reference between requests; owned by the FastAPI lifespan."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        qdrant: AsyncQdrantClient,
        embedder: Embedder,
        completer: Completer,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.qdrant = qdrant
        self.embedder = embedder
        self.completer = completer
        self.vector_store = QdrantVectorStore(qdrant, settings)
        self.conversations = ConversationRepository(session_factory)
        self.knowledge = KnowledgeService(embedder, self.vector_store, settings)
        self.ingestion = IngestionService(embedder, self.vector_store, settings)
        self.assistant = AssistantService(
            self.knowledge, completer, self.conversations, settings
        )

    @classmethod
    def create(cls, settings: Settings) -> AppContext:
        engine, session_factory = create_engine_and_sessionmaker(settings)
        qdrant = AsyncQdrantClient(**qdrant_kwargs(settings))
        logger.info(
            "App context: qdrant=%s collection=%s model=%s",
            settings.qdrant_url,
            settings.qdrant_collection,
            settings.ai_model,
        )
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            qdrant=qdrant,
            embedder=EmbeddingGateway(settings),
            completer=ClaudeCompletionClient(settings),
        )

    async def aclose(self) -> None:
        await self.qdrant.close()
        await self.engine.dispose()
        logger.info("App context closed")


def get_context(request: Request) -> AppContext:
    """Dependency for FastAPI routes to get the application context."""
    return request.app.state.context
