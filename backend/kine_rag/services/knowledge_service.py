"""Query-time retrieval: embed, search, re-rank, select and estimate confidence."""

from __future__ import annotations

import logging

from kine_rag.config import Settings
from kine_rag.models.rag import RetrievalMetadata, RetrievalResult, ScoredDocument
from kine_rag.services.confidence import estimate_confidence
from kine_rag.services.embedding_service import QUERY_TASK, Embedder
from kine_rag.services.scoring import score_documents
from kine_rag.services.selection import select_sources
from kine_rag.services.vector_store import VectorStore

logger = logging.getLogger(__name__)

HIGH_SIMILARITY = 0.7


def summarize(documents: list[ScoredDocument]) -> RetrievalMetadata:
    if not documents:
        return RetrievalMetadata()
    categories: dict[str, None] = {}
    for doc in documents:
        if doc.category:
            categories.setdefault(doc.category, None)
    high = sum(1 for d in documents if d.similarity > HIGH_SIMILARITY)
    return RetrievalMetadata(
        total_found=len(documents),
        average_score=sum(d.final_score for d in documents) / len(documents),
        categories_found=list(categories),
        high_threshold_results=high,
        low_threshold_results=len(documents) - high,
    )


class KnowledgeService:
    def __init__(
        self, embedder: Embedder, vector_store: VectorStore, settings: Settings
    ) -> None:
        self.embedder = embedder
        self.vector_store = vector_store
        self.settings = settings

    async def search(
        self,
        query: str,
        *,
        category: str | None = None,
        threshold: float | None = None,
        limit: int | None = None,
    ) -> list[ScoredDocument]:
        """Raw nearest neighbors re-ranked by the relevance scorer."""
        vector = await self.embedder.embed(query, task_type=QUERY_TASK)
        raw = await self.vector_store.query(
            vector,
            threshold=self.settings.match_threshold if threshold is None else threshold,
            top_k=self.settings.match_count if limit is None else limit,
            category=category,
        )
        return score_documents(raw, query)

    async def retrieve(
        self,
        query: str,
        *,
        category: str | None = None,
        max_sources: int | None = None,
    ) -> RetrievalResult:
        """Full retrieval for one question.

        Embedding and vector store errors propagate; degrading to an empty
        context is the caller's decision.
        """
        logger.info("Retrieving context (category=%s): %r", category, query[:100])
        scored = await self.search(query, category=category)
        if max_sources is None:
            max_sources = self.settings.max_sources
        selected = select_sources(
            scored,
            max_sources,
            diversity_min_score=self.settings.diversity_min_score,
            excellence_score=self.settings.excellence_score,
        )
        result = RetrievalResult(
            all_documents=scored,
            selected_sources=selected,
            confidence=estimate_confidence(scored),
            metadata=summarize(scored),
        )
        logger.info(
            "Retrieval: %d found, %d selected, confidence=%.2f",
            len(scored),
            len(selected),
            result.confidence,
        )
        return result
