"""Vector store adapter: Qdrant persistence and thresholded nearest-neighbor queries."""

from __future__ import annotations

import datetime
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

import httpx
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from kine_rag.config import Settings
from kine_rag.errors import VectorStoreError
from kine_rag.models.rag import Document, ScoredDocument

logger = logging.getLogger(__name__)


class VectorStore(Protocol):
    async def upsert(self, document: Document) -> str: ...

    async def query(
        self,
        vector: list[float],
        *,
        threshold: float,
        top_k: int,
        category: str | None = None,
    ) -> list[ScoredDocument]: ...

    async def get(self, document_id: str) -> Document | None: ...

    async def set_metadata(
        self, document_id: str, metadata: dict[str, Any]
    ) -> None: ...


def qdrant_kwargs(settings: Settings) -> dict:
    """Build kwargs for the Qdrant client, including api_key if set."""
    kwargs: dict = {"url": settings.qdrant_url}
    if settings.qdrant_api_key:
        kwargs["api_key"] = settings.qdrant_api_key
    return kwargs


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (
        UnexpectedResponse,
        ResponseHandlingException,
        httpx.HTTPError,
        ValueError,
    ) as e:
        raise VectorStoreError(f"Qdrant {operation} failed: {e}") from e


def _to_payload(document: Document) -> dict[str, Any]:
    created_at = document.created_at or datetime.datetime.now(datetime.UTC)
    return {
        "title": document.title,
        "content": document.content,
        "category": document.category,
        "metadata": document.metadata,
        "created_at": created_at.isoformat(),
    }


def _parse_created_at(value: Any) -> datetime.datetime | None:
    if not value:
        return None
    try:
        return datetime.datetime.fromisoformat(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable created_at %r", value)
        return None


def _from_payload(point_id: Any, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(point_id),
        "title": payload.get("title", ""),
        "content": payload.get("content", ""),
        "category": payload.get("category"),
        "metadata": payload.get("metadata") or {},
        "created_at": _parse_created_at(payload.get("created_at")),
    }


class QdrantVectorStore:
    """Documents as Qdrant points: id, cosine vector, payload with text and metadata."""

    def __init__(self, client: AsyncQdrantClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings
        self.collection = settings.qdrant_collection

    async def ensure_collection(self) -> None:
        """Create the collection if it doesn't exist."""
        async with _store_errors("ensure_collection"):
            response = await self.client.get_collections()
            collections = [c.name for c in response.collections]
            if self.collection in collections:
                logger.info("Qdrant collection '%s' already exists", self.collection)
                return
            await self.client.create_collection(
                collection_name=self.collection,
                vectors_config=VectorParams(
                    size=self.settings.embedding_dimensions,
                    distance=Distance.COSINE,
                ),
            )
            for field in ("category", "metadata.source_file"):
                await self.client.create_payload_index(
                    collection_name=self.collection,
                    field_name=field,
                    field_schema=PayloadSchemaType.KEYWORD,
                )
        logger.info("Created Qdrant collection '%s'", self.collection)

    async def upsert(self, document: Document) -> str:
        """Insert or replace a document; the point id is the document id."""
        if document.embedding is None:
            raise VectorStoreError(f"Document {document.id} has no embedding")
        if len(document.embedding) != self.settings.embedding_dimensions:
            raise VectorStoreError(
                f"Document {document.id} embedding has {len(document.embedding)} dims, "
                f"expected {self.settings.embedding_dimensions}",
            )
        point = PointStruct(
            id=document.id,
            vector=document.embedding,
            payload=_to_payload(document),
        )
        async with _store_errors("upsert"):
            await self.client.upsert(
                collection_name=self.collection, points=[point], wait=True
            )
        logger.info(
            "Upserted document %s (%r) into '%s'",
            document.id,
            document.title,
            self.collection,
        )
        return document.id

    async def query(
        self,
        vector: list[float],
        *,
        threshold: float,
        top_k: int,
        category: str | None = None,
    ) -> list[ScoredDocument]:
        """Nearest neighbors above ``threshold``, most similar first.

        Returns an empty list when nothing clears the threshold.
        """
        query_filter = None
        if category:
            query_filter = Filter(
                must=[FieldCondition(key="category", match=MatchValue(value=category))]
            )
        logger.debug(
            "Querying Qdrant collection=%r threshold=%.2f top_k=%d filter=%s",
            self.collection,
            threshold,
            top_k,
            query_filter,
        )
        async with _store_errors("query"):
            results = await self.client.query_points(
                collection_name=self.collection,
                query=vector,
                query_filter=query_filter,
                score_threshold=threshold,
                limit=top_k,
                with_payload=True,
            )

        documents = [
            ScoredDocument(
                **_from_payload(point.id, point.payload or {}),
                similarity=min(max(point.score, 0.0), 1.0),
            )
            for point in results.points
        ]
        documents.sort(key=lambda d: d.similarity, reverse=True)
        logger.info(
            "Qdrant returned %d points (threshold=%.2f)", len(documents), threshold
        )
        return documents

    async def get(self, document_id: str) -> Document | None:
        async with _store_errors("retrieve"):
            points = await self.client.retrieve(
                collection_name=self.collection,
                ids=[document_id],
                with_payload=True,
                with_vectors=False,
            )
        if not points:
            return None
        return Document(**_from_payload(points[0].id, points[0].payload or {}))

    async def set_metadata(self, document_id: str, metadata: dict[str, Any]) -> None:
        """Replace a document's metadata in a single payload write."""
        async with _store_errors("set_payload"):
            await self.client.set_payload(
                collection_name=self.collection,
                payload={"metadata": metadata},
                points=[document_id],
                wait=True,
            )
        logger.debug("Updated metadata of %s", document_id)

    async def delete(self, document_id: str) -> None:
        async with _store_errors("delete"):
            await self.client.delete(
                collection_name=self.collection,
                points_selector=PointIdsList(points=[document_id]),
                wait=True,
            )
        logger.info("Deleted document %s", document_id)

    async def count(self, category: str | None = None) -> int:
        count_filter = None
        if category:
            count_filter = Filter(
                must=[FieldCondition(key="category", match=MatchValue(value=category))]
            )
        async with _store_errors("count"):
            result = await self.client.count(
                collection_name=self.collection,
                count_filter=count_filter,
                exact=True,
            )
        return result.count

    async def list_categories(self) -> list[str]:
        categories: set[str] = set()
        offset = None
        async with _store_errors("scroll"):
            while True:
                points, offset = await self.client.scroll(
                    collection_name=self.collection,
                    limit=256,
                    offset=offset,
                    with_payload=["category"],
                    with_vectors=False,
                )
                categories.update(
                    p.payload["category"]
                    for p in points
                    if p.payload and p.payload.get("category")
                )
                if offset is None:
                    break
        return sorted(categories)
