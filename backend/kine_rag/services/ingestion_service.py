"""Ingestion pipeline: clean, chunk, dedup, embed and store source documents."""

from __future__ import annotations

import asyncio
import datetime
import hashlib
import logging
import uuid
from typing import Any

from kine_rag.config import Settings
from kine_rag.errors import InvalidContentError
from kine_rag.models.rag import Chunk, Document
from kine_rag.services.dedup import dedupe_chunks, find_duplicate, merge_metadata
from kine_rag.services.document_processor import chunk_text, extract_pdf_text
from kine_rag.services.embedding_service import DOCUMENT_TASK, Embedder
from kine_rag.services.vector_store import VectorStore

logger = logging.getLogger(__name__)

_DOCUMENT_NAMESPACE = uuid.UUID("5b0f0e3c-58d4-4c43-9d0e-6f1a1d3b7c21")


def document_id(content: str) -> str:
    """Deterministic id: identical content always maps to the same point."""
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return str(uuid.uuid5(_DOCUMENT_NAMESPACE, digest))


def chunk_title(title: str, index: int, total: int) -> str:
    if total == 1:
        return title
    return f"{title} - Partie {index + 1}/{total}"


class IngestionService:
    def __init__(
        self, embedder: Embedder, vector_store: VectorStore, settings: Settings
    ) -> None:
        self.embedder = embedder
        self.vector_store = vector_store
        self.settings = settings

    def prepare_chunks(self, raw_text: str, title: str) -> list[Chunk]:
        chunks = chunk_text(
            raw_text,
            title,
            max_chars=self.settings.chunk_max_chars,
            overlap=self.settings.chunk_overlap_chars,
            min_chars=self.settings.chunk_min_chars,
        )
        return dedupe_chunks(chunks, self.settings.duplicate_similarity_threshold)

    async def ingest_document(
        self,
        raw_text: str,
        title: str,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[Document]:
        """Store ``raw_text`` as one document per chunk.

        Near-identical content already in the store is not inserted again:
        its metadata is merged into the existing document instead, which is
        what the returned list then holds for that chunk. An input with no
        ingestible content returns an empty list.
        """
        if not isinstance(raw_text, str):
            raise InvalidContentError(f"Cannot ingest {type(raw_text).__name__}")
        if not title or not title.strip():
            raise InvalidContentError("A document title is required")

        chunks = self.prepare_chunks(raw_text, title)
        if not chunks:
            logger.warning("No ingestible content in %r", title)
            return []

        logger.info(
            "Ingesting %r: %d chunks (category=%s)", title, len(chunks), category
        )
        vectors = await self.embedder.embed_batch(
            [c.content for c in chunks], task_type=DOCUMENT_TASK
        )

        total = len(chunks)
        now = datetime.datetime.now(datetime.UTC)
        documents: list[Document] = []
        for index, (chunk, vector) in enumerate(zip(chunks, vectors, strict=True)):
            chunk_metadata = {
                **(metadata or {}),
                "chunk_index": index,
                "total_chunks": total,
                "original_title": title,
                "type": "single" if total == 1 else "chunk",
                "priority": chunk.priority,
            }
            chunk_metadata.setdefault("source_file", title)
            document = Document(
                id=document_id(chunk.content),
                title=chunk_title(title, index, total),
                content=chunk.content,
                category=category,
                embedding=vector,
                metadata=chunk_metadata,
                created_at=now,
            )
            documents.append(await self._store(document))

        merged = sum(1 for d in documents if d.metadata.get("duplicate_detected"))
        logger.info(
            "Ingested %r: %d stored, %d merged into existing documents",
            title,
            total - merged,
            merged,
        )
        return documents

    async def ingest_pdf(
        self,
        data: bytes,
        title: str,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        filename: str | None = None,
    ) -> list[Document]:
        """Extract text from a PDF and run it through ``ingest_document``."""
        text, pages = await asyncio.to_thread(extract_pdf_text, data)
        logger.info(
            "Extracted %d chars from %d PDF pages (%r)", len(text), pages, title
        )
        pdf_metadata = {**(metadata or {}), "page_count": pages}
        pdf_metadata.setdefault("source_file", filename or title)
        return await self.ingest_document(text, title, category, pdf_metadata)

    async def _store(self, document: Document) -> Document:
        existing = await self.vector_store.get(document.id)
        if existing is None and document.embedding is not None:
            candidates = await self.vector_store.query(
                document.embedding,
                threshold=self.settings.duplicate_vector_threshold,
                top_k=self.settings.duplicate_candidates,
            )
            existing = find_duplicate(
                document.content,
                candidates,
                self.settings.duplicate_similarity_threshold,
            )

        if existing is None:
            await self.vector_store.upsert(document)
            return document

        merged = merge_metadata(existing.metadata, document.metadata)
        await self.vector_store.set_metadata(existing.id, merged)
        logger.info(
            "Duplicate of %s (%r): merged metadata instead of inserting",
            existing.id,
            existing.title,
        )
        return Document(
            id=existing.id,
            title=existing.title,
            content=existing.content,
            category=existing.category,
            metadata=merged,
            created_at=existing.created_at,
        )
