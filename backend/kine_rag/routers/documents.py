"""Document API endpoints: ingestion, search and corpus statistics."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from kine_rag.context import AppContext, get_context
from kine_rag.errors import KineRagError, to_http_exception
from kine_rag.models.schemas import (
    DocumentSummary,
    IngestRequest,
    IngestResponse,
    SearchRequest,
    SearchResponse,
)
from kine_rag.services.confidence import estimate_confidence
from kine_rag.services.selection import format_sources

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/documents", tags=["documents"])


@router.post("", response_model=IngestResponse)
async def ingest_document(
    body: IngestRequest,
    ctx: AppContext = Depends(get_context),
) -> IngestResponse:
    logger.info(
        "Ingesting %r (%d chars, category=%s)",
        body.title,
        len(body.content),
        body.category,
    )
    try:
        documents = await ctx.ingestion.ingest_document(
            body.content, body.title, body.category, body.metadata
        )
    except KineRagError as e:
        logger.exception("Ingestion failed for %r", body.title)
        raise to_http_exception(e)
    return IngestResponse(
        chunks=len(documents),
        documents=[
            DocumentSummary(
                id=d.id,
                title=d.title,
                category=d.category,
                duplicate_detected=bool(d.metadata.get("duplicate_detected")),
            )
            for d in documents
        ],
    )


@router.post("/search", response_model=SearchResponse)
async def search_documents(
    body: SearchRequest,
    ctx: AppContext = Depends(get_context),
) -> SearchResponse:
    try:
        results = await ctx.knowledge.search(
            body.query,
            category=body.category,
            threshold=body.threshold,
            limit=body.limit,
        )
    except KineRagError as e:
        logger.exception("Search failed")
        raise to_http_exception(e)
    return SearchResponse(
        query=body.query,
        count=len(results),
        confidence=estimate_confidence(results),
        results=format_sources(results),
    )


@router.get("/stats")
async def document_stats(ctx: AppContext = Depends(get_context)) -> dict:
    try:
        count = await ctx.vector_store.count()
        categories = await ctx.vector_store.list_categories()
    except KineRagError as e:
        raise to_http_exception(e)
    return {"success": True, "count": count, "categories": categories}


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    ctx: AppContext = Depends(get_context),
) -> dict:
    try:
        await ctx.vector_store.delete(document_id)
    except KineRagError as e:
        raise to_http_exception(e)
    return {"success": True, "deleted": document_id}
