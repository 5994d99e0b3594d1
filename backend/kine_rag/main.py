"""FastAPI application entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from rich.logging import RichHandler

from kine_rag.config import settings
from kine_rag.context import AppContext
from kine_rag.database import create_tables
from kine_rag.errors import VectorStoreError
from kine_rag.routers.assistants import router as assistants_router
from kine_rag.routers.documents import router as documents_router

logging.basicConfig(
    level=logging.INFO,
    format="%(name)s - %(message)s",
    datefmt="%H:%M:%S",
    handlers=[RichHandler(rich_tracebacks=True, markup=False)],
    force=True,
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
# Our app loggers: show DEBUG when debug=True, keep third-party libs at INFO
if settings.debug:
    for name in ("kine_rag.services", "kine_rag.routers"):
        logging.getLogger(name).setLevel(logging.DEBUG)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    ctx = AppContext.create(settings)
    try:
        try:
            await ctx.vector_store.ensure_collection()
        except VectorStoreError as e:
            logger.warning(
                "Qdrant unavailable at startup, retrieval will degrade: %s", e
            )
        await create_tables(ctx.engine)
        app.state.context = ctx
        yield
    finally:
        await ctx.aclose()


app = FastAPI(
    title="Kine RAG",
    description="Retrieval-augmented assistants for physiotherapists",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)

app.include_router(assistants_router)
app.include_router(documents_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
