"""Pydantic models for RAG: chunks, documents, scored results and conversation turns."""

from __future__ import annotations

import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class AssistantType(StrEnum):
    """The four assistant variants; each drives its own prompt and history table."""

    BASIQUE = "basique"
    BIBLIO = "biblio"
    CLINIQUE = "clinique"
    ADMINISTRATIVE = "administrative"


class Chunk(BaseModel):
    """Transient ingestion unit: a coherent slice of a source document."""

    content: str
    priority: int = 0


class Document(BaseModel):
    """A stored chunk of knowledge with its embedding and metadata."""

    id: str
    title: str
    content: str
    category: str | None = None
    embedding: list[float] | None = Field(default=None, repr=False)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime.datetime | None = None


class ScoredDocument(Document):
    """A query result re-ranked by the relevance scorer."""

    similarity: float
    final_score: float = 0.0
    rank: int = 0
    score_breakdown: dict[str, float] = Field(default_factory=dict)


class SelectedSource(ScoredDocument):
    """A scored document kept for the prompt, tagged with why it was kept."""

    diversity_tag: Literal["top", "diverse", "excellent"]


class RetrievalMetadata(BaseModel):
    total_found: int = 0
    average_score: float = 0.0
    categories_found: list[str] = Field(default_factory=list)
    high_threshold_results: int = 0
    low_threshold_results: int = 0
    error: str | None = None


class RetrievalResult(BaseModel):
    """Everything the query pipeline learned from one retrieval."""

    all_documents: list[ScoredDocument] = Field(default_factory=list)
    selected_sources: list[SelectedSource] = Field(default_factory=list)
    confidence: float = 0.5
    metadata: RetrievalMetadata = Field(default_factory=RetrievalMetadata)


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class CompletionRequest(BaseModel):
    system_prompt: str
    history: list[HistoryMessage] = Field(default_factory=list)
    user_message: str
    max_tokens: int = 1000
    temperature: float = 0.7


class ConversationTurn(BaseModel):
    """One persisted exchange between a physiotherapist and an assistant."""

    id: int | None = None
    assistant_type: AssistantType
    user_id: str
    message: str
    response: str
    timestamp: datetime.datetime
