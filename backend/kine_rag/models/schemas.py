"""Pydantic request/response/error schemas."""

from __future__ import annotations

import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from kine_rag.models.rag import AssistantType, HistoryMessage


# --- Sources as shown to the user ---


class FormattedSource(BaseModel):
    title: str
    category: str
    similarity: str
    confidence: int
    relevance_level: str
    rank: int
    preview: str


# --- Assistant API schemas ---


class MessageRequest(BaseModel):
    message: str
    conversation_history: list[HistoryMessage] | None = None
    category: str | None = None


class AnswerResponse(BaseModel):
    success: Literal[True] = True
    message: str
    sources: list[FormattedSource] = Field(default_factory=list)
    confidence: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    message: str
    response: str
    timestamp: datetime.datetime


class HistoryResponse(BaseModel):
    success: Literal[True] = True
    assistant_type: AssistantType
    history: list[HistoryEntry]


class ClearHistoryResponse(BaseModel):
    success: Literal[True] = True
    deleted: int


# --- Document API schemas ---


class IngestRequest(BaseModel):
    content: str
    title: str
    category: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentSummary(BaseModel):
    id: str
    title: str
    category: str | None
    duplicate_detected: bool = False


class IngestResponse(BaseModel):
    success: Literal[True] = True
    chunks: int
    documents: list[DocumentSummary]


class SearchRequest(BaseModel):
    query: str
    category: str | None = None
    threshold: float | None = None
    limit: int = 5


class SearchResponse(BaseModel):
    success: Literal[True] = True
    query: str
    count: int
    confidence: float
    results: list[FormattedSource]


# --- Error schema ---


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: str
    details: dict[str, Any] = Field(default_factory=dict)
