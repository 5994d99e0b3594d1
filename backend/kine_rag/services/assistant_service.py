"""Conversation orchestrator: one user turn from validation to persisted answer."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Sequence
from typing import Any

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from kine_rag.config import Settings
from kine_rag.errors import (
    GENERIC_USER_MESSAGE,
    EmptyMessageError,
    InvalidContentError,
    KineRagError,
    MessageTooLongError,
    PersistenceError,
    UpstreamServiceError,
    ValidationError,
)
from kine_rag.models.rag import (
    AssistantType,
    CompletionRequest,
    ConversationTurn,
    HistoryMessage,
    RetrievalMetadata,
    RetrievalResult,
)
from kine_rag.models.schemas import AnswerResponse, ErrorResponse
from kine_rag.services.completion_service import Completer
from kine_rag.services.conversation_service import ConversationRepository
from kine_rag.services.knowledge_service import KnowledgeService
from kine_rag.services.prompt_builder import (
    BIBLIO_NO_STUDIES_MESSAGE,
    build_prompt,
    parse_assistant_type,
)
from kine_rag.services.selection import format_sources
from kine_rag.utils.log_sanitizer import sanitize_id

logger = logging.getLogger(__name__)

# Upper bound on a single backoff wait, in seconds
RETRIEVAL_MAX_WAIT = 5.0


def validate_message(message: object, max_chars: int = 1000) -> str:
    """Return the stripped message or raise a ``ValidationError``."""
    if not isinstance(message, str) or not message.strip():
        raise EmptyMessageError("Message is required")
    text = message.strip()
    if len(text) > max_chars:
        raise MessageTooLongError(
            f"Message is {len(text)} chars, limit is {max_chars}",
            details={"max_chars": max_chars},
        )
    return text


def clean_history(
    history: Sequence[HistoryMessage | dict[str, Any]] | None,
    max_messages: int = 10,
    *,
    max_chars: int = 500,
) -> list[HistoryMessage]:
    """Keep the last ``max_messages`` well-formed entries, each truncated."""
    if not history:
        return []
    cleaned: list[HistoryMessage] = []
    for entry in history:
        if isinstance(entry, dict):
            role, content = entry.get("role"), entry.get("content")
        else:
            role, content = entry.role, entry.content
        if role not in ("user", "assistant"):
            continue
        if not isinstance(content, str) or not content:
            continue
        cleaned.append(HistoryMessage(role=role, content=content[:max_chars]))
    return cleaned[-max_messages:] if max_messages > 0 else []


def turns_to_history(turns: Sequence[ConversationTurn]) -> list[HistoryMessage]:
    history: list[HistoryMessage] = []
    for turn in turns:
        history.append(HistoryMessage(role="user", content=turn.message))
        history.append(HistoryMessage(role="assistant", content=turn.response))
    return history


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamServiceError) and exc.retryable


class AssistantService:
    def __init__(
        self,
        knowledge: KnowledgeService,
        completer: Completer,
        conversations: ConversationRepository,
        settings: Settings,
    ) -> None:
        self.knowledge = knowledge
        self.completer = completer
        self.conversations = conversations
        self.settings = settings

    async def answer(
        self,
        assistant_type: str | AssistantType,
        user_id: str,
        message: str,
        history: Sequence[HistoryMessage | dict[str, Any]] | None = None,
        *,
        category: str | None = None,
    ) -> AnswerResponse | ErrorResponse:
        """Answer one message; never raises, failures become ``ErrorResponse``."""
        try:
            return await self._answer(
                assistant_type, user_id, message, history, category
            )
        except KineRagError as e:
            log = logger.info if isinstance(e, ValidationError) else logger.error
            log(
                "Turn failed for user %s: [%s] %s",
                sanitize_id(user_id),
                e.code,
                e.message,
            )
            return e.to_response()
        except Exception as e:
            logger.exception(
                "Unexpected failure answering user %s", sanitize_id(user_id)
            )
            return ErrorResponse(
                error=GENERIC_USER_MESSAGE,
                details={"code": "INTERNAL_ERROR", "message": str(e)},
            )

    async def _answer(
        self,
        assistant_type: str | AssistantType,
        user_id: str,
        message: str,
        history: Sequence[HistoryMessage | dict[str, Any]] | None,
        category: str | None,
    ) -> AnswerResponse:
        if not user_id:
            raise ValidationError("Missing user id", code="MISSING_USER_ID")
        kind = parse_assistant_type(assistant_type)
        text = validate_message(message, self.settings.message_max_chars)
        logger.info(
            "=== %s turn: user=%s (%d chars) ===",
            kind,
            sanitize_id(user_id),
            len(text),
        )

        retrieval = await self._retrieve(text, category)
        sources = retrieval.selected_sources

        prompt = build_prompt(kind, sources, text)
        if kind is AssistantType.BIBLIO and not sources:
            logger.info("No studies for biblio question, returning fixed message")
            response_text = BIBLIO_NO_STUDIES_MESSAGE
        else:
            prior = await self._history(kind, user_id, history)
            response_text = await self.completer.complete(
                CompletionRequest(
                    system_prompt=prompt,
                    history=prior[-self.settings.history_prompt_turns :],
                    user_message=text,
                    max_tokens=self.settings.completion_max_tokens,
                    temperature=self.settings.completion_temperature,
                )
            )

        persisted = await self._persist(kind, user_id, text, response_text)

        categories = list(dict.fromkeys(s.category for s in sources if s.category))
        return AnswerResponse(
            message=response_text,
            sources=format_sources(sources),
            confidence=retrieval.confidence,
            metadata={
                "assistant_type": kind.value,
                "model": self.settings.ai_model,
                "documents_used": len(sources),
                "has_vector_context": bool(sources),
                "categories": categories,
                "retrieval": retrieval.metadata.model_dump(),
                "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
                "persisted": persisted,
            },
        )

    async def _retrieve(self, text: str, category: str | None) -> RetrievalResult:
        """Retrieve context; upstream failures degrade to an empty context.

        Only retryable upstream errors are retried, with exponential backoff
        starting at ``retrieval_retry_delay``.
        """

        @retry(
            stop=stop_after_attempt(self.settings.retrieval_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retrieval_retry_delay,
                max=RETRIEVAL_MAX_WAIT,
            ),
            retry=retry_if_exception(_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _retrieve_with_retry() -> RetrievalResult:
            return await self.knowledge.retrieve(text, category=category)

        try:
            return await _retrieve_with_retry()
        except (UpstreamServiceError, InvalidContentError) as e:
            logger.warning(
                "Retrieval degraded to empty context: [%s] %s", e.code, e.message
            )
            return RetrievalResult(metadata=RetrievalMetadata(error=e.code))

    async def _history(
        self,
        kind: AssistantType,
        user_id: str,
        client_history: Sequence[HistoryMessage | dict[str, Any]] | None,
    ) -> list[HistoryMessage]:
        if client_history:
            return clean_history(
                client_history,
                self.settings.history_limit,
                max_chars=self.settings.history_message_max_chars,
            )
        try:
            turns = await self.conversations.find_recent(
                kind,
                user_id,
                self.settings.history_days,
                self.settings.history_limit,
            )
        except PersistenceError as e:
            logger.warning("History unavailable, continuing without it: %s", e.message)
            return []
        return clean_history(
            turns_to_history(turns),
            2 * self.settings.history_limit,
            max_chars=self.settings.history_message_max_chars,
        )

    async def _persist(
        self, kind: AssistantType, user_id: str, message: str, response: str
    ) -> bool:
        try:
            await self.conversations.insert(kind, user_id, message, response)
        except PersistenceError:
            logger.exception(
                "Failed to persist %s turn for user %s", kind, sanitize_id(user_id)
            )
            return False
        return True

    async def get_history(
        self,
        assistant_type: str | AssistantType,
        user_id: str,
        days: int | None = None,
    ) -> list[ConversationTurn]:
        kind = parse_assistant_type(assistant_type)
        return await self.conversations.find_recent(
            kind,
            user_id,
            days or self.settings.history_days,
            self.settings.history_limit,
        )

    async def clear_history(
        self, assistant_type: str | AssistantType, user_id: str
    ) -> int:
        kind = parse_assistant_type(assistant_type)
        return await self.conversations.delete_all(kind, user_id)
