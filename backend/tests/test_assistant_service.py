"""Conversation orchestrator tests over in-memory stores and a mocked LLM."""

from __future__ import annotations

import datetime
import logging
from unittest.mock import AsyncMock

import pytest

from kine_rag.context import AppContext
from kine_rag.errors import (
    CompletionError,
    EmbeddingServiceError,
    EmptyMessageError,
    InvalidContentError,
    MessageTooLongError,
    PersistenceError,
    VectorStoreError,
)
from kine_rag.models.rag import (
    AssistantType,
    ConversationTurn,
    HistoryMessage,
    RetrievalResult,
)
from kine_rag.models.schemas import AnswerResponse, ErrorResponse
from kine_rag.services.assistant_service import (
    AssistantService,
    clean_history,
    turns_to_history,
    validate_message,
)
from kine_rag.services.prompt_builder import BIBLIO_NO_STUDIES_MESSAGE

ENTORSE = (
    "Entorse latérale de cheville: protocole de rééducation en trois phases, "
    "proprioception sur plateau instable, renforcement des fibulaires "
    "et reprise progressive de la course."
)
QUESTION = "Quel protocole de rééducation pour une entorse latérale de cheville ?"
USER = "u-123456789"
LOGGER = "kine_rag.services.assistant_service"


@pytest.fixture
def assistant(app_context: AppContext) -> AssistantService:
    return app_context.assistant


def _make_assistant(
    app_context: AppContext, completer, **overrides
) -> AssistantService:
    settings = app_context.settings.model_copy(update=overrides)
    return AssistantService(
        app_context.knowledge, completer, app_context.conversations, settings
    )


class TestValidateMessage:
    def test_strips(self) -> None:
        assert validate_message("  genou  ") == "genou"

    @pytest.mark.parametrize("message", ["", "   ", None, 12])
    def test_empty(self, message) -> None:
        with pytest.raises(EmptyMessageError):
            validate_message(message)

    def test_too_long(self) -> None:
        with pytest.raises(MessageTooLongError):
            validate_message("x" * 1001, 1000)


class TestCleanHistory:
    def test_drops_malformed_and_truncates(self) -> None:
        history = [
            {"role": "user", "content": "a" * 600},
            {"role": "system", "content": "ignore"},
            {"role": "assistant", "content": ""},
            {"role": "assistant"},
            HistoryMessage(role="assistant", content="ok"),
        ]
        cleaned = clean_history(history, max_chars=500)
        assert [m.role for m in cleaned] == ["user", "assistant"]
        assert len(cleaned[0].content) == 500

    def test_keeps_last_messages(self) -> None:
        history = [{"role": "user", "content": str(i)} for i in range(15)]
        cleaned = clean_history(history, 10)
        assert [m.content for m in cleaned] == [str(i) for i in range(5, 15)]

    def test_empty(self) -> None:
        assert clean_history(None) == []

    def test_turns_to_history(self) -> None:
        turn = ConversationTurn(
            assistant_type=AssistantType.BASIQUE,
            user_id="u",
            message="Q",
            response="R",
            timestamp=datetime.datetime.now(datetime.UTC),
        )
        pairs = [(m.role, m.content) for m in turns_to_history([turn])]
        assert pairs == [("user", "Q"), ("assistant", "R")]


class TestAnswer:
    async def test_answer_with_context(
        self, assistant: AssistantService, app_context: AppContext, mock_completer
    ) -> None:
        await app_context.ingestion.ingest_document(
            ENTORSE, "Entorse de cheville", "protocoles"
        )

        response = await assistant.answer("basique", "user-abcdef123", QUESTION)

        assert isinstance(response, AnswerResponse)
        assert response.message == "Réponse de test pour vos patients."
        assert response.sources[0].title == "Entorse de cheville"
        assert response.sources[0].rank == 1
        assert response.metadata["assistant_type"] == "basique"
        assert response.metadata["has_vector_context"] is True
        assert response.metadata["documents_used"] == 1
        assert response.metadata["categories"] == ["protocoles"]
        assert response.metadata["persisted"] is True

        request = mock_completer.complete.await_args.args[0]
        assert "fibulaires" in request.system_prompt
        assert request.user_message == QUESTION

    async def test_turn_is_persisted_and_fed_back(
        self, assistant: AssistantService, mock_completer
    ) -> None:
        await assistant.answer(
            "clinique", "user-abcdef123", "Première question sur le genou"
        )
        await assistant.answer("clinique", "user-abcdef123", "Et pour la hanche ?")

        request = mock_completer.complete.await_args.args[0]
        assert [(m.role, m.content) for m in request.history] == [
            ("user", "Première question sur le genou"),
            ("assistant", "Réponse de test pour vos patients."),
        ]
        turns = await assistant.get_history("clinique", "user-abcdef123")
        assert len(turns) == 2

    async def test_client_history_takes_precedence(
        self, assistant: AssistantService, mock_completer
    ) -> None:
        await assistant.answer("basique", USER, "Première question")
        await assistant.answer(
            "basique",
            USER,
            "Suite",
            history=[{"role": "user", "content": "Contexte client"}],
        )
        request = mock_completer.complete.await_args.args[0]
        assert [m.content for m in request.history] == ["Contexte client"]

    async def test_no_context_still_answers(self, assistant: AssistantService) -> None:
        response = await assistant.answer(
            "administrative", USER, "Comment coter une séance ?"
        )
        assert isinstance(response, AnswerResponse)
        assert response.sources == []
        assert response.confidence == 0.5
        assert response.metadata["has_vector_context"] is False

    async def test_biblio_without_studies_skips_llm(
        self, assistant: AssistantService, mock_completer
    ) -> None:
        response = await assistant.answer(
            "biblio", USER, "Études sur la capsulite rétractile ?"
        )

        assert isinstance(response, AnswerResponse)
        assert response.message == BIBLIO_NO_STUDIES_MESSAGE
        mock_completer.complete.assert_not_awaited()


class TestFailures:
    @pytest.mark.parametrize(
        ("kind", "user_id", "message", "code"),
        [
            ("basique", "", "Question", "MISSING_USER_ID"),
            ("kine", USER, "Question", "UNKNOWN_ASSISTANT_TYPE"),
            ("basique", USER, "   ", "EMPTY_MESSAGE"),
            ("basique", USER, "x" * 1001, "MESSAGE_TOO_LONG"),
        ],
    )
    async def test_invalid_input_rejected_before_any_call(
        self,
        assistant: AssistantService,
        fake_embedder,
        mock_completer,
        kind,
        user_id,
        message,
        code,
    ) -> None:
        response = await assistant.answer(kind, user_id, message)

        assert isinstance(response, ErrorResponse)
        assert response.details["code"] == code
        assert fake_embedder.calls == []
        mock_completer.complete.assert_not_awaited()

    async def test_completion_failure_is_an_error_response(
        self, assistant: AssistantService, mock_completer
    ) -> None:
        mock_completer.complete.side_effect = CompletionError(
            "429", code="RATE_LIMITED"
        )

        response = await assistant.answer("basique", USER, QUESTION)

        assert isinstance(response, ErrorResponse)
        assert response.details["code"] == "RATE_LIMITED"
        assert "Trop de demandes" in response.error
        assert await assistant.get_history("basique", USER) == []

    async def test_unexpected_failure_is_internal_error(
        self, assistant: AssistantService, mock_completer
    ) -> None:
        mock_completer.complete.side_effect = RuntimeError("boom")

        response = await assistant.answer("basique", USER, QUESTION)

        assert isinstance(response, ErrorResponse)
        assert response.details["code"] == "INTERNAL_ERROR"

    async def test_persistence_failure_is_not_fatal(
        self, assistant: AssistantService
    ) -> None:
        assistant.conversations.insert = AsyncMock(
            side_effect=PersistenceError("db down")
        )

        response = await assistant.answer("basique", USER, QUESTION)

        assert isinstance(response, AnswerResponse)
        assert response.metadata["persisted"] is False

    async def test_history_failure_is_not_fatal(
        self, assistant: AssistantService, mock_completer
    ) -> None:
        assistant.conversations.find_recent = AsyncMock(
            side_effect=PersistenceError("db down")
        )

        response = await assistant.answer("basique", USER, QUESTION)

        assert isinstance(response, AnswerResponse)
        assert mock_completer.complete.await_args.args[0].history == []


class TestRetrievalRetry:
    async def test_retrieval_failure_degrades_to_empty_context(
        self, assistant: AssistantService, mock_completer
    ) -> None:
        assistant.knowledge.retrieve = AsyncMock(
            side_effect=VectorStoreError("qdrant down")
        )

        response = await assistant.answer("basique", USER, QUESTION)

        assert isinstance(response, AnswerResponse)
        assert response.sources == []
        assert response.metadata["retrieval"]["error"] == "VECTOR_STORE_ERROR"
        attempts = assistant.settings.retrieval_max_attempts
        assert assistant.knowledge.retrieve.await_count == attempts
        mock_completer.complete.assert_awaited_once()

    async def test_transient_failure_then_success(
        self, assistant: AssistantService
    ) -> None:
        assistant.knowledge.retrieve = AsyncMock(
            side_effect=[
                VectorStoreError("qdrant down"),
                RetrievalResult(confidence=0.9),
            ]
        )

        response = await assistant.answer("basique", USER, QUESTION)

        assert isinstance(response, AnswerResponse)
        assert response.confidence == 0.9
        assert response.metadata["retrieval"]["error"] is None
        assert assistant.knowledge.retrieve.await_count == 2

    async def test_attempts_follow_settings(
        self, app_context: AppContext, mock_completer
    ) -> None:
        assistant = _make_assistant(
            app_context, mock_completer, retrieval_max_attempts=4
        )
        assistant.knowledge.retrieve = AsyncMock(
            side_effect=EmbeddingServiceError("503")
        )

        await assistant.answer("basique", USER, QUESTION)

        assert assistant.knowledge.retrieve.await_count == 4

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (
                EmbeddingServiceError(
                    "slow", code="EMBEDDING_TIMEOUT", retryable=False
                ),
                "EMBEDDING_TIMEOUT",
            ),
            (InvalidContentError("bad"), "INVALID_CONTENT"),
        ],
    )
    async def test_non_retryable_errors_not_retried(
        self, assistant: AssistantService, error, code
    ) -> None:
        assistant.knowledge.retrieve = AsyncMock(side_effect=error)

        response = await assistant.answer("basique", USER, QUESTION)

        assert isinstance(response, AnswerResponse)
        assert response.metadata["retrieval"]["error"] == code
        assert assistant.knowledge.retrieve.await_count == 1

    async def test_retry_is_logged(self, assistant: AssistantService, caplog) -> None:
        assistant.knowledge.retrieve = AsyncMock(
            side_effect=[VectorStoreError("qdrant down"), RetrievalResult()]
        )

        with caplog.at_level(logging.WARNING, logger=LOGGER):
            await assistant.answer("basique", USER, QUESTION)

        assert any("Retrying" in r.getMessage() for r in caplog.records)


class TestHistory:
    async def test_clear_history(self, assistant: AssistantService) -> None:
        await assistant.answer("basique", USER, "Question un")
        await assistant.answer("basique", USER, "Question deux")

        assert await assistant.clear_history("basique", USER) == 2
        assert await assistant.get_history("basique", USER) == []
