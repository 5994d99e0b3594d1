"""Typed error taxonomy shared by the ingestion and query pipelines."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from kine_rag.models.schemas import ErrorResponse

GENERIC_USER_MESSAGE = (
    "Désolé, je rencontre un problème technique. "
    "Veuillez réessayer dans quelques instants."
)


class KineRagError(Exception):
    """Base class: carries a machine code, a message and optional details."""

    code = "KINE_RAG_ERROR"
    user_message = GENERIC_USER_MESSAGE
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if code is not None:
            self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Structured ``{success: false, error, details}`` payload."""
        return ErrorResponse(
            error=self.user_message,
            details={"code": self.code, "message": self.message, **self.details},
        )


# --- Validation (rejected before any external call) ---


class ValidationError(KineRagError):
    code = "VALIDATION_ERROR"
    user_message = "Requête invalide."


class EmptyMessageError(ValidationError):
    code = "EMPTY_MESSAGE"
    user_message = "Message requis."


class MessageTooLongError(ValidationError):
    code = "MESSAGE_TOO_LONG"
    user_message = "Message trop long."


class UnknownAssistantType(ValidationError):
    code = "UNKNOWN_ASSISTANT_TYPE"
    user_message = "Type d'assistant inconnu."


class InvalidContentError(ValidationError):
    """Raised for non-text or otherwise malformed input content."""

    code = "INVALID_CONTENT"
    user_message = "Contenu invalide ou illisible."


# --- Upstream collaborators ---


class UpstreamServiceError(KineRagError):
    code = "UPSTREAM_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        if retryable is not None:
            self.retryable = retryable


class EmbeddingServiceError(UpstreamServiceError):
    code = "EMBEDDING_ERROR"


class VectorStoreError(UpstreamServiceError):
    code = "VECTOR_STORE_ERROR"


_COMPLETION_USER_MESSAGES = {
    "QUOTA_EXCEEDED": (
        "Le service de chat est temporairement indisponible. "
        "Veuillez contacter l'administrateur."
    ),
    "RATE_LIMITED": (
        "Trop de demandes en cours. "
        "Veuillez patienter quelques secondes avant de réécrire."
    ),
    "CLI_NOT_FOUND": (
        "Problème de configuration du service. "
        "Veuillez contacter le support technique."
    ),
}


class CompletionError(UpstreamServiceError):
    """LLM completion failure; fatal for the turn."""

    code = "COMPLETION_ERROR"
    retryable = False

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return _COMPLETION_USER_MESSAGES.get(self.code, GENERIC_USER_MESSAGE)


# --- Persistence ---


class PersistenceError(KineRagError):
    code = "PERSISTENCE_ERROR"
    user_message = "Erreur lors de l'accès à l'historique."


# --- HTTP mapping ---

_CLIENT_ERROR_CODES = {
    cls.code
    for cls in (
        ValidationError,
        EmptyMessageError,
        MessageTooLongError,
        UnknownAssistantType,
        InvalidContentError,
    )
} | {"MISSING_USER_ID"}


def http_status(code: str) -> int:
    """400 for rejected input, 500 for our own failures, 502 for upstream ones."""
    if code in _CLIENT_ERROR_CODES:
        return 400
    if code in (PersistenceError.code, "INTERNAL_ERROR"):
        return 500
    return 502


def to_http_exception(error: KineRagError) -> HTTPException:
    return HTTPException(
        status_code=http_status(error.code),
        detail=error.to_response().model_dump(),
    )
