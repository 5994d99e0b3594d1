"""Embedding gateway: text -> fixed-dimension vector via Vertex AI / Google GenAI."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from kine_rag.config import Settings
from kine_rag.errors import EmbeddingServiceError, InvalidContentError

logger = logging.getLogger(__name__)

QUERY_TASK = "RETRIEVAL_QUERY"
DOCUMENT_TASK = "RETRIEVAL_DOCUMENT"

_VERTEX_PREDICT_URL = (
    "https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
    "/locations/{location}/publishers/google/models/{model}:predict"
)

_REPEATED_CHARS = re.compile(r"(.)\1{4,}")
_MIN_TOKEN_CHARS = 2
_MAX_TOKEN_CHARS = 30


class Embedder(Protocol):
    async def embed(self, text: str, *, task_type: str = QUERY_TASK) -> list[float]: ...

    async def embed_batch(
        self, texts: list[str], *, task_type: str = DOCUMENT_TASK
    ) -> list[list[float]]: ...


def prepare_text(text: str, max_chars: int = 8000) -> str:
    """Normalize text right before embedding.

    Collapses runs of five or more identical characters to three, squeezes
    whitespace, drops tokens shorter than 2 or longer than 30 characters
    (OCR debris, URLs, hashes) and truncates to the model's input ceiling.
    """
    if not isinstance(text, str):
        raise InvalidContentError(f"Cannot embed {type(text).__name__}")
    text = _REPEATED_CHARS.sub(r"\1\1\1", text)
    tokens = [
        t for t in text.split() if _MIN_TOKEN_CHARS <= len(t) <= _MAX_TOKEN_CHARS
    ]
    prepared = " ".join(tokens)
    if len(prepared) > max_chars:
        prepared = prepared[:max_chars].rstrip()
    return prepared


def get_genai_client(settings: Settings) -> genai.Client:
    """Create the Google GenAI client (Vertex AI via ADC).

    The same client instance exposes both sync (client.models) and async
    (client.aio.models) interfaces.
    """
    return genai.Client(
        vertexai=True,
        project=settings.gcp_project_id,
        location=settings.gcp_location,
    )


class EmbeddingGateway:
    """Async embedding client; single and batch modes, order preserving.

    Upstream failures and timeouts raise ``EmbeddingServiceError``; nothing is
    retried here.
    """

    def __init__(
        self,
        settings: Settings,
        genai_client: genai.Client | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._genai_client = genai_client
        self._http_client = http_client

    @property
    def genai_client(self) -> genai.Client:
        if self._genai_client is None:
            self._genai_client = get_genai_client(self.settings)
        return self._genai_client

    async def embed(self, text: str, *, task_type: str = QUERY_TASK) -> list[float]:
        """Embed a single text string (query-time search by default)."""
        logger.debug(
            "Embedding text (%d chars): %r",
            len(text),
            text[:100] + ("..." if len(text) > 100 else ""),
        )
        vectors = await self.embed_batch([text], task_type=task_type)
        return vectors[0]

    async def embed_batch(
        self, texts: list[str], *, task_type: str = DOCUMENT_TASK
    ) -> list[list[float]]:
        """Embed many texts; output order matches input order."""
        if not texts:
            return []
        max_chars = self.settings.embedding_max_input_chars
        prepared = [prepare_text(t, max_chars) for t in texts]
        empty = [i for i, t in enumerate(prepared) if not t]
        if empty:
            raise InvalidContentError(
                "Nothing left to embed after normalization",
                details={"indexes": empty},
            )

        logger.info(
            "Embedding batch of %d texts (model=%s, dims=%d, task=%s)",
            len(prepared),
            self.settings.embedding_model,
            self.settings.embedding_dimensions,
            task_type,
        )
        size = max(1, self.settings.embedding_batch_size)
        vectors: list[list[float]] = []
        for start in range(0, len(prepared), size):
            group = prepared[start : start + size]
            vectors.extend(await self._embed_group(group, task_type))

        if len(vectors) != len(texts):
            raise EmbeddingServiceError(
                f"Expected {len(texts)} vectors, got {len(vectors)}",
            )
        for vector in vectors:
            if len(vector) != self.settings.embedding_dimensions:
                raise EmbeddingServiceError(
                    f"Embedding has {len(vector)} dims, expected "
                    f"{self.settings.embedding_dimensions}",
                )
        logger.info("Embedded %d texts -> %d vectors", len(texts), len(vectors))
        return vectors

    async def _embed_group(self, texts: list[str], task_type: str) -> list[list[float]]:
        try:
            async with asyncio.timeout(self.settings.embedding_timeout_seconds):
                if self.settings.google_api_key:
                    return await self._embed_via_api_key(texts, task_type)
                return await self._embed_via_sdk(texts, task_type)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise EmbeddingServiceError(
                f"Embedding timed out after {self.settings.embedding_timeout_seconds}s",
                code="EMBEDDING_TIMEOUT",
                retryable=False,
            ) from e
        except httpx.HTTPError as e:
            raise EmbeddingServiceError(f"Embedding HTTP call failed: {e}") from e
        except genai_errors.APIError as e:
            raise EmbeddingServiceError(f"Embedding API error: {e}") from e
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingServiceError(f"Malformed embedding response: {e!r}") from e

    async def _embed_via_sdk(
        self, texts: list[str], task_type: str
    ) -> list[list[float]]:
        response = await self.genai_client.aio.models.embed_content(
            model=self.settings.embedding_model,
            contents=texts,
            config=types.EmbedContentConfig(
                output_dimensionality=self.settings.embedding_dimensions,
                task_type=task_type,
            ),
        )
        return [list(e.values) for e in response.embeddings]

    async def _embed_via_api_key(
        self, texts: list[str], task_type: str
    ) -> list[list[float]]:
        """Call the Vertex AI embedding endpoint directly using a GCP API key."""
        url = _VERTEX_PREDICT_URL.format(
            location=self.settings.gcp_location,
            project=self.settings.gcp_project_id,
            model=self.settings.embedding_model,
        )
        body = {
            "instances": [{"content": t, "task_type": task_type} for t in texts],
            "parameters": {"outputDimensionality": self.settings.embedding_dimensions},
        }
        if self._http_client is not None:
            resp = await self._http_client.post(
                url,
                params={"key": self.settings.google_api_key},
                json=body,
                timeout=self.settings.embedding_timeout_seconds,
            )
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    url,
                    params={"key": self.settings.google_api_key},
                    json=body,
                    timeout=self.settings.embedding_timeout_seconds,
                )
        resp.raise_for_status()
        return [p["embeddings"]["values"] for p in resp.json()["predictions"]]
