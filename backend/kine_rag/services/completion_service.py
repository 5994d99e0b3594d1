"""LLM completion client over the Claude Agent SDK (single turn, no tools)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ClaudeAgentOptions,
    ProcessError,
    ResultMessage,
    query,
)

from kine_rag.config import Settings
from kine_rag.errors import CompletionError
from kine_rag.models.rag import CompletionRequest

logger = logging.getLogger(__name__)

_ROLE_LABELS = {"user": "Kinésithérapeute", "assistant": "Assistant"}


class Completer(Protocol):
    async def complete(self, request: CompletionRequest) -> str: ...


def classify_error_text(text: str) -> str:
    """Map an upstream error message to a completion error code."""
    lowered = text.lower()
    if "rate limit" in lowered or "rate_limit" in lowered or "429" in lowered:
        return "RATE_LIMITED"
    if "quota" in lowered or "credit balance" in lowered or "billing" in lowered:
        return "QUOTA_EXCEEDED"
    return "AGENT_ERROR"


def render_prompt(request: CompletionRequest) -> str:
    """Flatten prior turns and the new message into one user prompt."""
    if not request.history:
        return request.user_message
    lines = ["<conversation_history>"]
    for turn in request.history:
        lines.append(f"{_ROLE_LABELS[turn.role]} : {turn.content}")
    lines.append("</conversation_history>")
    lines.append("")
    lines.append(request.user_message)
    return "\n".join(lines)


async def _as_stream(text: str) -> AsyncIterator[dict[str, Any]]:
    """Wrap a string prompt as a streaming input."""
    yield {"type": "user", "message": {"role": "user", "content": text}}


class ClaudeCompletionClient:
    """``complete(request) -> str``; every failure surfaces as ``CompletionError``.

    The SDK does not expose sampling temperature, so ``request.temperature``
    is logged but not forwarded.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _options(self, request: CompletionRequest) -> ClaudeAgentOptions:
        env = {"CLAUDE_CODE_MAX_OUTPUT_TOKENS": str(request.max_tokens)}
        if self.settings.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = self.settings.anthropic_api_key
        return ClaudeAgentOptions(
            system_prompt=request.system_prompt,
            model=self.settings.ai_model,
            max_turns=1,
            permission_mode="bypassPermissions",
            env=env,
        )

    async def complete(self, request: CompletionRequest) -> str:
        options = self._options(request)
        prompt = render_prompt(request)
        logger.info(
            "Completion: model=%s history=%d max_tokens=%d temperature=%.1f",
            self.settings.ai_model,
            len(request.history),
            request.max_tokens,
            request.temperature,
        )
        logger.debug(
            "System prompt (%d chars): %s",
            len(request.system_prompt),
            request.system_prompt[:200],
        )

        try:
            async with asyncio.timeout(self.settings.completion_timeout_seconds):
                result = await self._run(prompt, options)
        except CompletionError:
            raise
        except TimeoutError as e:
            timeout = self.settings.completion_timeout_seconds
            raise CompletionError(
                f"Completion timed out after {timeout}s", code="TIMEOUT"
            ) from e
        except CLINotFoundError as e:
            raise CompletionError(
                "Claude Code CLI not found. Ensure it is installed.",
                code="CLI_NOT_FOUND",
            ) from e
        except CLIConnectionError as e:
            raise CompletionError(
                f"Failed to connect to Claude CLI: {e}",
                code="CLI_CONNECTION_ERROR",
            ) from e
        except ProcessError as e:
            code = classify_error_text(str(e))
            raise CompletionError(
                f"Agent process failed: {e}",
                code="PROCESS_ERROR" if code == "AGENT_ERROR" else code,
            ) from e
        except CLIJSONDecodeError as e:
            raise CompletionError(
                f"Failed to parse agent response: {e}",
                code="JSON_DECODE_ERROR",
            ) from e

        if not result:
            raise CompletionError(
                "Agent did not return a result message", code="NO_RESULT"
            )
        logger.info("Completion returned %d chars", len(result))
        return result

    async def _run(self, prompt: str, options: ClaudeAgentOptions) -> str | None:
        result = None
        async for message in query(prompt=_as_stream(prompt), options=options):
            if isinstance(message, AssistantMessage):
                logger.debug("AssistantMessage received (model=%s)", message.model)
            elif isinstance(message, ResultMessage):
                logger.info(
                    "ResultMessage: num_turns=%d duration=%dms cost=$%.4f is_error=%s",
                    message.num_turns,
                    message.duration_ms,
                    message.total_cost_usd or 0,
                    message.is_error,
                )
                if message.is_error:
                    text = message.result or "Agent returned an error"
                    raise CompletionError(text, code=classify_error_text(text))
                result = message.result
        return result
