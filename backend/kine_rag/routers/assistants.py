"""Assistant API endpoints: answer a message, read and clear history."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse

from kine_rag.context import AppContext, get_context
from kine_rag.errors import KineRagError, http_status, to_http_exception
from kine_rag.models.schemas import (
    AnswerResponse,
    ClearHistoryResponse,
    ErrorResponse,
    HistoryEntry,
    HistoryResponse,
    MessageRequest,
)
from kine_rag.services.prompt_builder import parse_assistant_type
from kine_rag.utils.log_sanitizer import sanitize_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/assistants", tags=["assistants"])


@router.post(
    "/{assistant_type}/messages",
    response_model=AnswerResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def send_message(
    assistant_type: str,
    body: MessageRequest,
    x_user_id: str = Header(default=""),
    ctx: AppContext = Depends(get_context),
) -> AnswerResponse | JSONResponse:
    logger.info(
        "Message for %s assistant from user %s",
        assistant_type,
        sanitize_id(x_user_id),
    )
    result = await ctx.assistant.answer(
        assistant_type,
        x_user_id,
        body.message,
        body.conversation_history,
        category=body.category,
    )
    if isinstance(result, ErrorResponse):
        return JSONResponse(
            status_code=http_status(result.details.get("code", "")),
            content=result.model_dump(),
        )
    return result


@router.get("/{assistant_type}/history", response_model=HistoryResponse)
async def get_history(
    assistant_type: str,
    days: int | None = Query(default=None, ge=1, le=365),
    x_user_id: str = Header(),
    ctx: AppContext = Depends(get_context),
) -> HistoryResponse:
    try:
        kind = parse_assistant_type(assistant_type)
        turns = await ctx.assistant.get_history(kind, x_user_id, days)
    except KineRagError as e:
        logger.exception("History lookup failed for user %s", sanitize_id(x_user_id))
        raise to_http_exception(e)
    return HistoryResponse(
        assistant_type=kind,
        history=[
            HistoryEntry(message=t.message, response=t.response, timestamp=t.timestamp)
            for t in turns
        ],
    )


@router.delete("/{assistant_type}/history", response_model=ClearHistoryResponse)
async def clear_history(
    assistant_type: str,
    x_user_id: str = Header(),
    ctx: AppContext = Depends(get_context),
) -> ClearHistoryResponse:
    try:
        deleted = await ctx.assistant.clear_history(assistant_type, x_user_id)
    except KineRagError as e:
        logger.exception("History deletion failed for user %s", sanitize_id(x_user_id))
        raise to_http_exception(e)
    return ClearHistoryResponse(deleted=deleted)
