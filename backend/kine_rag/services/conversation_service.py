"""Conversation persistence: one table per assistant type."""

from __future__ import annotations

import datetime
import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kine_rag.errors import PersistenceError
from kine_rag.models.orm import CONVERSATION_TABLES, ConversationRecord
from kine_rag.models.rag import AssistantType, ConversationTurn
from kine_rag.utils.log_sanitizer import sanitize_id

logger = logging.getLogger(__name__)


def _to_turn(
    assistant_type: AssistantType, row: ConversationRecord
) -> ConversationTurn:
    return ConversationTurn(
        id=row.id,
        assistant_type=assistant_type,
        user_id=row.user_id,
        message=row.message,
        response=row.response,
        timestamp=row.created_at,
    )


class ConversationRepository:
    """Async repository over the per-assistant conversation tables.

    Every database failure is raised as ``PersistenceError``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def insert(
        self,
        assistant_type: AssistantType,
        user_id: str,
        message: str,
        response: str,
    ) -> ConversationTurn:
        model = CONVERSATION_TABLES[assistant_type]
        row = model(user_id=user_id, message=message, response=response)
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save {assistant_type} turn: {e}") from e
        logger.info("Saved %s turn for user %s", assistant_type, sanitize_id(user_id))
        return _to_turn(assistant_type, row)

    async def find_recent(
        self,
        assistant_type: AssistantType,
        user_id: str,
        since_days: int = 5,
        limit: int = 20,
    ) -> list[ConversationTurn]:
        """The ``limit`` most recent turns of the last ``since_days``, oldest first."""
        model = CONVERSATION_TABLES[assistant_type]
        now = datetime.datetime.now(datetime.UTC)
        since = now - datetime.timedelta(days=since_days)
        stmt = (
            select(model)
            .where(model.user_id == user_id, model.created_at >= since)
            .order_by(model.created_at.desc(), model.id.desc())
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to load {assistant_type} history: {e}"
            ) from e
        turns = [_to_turn(assistant_type, row) for row in reversed(rows)]
        logger.debug(
            "Loaded %d %s turns for user %s (%d days)",
            len(turns),
            assistant_type,
            sanitize_id(user_id),
            since_days,
        )
        return turns

    async def delete_all(self, assistant_type: AssistantType, user_id: str) -> int:
        model = CONVERSATION_TABLES[assistant_type]
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(model).where(model.user_id == user_id)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to clear {assistant_type} history: {e}"
            ) from e
        logger.info(
            "Deleted %d %s turns for user %s",
            result.rowcount,
            assistant_type,
            sanitize_id(user_id),
        )
        return result.rowcount

    async def purge_older_than(self, assistant_type: AssistantType, days: int) -> int:
        """Delete every turn older than the retention window, for all users."""
        model = CONVERSATION_TABLES[assistant_type]
        cutoff = datetime.datetime.now(datetime.UTC) - datetime.timedelta(days=days)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(model).where(model.created_at < cutoff)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to purge {assistant_type} history: {e}"
            ) from e
        logger.info(
            "Purged %d %s turns older than %d days",
            result.rowcount,
            assistant_type,
            days,
        )
        return result.rowcount
