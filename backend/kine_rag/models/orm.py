"""SQLAlchemy ORM models: one isolated conversation table per assistant type."""

from __future__ import annotations

import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from kine_rag.models.rag import AssistantType


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class Base(DeclarativeBase):
    pass


class ConversationRecord(Base):
    """Columns shared by every per-assistant conversation table."""

    __abstract__ = True

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    message: Mapped[str] = mapped_column(Text)
    response: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )


class ChatBasique(ConversationRecord):
    __tablename__ = "chat_kine_basique"


class ChatBiblio(ConversationRecord):
    __tablename__ = "chat_kine_biblio"


class ChatClinique(ConversationRecord):
    __tablename__ = "chat_kine_clinique"


class ChatAdministrative(ConversationRecord):
    __tablename__ = "chat_kine_administrative"


CONVERSATION_TABLES: dict[AssistantType, type[ConversationRecord]] = {
    AssistantType.BASIQUE: ChatBasique,
    AssistantType.BIBLIO: ChatBiblio,
    AssistantType.CLINIQUE: ChatClinique,
    AssistantType.ADMINISTRATIVE: ChatAdministrative,
}

_missing = set(AssistantType) - CONVERSATION_TABLES.keys()
if _missing:
    raise RuntimeError(f"No conversation table for assistant types: {sorted(_missing)}")
