from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from unibox.database import Base
from unibox.models.message import now_ms


class Conversation(Base):
    __tablename__ = "conversations"

    platform: Mapped[str] = mapped_column(String(50), primary_key=True)
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_message_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)
    updated_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms, onupdate=now_ms
    )

    __table_args__ = (
        Index("ix_conversations_last_message_time", "last_message_time"),
    )

    def __repr__(self) -> str:
        return f"<Conversation platform={self.platform} id={self.id} unread={self.unread_count}>"
