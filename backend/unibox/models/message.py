from __future__ import annotations

import time

from sqlalchemy import BigInteger, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from unibox.database import Base


def now_ms() -> int:
    return int(time.time() * 1000)


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    platform: Mapped[str] = mapped_column(String(50), primary_key=True)
    from_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    from_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    to_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_from_me: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    chat_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="message")
    has_media: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=now_ms)

    __table_args__ = (
        Index("ix_messages_platform", "platform"),
        Index("ix_messages_timestamp", "timestamp"),
        Index("ix_messages_from_id", "from_id"),
        Index("ix_messages_thread_id", "thread_id"),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} platform={self.platform} ts={self.timestamp}>"
