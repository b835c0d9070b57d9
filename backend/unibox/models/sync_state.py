from __future__ import annotations

from sqlalchemy import BigInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from unibox.database import Base
from unibox.models.message import now_ms


class SyncState(Base):
    __tablename__ = "sync_states"

    platform: Mapped[str] = mapped_column(String(50), primary_key=True)
    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=now_ms, onupdate=now_ms
    )

    def __repr__(self) -> str:
        return f"<SyncState platform={self.platform!r} cursor={self.sync_cursor!r}>"
