from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Largest value a signed 64-bit INTEGER column holds
MAX_TIMESTAMP_MS = 2**63 - 1


class Platform(str, enum.Enum):
    WHATSAPP = "whatsapp"
    WHATSAPP_BUSINESS = "whatsapp-business"
    GMAIL = "gmail"


class MessageType(str, enum.Enum):
    MESSAGE = "message"
    EMAIL = "email"


class CanonicalMessage(BaseModel):
    """Platform-independent message every adapter converges to.

    Serialized in camelCase (``fromName``, ``isFromMe``...) for subscribers;
    snake_case field names are accepted on input as well.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=True,
    )

    id: str = Field(min_length=1)
    platform: Platform
    from_name: str | None = None
    from_id: str | None = None
    to: str | None = None
    body: str = ""
    subject: str | None = None
    timestamp: int = Field(ge=0, le=MAX_TIMESTAMP_MS)
    is_from_me: bool = False
    chat_name: str | None = None
    thread_id: str | None = None
    type: MessageType = Field(default=MessageType.MESSAGE, validate_default=True)
    has_media: bool = False
    created_at: int | None = None

    @property
    def conversation_key(self) -> str | None:
        """Rollup key: thread id, else chat name, else sender id."""
        return self.thread_id or self.chat_name or self.from_id or None


class MessageFilter(BaseModel):
    platform: Platform | None = None
    from_id: str | None = None
    thread_id: str | None = None
    search_term: str | None = None
    limit: int = Field(default=100, ge=1, le=500)


class ConversationSchema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    platform: str
    name: str | None = None
    last_message_id: str | None = None
    last_message_time: int | None = None
    last_message: str | None = None
    unread_count: int = 0
    is_archived: bool = False


class IngestResultSchema(BaseModel):
    stored: int
    new: int
    warnings: list[str]
    messages: list[CanonicalMessage]
