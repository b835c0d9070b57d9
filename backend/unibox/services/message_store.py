from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
from collections.abc import Callable, Iterator
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from unibox.errors import StoreUnavailable
from unibox.models.conversation import Conversation
from unibox.models.message import Message, now_ms
from unibox.models.sync_state import SyncState
from unibox.schemas.messages import (
    CanonicalMessage,
    ConversationSchema,
    MessageFilter,
    Platform,
)
from unibox.services.key_lock import KeyLock, LocalKeyLock

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 50


@dataclasses.dataclass(frozen=True)
class UpsertOutcome:
    is_new: bool
    conversation_key: str | None
    rollup_advanced: bool


def _insert_for(db: Session, model: type):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _message_values(msg: CanonicalMessage) -> dict[str, Any]:
    """Mutable columns; ``created_at`` is never rewritten."""
    return {
        "from_name": msg.from_name,
        "from_id": msg.from_id,
        "to_address": msg.to,
        "body": msg.body,
        "subject": msg.subject,
        "timestamp": msg.timestamp,
        "is_from_me": msg.is_from_me,
        "chat_name": msg.chat_name,
        "thread_id": msg.thread_id,
        "type": msg.type,
        "has_media": msg.has_media,
    }


def _to_canonical(row: Message) -> CanonicalMessage:
    return CanonicalMessage(
        id=row.id,
        platform=row.platform,
        from_name=row.from_name,
        from_id=row.from_id,
        to=row.to_address,
        body=row.body or "",
        subject=row.subject,
        timestamp=row.timestamp,
        is_from_me=row.is_from_me,
        chat_name=row.chat_name,
        thread_id=row.thread_id,
        type=row.type,
        has_media=row.has_media,
        created_at=row.created_at,
    )


def _conversation_name(msg: CanonicalMessage) -> str | None:
    return msg.chat_name or msg.subject or msg.from_name


class MessageStore:
    """Durable message table plus the per-conversation rollups.

    Every public write runs in one transaction, so a failed write leaves no
    partial row behind. Storage failures surface as ``StoreUnavailable``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        key_lock: KeyLock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._key_lock = key_lock or LocalKeyLock()

    @contextlib.contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("message store failure: %s", exc)
            raise StoreUnavailable(str(exc)) from exc

    # ── Writes ────────────────────────────────────────────────────────────

    def upsert_message(self, msg: CanonicalMessage) -> bool:
        """Insert or replace a message by ``(id, platform)``.

        Returns True when a new row was created. Duplicates replace every
        mutable column but keep the original ``created_at``.
        """
        with self._session() as db:
            is_new = self._upsert(db, msg)
            db.commit()
        return is_new

    def record_message(self, msg: CanonicalMessage) -> UpsertOutcome:
        """Upsert a message and fold it into its conversation rollup."""
        key = msg.conversation_key
        lock_key = f"{msg.platform}:{key}" if key is not None else f"{msg.platform}:message:{msg.id}"

        with self._key_lock.hold(lock_key):
            with self._session() as db:
                is_new = self._upsert(db, msg)
                advanced = False
                if key is not None:
                    advanced = self._apply_rollup(db, msg, key, is_new)
                db.commit()

        if key is None:
            logger.info("message %s/%s has no conversation key; rollup skipped", msg.platform, msg.id)
        return UpsertOutcome(is_new=is_new, conversation_key=key, rollup_advanced=advanced)

    def _upsert(self, db: Session, msg: CanonicalMessage) -> bool:
        values = _message_values(msg)
        stmt = (
            _insert_for(db, Message)
            .values(id=msg.id, platform=msg.platform, created_at=now_ms(), **values)
            .on_conflict_do_nothing(index_elements=["id", "platform"])
        )
        if db.execute(stmt).rowcount == 1:
            return True

        db.execute(
            update(Message)
            .where(Message.id == msg.id, Message.platform == msg.platform)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return False

    def _apply_rollup(self, db: Session, msg: CanonicalMessage, key: str, is_new: bool) -> bool:
        now = now_ms()
        name = _conversation_name(msg)

        db.execute(
            _insert_for(db, Conversation)
            .values(
                platform=msg.platform,
                id=key,
                name=name,
                unread_count=0,
                is_archived=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["platform", "id"])
        )

        where = (Conversation.platform == msg.platform, Conversation.id == key)
        advance_values: dict[str, Any] = {
            "last_message_id": msg.id,
            "last_message_time": msg.timestamp,
            "updated_at": now,
        }
        if name:
            advance_values["name"] = name

        # The timestamp guard keeps the rollup monotonic under any delivery order
        advanced = db.execute(
            update(Conversation)
            .where(
                *where,
                or_(
                    Conversation.last_message_time.is_(None),
                    Conversation.last_message_time <= msg.timestamp,
                ),
            )
            .values(**advance_values)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if is_new and not msg.is_from_me:
            db.execute(
                update(Conversation)
                .where(*where)
                .values(unread_count=Conversation.unread_count + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return advanced

    # ── Reads ─────────────────────────────────────────────────────────────

    def query_messages(self, filters: MessageFilter | None = None) -> list[CanonicalMessage]:
        filters = filters or MessageFilter()
        stmt = select(Message)

        if filters.platform is not None:
            stmt = stmt.where(Message.platform == Platform(filters.platform).value)
        if filters.from_id:
            stmt = stmt.where(Message.from_id == filters.from_id)
        if filters.thread_id:
            stmt = stmt.where(Message.thread_id == filters.thread_id)
        if filters.search_term:
            pattern = f"%{_escape_like(filters.search_term)}%"
            stmt = stmt.where(
                or_(
                    Message.body.ilike(pattern, escape="\\"),
                    Message.subject.ilike(pattern, escape="\\"),
                    Message.from_name.ilike(pattern, escape="\\"),
                )
            )

        stmt = stmt.order_by(Message.timestamp.desc()).limit(filters.limit)
        with self._session() as db:
            return [_to_canonical(row) for row in db.scalars(stmt).all()]

    def search_messages(self, term: str) -> list[CanonicalMessage]:
        return self.query_messages(MessageFilter(search_term=term, limit=SEARCH_LIMIT))

    def list_conversations(self) -> list[ConversationSchema]:
        """Non-archived conversations, newest first, with a last-message preview."""
        stmt = (
            select(Conversation, Message.body)
            .outerjoin(
                Message,
                and_(
                    Message.id == Conversation.last_message_id,
                    Message.platform == Conversation.platform,
                ),
            )
            .where(Conversation.is_archived.is_(False))
            .order_by(Conversation.last_message_time.desc())
        )
        with self._session() as db:
            return [_conversation_schema(conv, body) for conv, body in db.execute(stmt).all()]

    def get_conversation(self, platform: str, key: str) -> ConversationSchema | None:
        stmt = (
            select(Conversation, Message.body)
            .outerjoin(
                Message,
                and_(
                    Message.id == Conversation.last_message_id,
                    Message.platform == Conversation.platform,
                ),
            )
            .where(Conversation.platform == platform, Conversation.id == key)
        )
        with self._session() as db:
            row = db.execute(stmt).first()
        if row is None:
            return None
        return _conversation_schema(row[0], row[1])

    # ── Sync cursors ──────────────────────────────────────────────────────

    def get_sync_cursor(self, platform: str) -> dict | None:
        with self._session() as db:
            state = db.get(SyncState, platform)
            raw = state.sync_cursor if state else None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("discarding unreadable sync cursor for %s: %r", platform, raw)
            return None

    def set_sync_cursor(self, platform: str, cursor: dict) -> None:
        encoded = json.dumps(cursor)
        now = now_ms()
        with self._session() as db:
            db.execute(
                _insert_for(db, SyncState)
                .values(platform=platform, sync_cursor=encoded, updated_at=now)
                .on_conflict_do_update(
                    index_elements=["platform"],
                    set_={"sync_cursor": encoded, "updated_at": now},
                )
            )
            db.commit()


def _conversation_schema(conv: Conversation, last_body: str | None) -> ConversationSchema:
    return ConversationSchema(
        id=conv.id,
        platform=conv.platform,
        name=conv.name,
        last_message_id=conv.last_message_id,
        last_message_time=conv.last_message_time,
        last_message=last_body,
        unread_count=conv.unread_count,
        is_archived=conv.is_archived,
    )
