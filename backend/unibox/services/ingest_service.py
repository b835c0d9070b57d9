from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Sequence
from typing import Any

from unibox.errors import MalformedPayload
from unibox.schemas.messages import CanonicalMessage, IngestResultSchema
from unibox.services.message_store import MessageStore
from unibox.services.normalizer import normalize_canonical
from unibox.services.notification_bus import TOPIC_MESSAGE_NEW, NotificationBus
from unibox.services.platforms import PlatformRegistry

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class IngestResult:
    stored: int = 0
    new: int = 0
    warnings: list[str] = dataclasses.field(default_factory=list)
    messages: list[CanonicalMessage] = dataclasses.field(default_factory=list)

    def to_schema(self) -> IngestResultSchema:
        return IngestResultSchema(
            stored=self.stored,
            new=self.new,
            warnings=list(self.warnings),
            messages=list(self.messages),
        )


def _as_batch(payload_or_batch: Any) -> Sequence[Any]:
    if isinstance(payload_or_batch, (list, tuple)):
        return payload_or_batch
    return [payload_or_batch]


class IngestionPipeline:
    """Normalize, persist, roll up and publish platform messages.

    A malformed item is skipped with a warning and the rest of the batch
    continues. ``StoreUnavailable`` is raised to the caller; items after the
    failure are not attempted.
    """

    def __init__(
        self,
        store: MessageStore,
        bus: NotificationBus,
        registry: PlatformRegistry,
    ) -> None:
        self._store = store
        self._bus = bus
        self._registry = registry

    def ingest(
        self,
        platform: str,
        payload_or_batch: Any,
        *,
        cancelled: Callable[[], bool] | None = None,
    ) -> IngestResult:
        """Ingest one native payload or a batch of them from ``platform``.

        ``cancelled`` is polled between items; once it returns True the
        remaining items are dropped. Raises ``UnknownPlatform`` before doing
        anything if the platform is not configured.
        """
        variant = self._registry.get(platform)
        result = IngestResult()

        for index, payload in enumerate(_as_batch(payload_or_batch)):
            if cancelled is not None and cancelled():
                logger.info("ingest: %s cancelled, dropping remaining items from %d", platform, index)
                break
            try:
                message = variant.normalize(payload)
            except MalformedPayload as exc:
                self._warn(result, index, exc)
                continue
            self._commit(message, result)

        logger.debug(
            "ingest: platform=%s stored=%d new=%d warnings=%d",
            variant.platform.value, result.stored, result.new, len(result.warnings),
        )
        return result

    def ingest_message(self, message_or_batch: Any) -> IngestResult:
        """Ingest messages that are already in canonical shape."""
        items = _as_batch(message_or_batch)

        # Reject unconfigured platforms before anything is written
        for item in items:
            platform = item.platform if isinstance(item, CanonicalMessage) else (
                item.get("platform") if isinstance(item, dict) else None
            )
            if platform is not None:
                self._registry.resolve(platform)

        result = IngestResult()
        for index, item in enumerate(items):
            try:
                message = normalize_canonical(item)
            except MalformedPayload as exc:
                self._warn(result, index, exc)
                continue
            self._commit(message, result)
        return result

    def _warn(self, result: IngestResult, index: int, exc: MalformedPayload) -> None:
        logger.warning("ingest: skipping malformed %s item %d: %s", exc.platform, index, exc.reason)
        result.warnings.append(f"item {index}: {exc.reason}")

    def _commit(self, message: CanonicalMessage, result: IngestResult) -> None:
        outcome = self._store.record_message(message)
        result.stored += 1
        if outcome.is_new:
            result.new += 1
        result.messages.append(message)

        self._bus.publish(
            TOPIC_MESSAGE_NEW,
            message.platform,
            {
                "message": message.model_dump(mode="json", by_alias=True),
                "isNew": outcome.is_new,
                "conversationKey": outcome.conversation_key,
                "rollupAdvanced": outcome.rollup_advanced,
            },
        )
