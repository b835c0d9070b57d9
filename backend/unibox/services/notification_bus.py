"""In-process fan-out of ingestion and connection events.

Delivery is synchronous and serialized per ``(topic, platform)`` stream, so a
subscriber sees one platform's events in emission order while other
platforms publish concurrently. A failing handler is retried, then logged;
it never raises into the publisher.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from collections.abc import Callable
from typing import Any

from unibox.models.message import now_ms

logger = logging.getLogger(__name__)

TOPIC_MESSAGE_NEW = "message.new"
TOPIC_CONNECTION_QR = "connection.qr"
TOPIC_CONNECTION_READY = "connection.ready"
TOPIC_CONNECTION_STATUS = "connection.status"

TOPICS: tuple[str, ...] = (
    TOPIC_MESSAGE_NEW,
    TOPIC_CONNECTION_QR,
    TOPIC_CONNECTION_READY,
    TOPIC_CONNECTION_STATUS,
)


@dataclasses.dataclass(frozen=True)
class BusEvent:
    topic: str
    platform: str
    data: dict[str, Any]
    emitted_at: int
    origin: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BusEvent":
        return cls(
            topic=raw["topic"],
            platform=raw["platform"],
            data=raw.get("data") or {},
            emitted_at=int(raw["emitted_at"]),
            origin=raw["origin"],
        )


Handler = Callable[[BusEvent], None]


class Subscription:
    def __init__(self, bus: "NotificationBus", topic: str, handler: Handler) -> None:
        self.bus = bus
        self.topic = topic
        self.handler = handler

    def unsubscribe(self) -> None:
        self.bus._remove(self.topic, self.handler)


class NotificationBus:
    def __init__(self, delivery_attempts: int = 3, origin: str | None = None) -> None:
        self.delivery_attempts = max(1, delivery_attempts)
        self.origin = origin or uuid.uuid4().hex
        self._handlers: dict[str, list[Handler]] = {topic: [] for topic in TOPICS}
        self._forwarders: list[Handler] = []
        self._lock = threading.Lock()
        self._streams: dict[tuple[str, str], threading.RLock] = {}

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        if topic not in self._handlers:
            raise ValueError(f"Unknown topic: {topic!r}")
        with self._lock:
            self._handlers[topic] = [*self._handlers[topic], handler]
        return Subscription(self, topic, handler)

    def _remove(self, topic: str, handler: Handler) -> None:
        with self._lock:
            # Equality, not identity: bound methods are rebuilt on each attribute access
            self._handlers[topic] = [h for h in self._handlers[topic] if h != handler]

    def add_forwarder(self, forwarder: Handler) -> None:
        """Register a hook that sees every locally originated event (e.g. a relay)."""
        with self._lock:
            self._forwarders.append(forwarder)

    def publish(self, topic: str, platform: str, data: dict[str, Any]) -> BusEvent:
        if topic not in self._handlers:
            raise ValueError(f"Unknown topic: {topic!r}")
        event = BusEvent(
            topic=topic,
            platform=platform,
            data=data,
            emitted_at=now_ms(),
            origin=self.origin,
        )
        with self._stream(topic, platform):
            self._dispatch(event)
            for forwarder in list(self._forwarders):
                try:
                    forwarder(event)
                except Exception as exc:
                    logger.warning("forwarder failed for %s/%s: %s", topic, platform, exc)
        return event

    def deliver(self, event: BusEvent) -> None:
        """Dispatch an event that originated elsewhere, without forwarding it again."""
        if event.topic not in self._handlers:
            logger.warning("dropping event with unknown topic %r", event.topic)
            return
        with self._stream(event.topic, event.platform):
            self._dispatch(event)

    def _stream(self, topic: str, platform: str) -> threading.RLock:
        with self._lock:
            lock = self._streams.get((topic, platform))
            if lock is None:
                lock = self._streams[(topic, platform)] = threading.RLock()
            return lock

    def _dispatch(self, event: BusEvent) -> None:
        for handler in self._handlers[event.topic]:
            for attempt in range(1, self.delivery_attempts + 1):
                try:
                    handler(event)
                    break
                except Exception as exc:
                    if attempt == self.delivery_attempts:
                        logger.error(
                            "handler %r gave up on %s/%s after %d attempts: %s",
                            handler, event.topic, event.platform, attempt, exc,
                        )
                    else:
                        logger.warning(
                            "handler %r failed on %s/%s (attempt %d): %s",
                            handler, event.topic, event.platform, attempt, exc,
                        )
