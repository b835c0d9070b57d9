from __future__ import annotations

import json
import logging
from typing import Any

import redis as redis_module
from redis.exceptions import RedisError

from unibox.services.notification_bus import BusEvent, NotificationBus

logger = logging.getLogger(__name__)

CHANNEL = "unibox:events"


class RedisEventRelay:
    """Mirror bus events across processes over Redis pub/sub.

    Celery workers ingest into the same store as the API process; the relay
    lets their ``message.new`` events reach the API process's live
    subscribers. Events carry their bus origin so nobody re-delivers its own.
    """

    def __init__(
        self,
        bus: NotificationBus,
        redis_url: str,
        *,
        client: redis_module.Redis | None = None,
    ) -> None:
        self._bus = bus
        self._redis = client or redis_module.from_url(redis_url)
        self._pubsub = None
        self._thread = None

    def attach(self) -> None:
        self._bus.add_forwarder(self.forward)

    def forward(self, event: BusEvent) -> None:
        try:
            self._redis.publish(CHANNEL, json.dumps(event.to_dict()))
        except RedisError as exc:
            logger.warning("relay publish failed for %s/%s: %s", event.topic, event.platform, exc)

    def start(self) -> None:
        """Listen for events from other processes on a background thread."""
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{CHANNEL: self._on_message})
        self._thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        logger.info("event relay listening on %s", CHANNEL)

    def stop(self) -> None:
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None

    def _on_message(self, message: dict[str, Any]) -> None:
        try:
            event = BusEvent.from_dict(json.loads(message["data"]))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("relay dropped undecodable event: %s", exc)
            return
        if event.origin == self._bus.origin:
            return
        self._bus.deliver(event)
