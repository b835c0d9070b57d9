from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable

from fastapi import Request
from sqlalchemy.orm import Session

from unibox.config import Settings
from unibox.database import SessionLocal
from unibox.services.connection_supervisor import ConnectionSupervisor
from unibox.services.event_relay import RedisEventRelay
from unibox.services.ingest_service import IngestionPipeline
from unibox.services.key_lock import LocalKeyLock, RedisKeyLock
from unibox.services.message_store import MessageStore
from unibox.services.notification_bus import NotificationBus
from unibox.services.platforms import PlatformRegistry

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Core:
    store: MessageStore
    bus: NotificationBus
    registry: PlatformRegistry
    pipeline: IngestionPipeline
    supervisor: ConnectionSupervisor
    relay: RedisEventRelay | None = None

    def start(self) -> None:
        self.supervisor.start()
        if self.relay is not None:
            self.relay.start()

    def stop(self) -> None:
        self.supervisor.stop()
        if self.relay is not None:
            self.relay.stop()


def build_core(
    settings: Settings,
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    registry: PlatformRegistry | None = None,
) -> Core:
    key_lock = RedisKeyLock(settings.REDIS_URL) if settings.USE_REDIS_LOCKS else LocalKeyLock()
    bus = NotificationBus(delivery_attempts=settings.BUS_DELIVERY_ATTEMPTS)

    relay = None
    if settings.USE_EVENT_RELAY:
        relay = RedisEventRelay(bus, settings.REDIS_URL)
        relay.attach()

    registry = registry or PlatformRegistry.from_settings(settings)
    store = MessageStore(session_factory, key_lock)
    pipeline = IngestionPipeline(store, bus, registry)
    supervisor = ConnectionSupervisor(registry, pipeline, bus, store)

    logger.info(
        "core built: platforms=%s redis_locks=%s relay=%s",
        [p.value for p in registry.platforms()], settings.USE_REDIS_LOCKS, relay is not None,
    )
    return Core(
        store=store,
        bus=bus,
        registry=registry,
        pipeline=pipeline,
        supervisor=supervisor,
        relay=relay,
    )


def get_core(request: Request) -> Core:
    return request.app.state.core
