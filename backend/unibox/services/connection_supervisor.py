"""Per-platform connection lifecycle and event routing.

Each configured platform gets a ``PlatformConnection`` with its own FIFO
channel and consumer thread. Client callbacks only enqueue; the consumer
applies lifecycle transitions and forwards messages to ingestion strictly in
arrival order. Events are stamped with the connection epoch, and a
disconnect bumps the epoch so anything still queued from the old session is
dropped.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import queue
import threading
from collections.abc import Sequence
from typing import Any

from unibox.errors import ConnectionFailure, IllegalTransition, StoreUnavailable
from unibox.models.message import now_ms
from unibox.schemas.platforms import PlatformStatusSchema, SendResultSchema
from unibox.services.ingest_service import IngestionPipeline
from unibox.services.message_store import MessageStore
from unibox.services.notification_bus import (
    TOPIC_CONNECTION_QR,
    TOPIC_CONNECTION_READY,
    TOPIC_CONNECTION_STATUS,
    NotificationBus,
)
from unibox.services.platforms import PlatformClient, PlatformRegistry, PlatformVariant

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CHALLENGE_PENDING = "challenge_pending"
    CONNECTED = "connected"
    FAILED = "failed"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.CHALLENGE_PENDING,
        ConnectionState.CONNECTED,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    }),
    # A pending challenge may be refreshed (new pairing code) before it is answered
    ConnectionState.CHALLENGE_PENDING: frozenset({
        ConnectionState.CHALLENGE_PENDING,
        ConnectionState.CONNECTED,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.CONNECTED: frozenset({
        ConnectionState.DISCONNECTED,
        ConnectionState.FAILED,
    }),
    ConnectionState.FAILED: frozenset({
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    }),
}


def check_transition(platform: str, current: ConnectionState, target: ConnectionState) -> None:
    if target not in _TRANSITIONS[current]:
        raise IllegalTransition(platform, current.value, target.value)


@dataclasses.dataclass(frozen=True)
class ConnectionStatus:
    platform: str
    state: ConnectionState
    challenge: Any = None
    error: str | None = None
    updated_at: int = 0
    epoch: int = 0

    def to_schema(self) -> PlatformStatusSchema:
        return PlatformStatusSchema(
            platform=self.platform,
            state=self.state.value,
            challenge=self.challenge,
            error=self.error,
            updated_at=self.updated_at,
        )

    def to_event(self) -> dict[str, Any]:
        return {"state": self.state.value, "error": self.error}


@dataclasses.dataclass(frozen=True)
class _Event:
    kind: str
    epoch: int
    payload: Any = None


class _SessionCallbacks:
    """Callbacks handed to one client session; bound to that session's epoch."""

    def __init__(self, connection: "PlatformConnection", epoch: int) -> None:
        self._connection = connection
        self.epoch = epoch

    def on_challenge(self, payload: Any) -> None:
        self._connection._enqueue("challenge", self.epoch, payload)

    def on_ready(self) -> None:
        self._connection._enqueue("ready", self.epoch)

    def on_auth_failure(self, reason: str) -> None:
        self._connection._enqueue("auth_failure", self.epoch, reason)

    def on_disconnected(self, reason: str | None = None) -> None:
        self._connection._enqueue("disconnected", self.epoch, reason)

    def on_message(self, payload: dict[str, Any]) -> None:
        self._connection._enqueue("message", self.epoch, payload)

    def on_batch(self, payloads: Sequence[dict[str, Any]]) -> None:
        self._connection._enqueue("batch", self.epoch, list(payloads))


class PlatformConnection:
    def __init__(
        self,
        variant: PlatformVariant,
        pipeline: IngestionPipeline,
        bus: NotificationBus,
        store: MessageStore,
    ) -> None:
        self.platform = variant.platform.value
        self._variant = variant
        self._pipeline = pipeline
        self._bus = bus
        self._store = store

        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._epoch = 0
        self._challenge: Any = None
        self._error: str | None = None
        self._updated_at = now_ms()
        self._client: PlatformClient | None = None
        self._callbacks = _SessionCallbacks(self, 0)

        self._queue: queue.Queue[_Event | None] = queue.Queue()
        self._thread: threading.Thread | None = None

    # ── Thread lifecycle ─────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name=f"unibox-{self.platform}", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5) -> None:
        with self._lock:
            client, self._client = self._client, None
            self._epoch += 1
        if client is not None:
            client.stop()
        if self._thread is not None:
            self._queue.put(None)
            self._thread.join(timeout)
            self._thread = None

    def wait_idle(self) -> None:
        """Block until every queued event has been processed."""
        self._queue.join()

    # ── Status ───────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    def status(self) -> ConnectionStatus:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> ConnectionStatus:
        return ConnectionStatus(
            platform=self.platform,
            state=self._state,
            challenge=self._challenge,
            error=self._error,
            updated_at=self._updated_at,
            epoch=self._epoch,
        )

    def callbacks(self) -> _SessionCallbacks:
        with self._lock:
            return self._callbacks

    def _transition(
        self,
        target: ConnectionState,
        *,
        challenge: Any = None,
        error: str | None = None,
        new_session: bool = False,
    ) -> ConnectionStatus:
        with self._lock:
            check_transition(self.platform, self._state, target)
            self._state = target
            self._challenge = challenge
            self._error = error
            self._updated_at = now_ms()
            if new_session:
                self._epoch += 1
                self._callbacks = _SessionCallbacks(self, self._epoch)
            status = self._snapshot()
        logger.info("%s: connection %s", self.platform, target.value)
        self._bus.publish(TOPIC_CONNECTION_STATUS, self.platform, status.to_event())
        return status

    # ── Commands ─────────────────────────────────────────────────────────

    def connect(self) -> ConnectionStatus:
        status = self._transition(ConnectionState.CONNECTING, new_session=True)
        self._enqueue("start", status.epoch)
        return status

    def reconnect(self) -> ConnectionStatus:
        if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            self.disconnect()
        return self.connect()

    def disconnect(self, reason: str | None = None) -> ConnectionStatus:
        if self._state is ConnectionState.DISCONNECTED:
            return self.status()
        status = self._transition(ConnectionState.DISCONNECTED, error=reason, new_session=True)
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.stop()
        return status

    def sync(self) -> None:
        with self._lock:
            epoch = self._epoch
        self._enqueue("sync", epoch)

    def send_message(self, target: str, body: str, subject: str | None = None) -> SendResultSchema:
        with self._lock:
            state, client = self._state, self._client
        if state is not ConnectionState.CONNECTED or client is None:
            return SendResultSchema(
                success=False, platform=self.platform, error=f"{self.platform} is not connected"
            )
        try:
            result = client.send_message(target, body, subject)
        except Exception as exc:
            logger.warning("%s: send to %s failed: %s", self.platform, target, exc)
            return SendResultSchema(success=False, platform=self.platform, error=str(exc))
        return SendResultSchema(success=True, platform=self.platform, result=result)

    # ── Event channel ────────────────────────────────────────────────────

    def _enqueue(self, kind: str, epoch: int, payload: Any = None) -> None:
        self._queue.put(_Event(kind=kind, epoch=epoch, payload=payload))

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._handle(event)
            except Exception:
                logger.exception("%s: unhandled error processing %s event", self.platform, event.kind)
            finally:
                self._queue.task_done()

    def _handle(self, event: _Event) -> None:
        if event.epoch != self._epoch:
            logger.info("%s: dropping stale %s event from a previous session", self.platform, event.kind)
            return

        handler = getattr(self, f"_on_{event.kind}")
        try:
            handler(event)
        except IllegalTransition as exc:
            logger.warning("%s: ignoring %s event: %s", self.platform, event.kind, exc)

    def _on_start(self, event: _Event) -> None:
        epoch = event.epoch
        if not self._is_current(epoch, ConnectionState.CONNECTING):
            return
        try:
            client = self._variant.build_client()
        except Exception as exc:
            logger.error("%s: could not build client: %s", self.platform, exc)
            if self._is_current(epoch, ConnectionState.CONNECTING):
                self._fail(str(exc))
            return
        # build_client may block; a disconnect or stop in the meantime owns the outcome
        with self._lock:
            superseded = self._epoch != epoch or self._state is not ConnectionState.CONNECTING
            if not superseded:
                self._client = client
                callbacks = self._callbacks
        if superseded:
            logger.info("%s: session %d ended while starting; discarding client", self.platform, epoch)
            client.stop()
            return
        try:
            client.start(callbacks)
        except Exception as exc:
            logger.error("%s: client failed to start: %s", self.platform, exc)
            self._fail(str(exc))

    def _is_current(self, epoch: int, state: ConnectionState) -> bool:
        with self._lock:
            return self._epoch == epoch and self._state is state

    def _on_challenge(self, event: _Event) -> None:
        self._transition(ConnectionState.CHALLENGE_PENDING, challenge=event.payload)
        # The challenge is opaque; it goes to subscribers exactly as received
        self._bus.publish(TOPIC_CONNECTION_QR, self.platform, {"challenge": event.payload})

    def _on_ready(self, event: _Event) -> None:
        self._transition(ConnectionState.CONNECTED)
        self._bus.publish(TOPIC_CONNECTION_READY, self.platform, {})
        if self._variant.sync_on_ready:
            self._on_sync(event)

    def _on_auth_failure(self, event: _Event) -> None:
        self._fail(event.payload or "authentication failed")

    def _on_disconnected(self, event: _Event) -> None:
        self._transition(ConnectionState.DISCONNECTED, error=event.payload, new_session=True)
        with self._lock:
            self._client = None

    def _on_message(self, event: _Event) -> None:
        self._forward(event, event.payload)

    def _on_batch(self, event: _Event) -> None:
        self._forward(event, event.payload)

    def _on_sync(self, event: _Event) -> None:
        with self._lock:
            state, client = self._state, self._client
        if state is not ConnectionState.CONNECTED or client is None:
            logger.info("%s: sync requested while %s; skipped", self.platform, state.value)
            return
        try:
            cursor = self._store.get_sync_cursor(self.platform)
            batch = client.fetch_batch(cursor)
        except ConnectionFailure as exc:
            self._fail(exc.reason)
            return
        except StoreUnavailable as exc:
            self._report_error(f"store unavailable: {exc}")
            return
        except Exception as exc:
            logger.warning("%s: history fetch failed: %s", self.platform, exc)
            self._report_error(f"history fetch failed: {exc}")
            return

        if self._forward(event, batch.payloads) and batch.cursor:
            try:
                self._store.set_sync_cursor(self.platform, batch.cursor)
            except StoreUnavailable as exc:
                self._report_error(f"store unavailable: {exc}")

    def _forward(self, event: _Event, payload: Any) -> bool:
        if self._state is not ConnectionState.CONNECTED:
            logger.warning(
                "%s: discarding %s event received while %s",
                self.platform, event.kind, self._state.value,
            )
            return False
        try:
            self._pipeline.ingest(
                self.platform, payload, cancelled=lambda: self._epoch != event.epoch
            )
        except StoreUnavailable as exc:
            self._report_error(f"store unavailable: {exc}")
            return False
        return True

    def _fail(self, reason: str) -> None:
        self._transition(ConnectionState.FAILED, error=reason)

    def _report_error(self, error: str) -> None:
        """Publish an error without changing the connection state."""
        logger.error("%s: %s", self.platform, error)
        with self._lock:
            state = self._state
        self._bus.publish(TOPIC_CONNECTION_STATUS, self.platform, {"state": state.value, "error": error})


class ConnectionSupervisor:
    """Registry of live platform connections, keyed by platform."""

    def __init__(
        self,
        registry: PlatformRegistry,
        pipeline: IngestionPipeline,
        bus: NotificationBus,
        store: MessageStore,
    ) -> None:
        self._registry = registry
        self._connections: dict[str, PlatformConnection] = {
            variant.platform.value: PlatformConnection(variant, pipeline, bus, store)
            for variant in registry
        }

    def start(self) -> None:
        for connection in self._connections.values():
            connection.start()

    def stop(self) -> None:
        for connection in self._connections.values():
            connection.stop()

    def connection(self, platform: str) -> PlatformConnection:
        return self._connections[self._registry.resolve(platform).value]

    def connect(self, platform: str) -> ConnectionStatus:
        return self.connection(platform).connect()

    def reconnect(self, platform: str) -> ConnectionStatus:
        return self.connection(platform).reconnect()

    def disconnect(self, platform: str) -> ConnectionStatus:
        return self.connection(platform).disconnect()

    def sync(self, platform: str) -> ConnectionStatus:
        connection = self.connection(platform)
        connection.sync()
        return connection.status()

    def send_message(
        self, platform: str, target: str, body: str, subject: str | None = None
    ) -> SendResultSchema:
        return self.connection(platform).send_message(target, body, subject)

    def callbacks(self, platform: str) -> _SessionCallbacks:
        return self.connection(platform).callbacks()

    def status(self, platform: str) -> ConnectionStatus:
        return self.connection(platform).status()

    def statuses(self) -> list[ConnectionStatus]:
        return [c.status() for c in self._connections.values()]

    def wait_idle(self) -> None:
        for connection in self._connections.values():
            connection.wait_idle()
