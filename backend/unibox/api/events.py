from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from unibox.services.notification_bus import TOPICS, BusEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

_QUEUE_SIZE = 1000


@router.websocket("/events")
async def events(websocket: WebSocket, topics: str | None = None):
    """Stream bus events as JSON; ``topics`` is a comma-separated subset."""
    wanted = [t.strip() for t in topics.split(",") if t.strip()] if topics else list(TOPICS)
    unknown = [t for t in wanted if t not in TOPICS]
    if unknown:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=f"unknown topics: {unknown}")
        return

    bus = websocket.app.state.core.bus
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue[dict] = asyncio.Queue(maxsize=_QUEUE_SIZE)

    def _offer(item: dict) -> None:
        try:
            outbox.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("events: subscriber queue full, dropping %s", item.get("topic"))

    def _handler(event: BusEvent) -> None:
        # Called on the publisher's thread
        loop.call_soon_threadsafe(_offer, event.to_dict())

    # Subscribe before accepting so nothing published after the handshake is missed
    subscriptions = [bus.subscribe(topic, _handler) for topic in wanted]

    async def _pump() -> None:
        while True:
            await websocket.send_json(await outbox.get())

    pump = None
    try:
        await websocket.accept()
        pump = asyncio.create_task(_pump())
        while True:
            # Inbound frames are ignored; this only detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        for subscription in subscriptions:
            subscription.unsubscribe()
        if pump is not None:
            pump.cancel()
