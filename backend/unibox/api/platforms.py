from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, status

from unibox.config import settings
from unibox.core import Core, get_core
from unibox.errors import IllegalTransition, UnknownPlatform
from unibox.schemas.platforms import (
    BridgeEventSchema,
    PlatformStatusSchema,
    SendRequestSchema,
    SendResultSchema,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/platforms", tags=["platforms"])


def _verify_bridge_token(x_bridge_token: str | None = Header(default=None)) -> None:
    if not x_bridge_token or x_bridge_token != settings.BRIDGE_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid bridge token")


def _command(core: Core, platform: str, command: str) -> PlatformStatusSchema:
    try:
        result = getattr(core.supervisor, command)(platform)
    except UnknownPlatform as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except IllegalTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return result.to_schema()


@router.get("", response_model=list[PlatformStatusSchema])
def list_platforms(core: Core = Depends(get_core)):
    return [s.to_schema() for s in core.supervisor.statuses()]


@router.get("/{platform}", response_model=PlatformStatusSchema)
def get_platform(platform: str, core: Core = Depends(get_core)):
    return _command(core, platform, "status")


@router.post("/{platform}/connect", response_model=PlatformStatusSchema)
def connect_platform(platform: str, core: Core = Depends(get_core)):
    return _command(core, platform, "connect")


@router.post("/{platform}/reconnect", response_model=PlatformStatusSchema)
def reconnect_platform(platform: str, core: Core = Depends(get_core)):
    return _command(core, platform, "reconnect")


@router.post("/{platform}/disconnect", response_model=PlatformStatusSchema)
def disconnect_platform(platform: str, core: Core = Depends(get_core)):
    return _command(core, platform, "disconnect")


@router.post("/{platform}/sync", response_model=PlatformStatusSchema, status_code=202)
def sync_platform(platform: str, core: Core = Depends(get_core)):
    """Queue a historical fetch; results arrive on ``message.new``."""
    return _command(core, platform, "sync")


@router.post("/{platform}/send", response_model=SendResultSchema)
def send_message(platform: str, body: SendRequestSchema, core: Core = Depends(get_core)):
    try:
        return core.supervisor.send_message(platform, body.target, body.body, body.subject)
    except UnknownPlatform as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post(
    "/{platform}/events",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(_verify_bridge_token)],
)
def bridge_event(platform: str, event: BridgeEventSchema, core: Core = Depends(get_core)):
    """Receive a lifecycle or message event from an external session bridge.

    Events are queued on the platform's channel and handled in arrival order.
    """
    try:
        callbacks = core.supervisor.callbacks(platform)
    except UnknownPlatform as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    if event.type == "qr":
        callbacks.on_challenge(event.payload)
    elif event.type == "ready":
        callbacks.on_ready()
    elif event.type == "auth_failure":
        callbacks.on_auth_failure(event.reason or "authentication failed")
    elif event.type == "disconnected":
        callbacks.on_disconnected(event.reason)
    elif event.type == "message":
        callbacks.on_message(event.payload)
    else:
        if not isinstance(event.payload, list):
            raise HTTPException(status_code=422, detail="batch payload must be a list")
        callbacks.on_batch(event.payload)

    logger.debug("bridge_event: queued %s event for %s", event.type, platform)
    return {"status": "queued"}
