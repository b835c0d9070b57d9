from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class PlatformStatusSchema(BaseModel):
    platform: str
    state: str
    challenge: Any | None = None
    error: str | None = None
    updated_at: int


class SendRequestSchema(BaseModel):
    target: str = Field(min_length=1)
    body: str
    subject: str | None = None


class SendResultSchema(BaseModel):
    success: bool
    platform: str
    result: dict | None = None
    error: str | None = None


class BridgeEventSchema(BaseModel):
    """Lifecycle or message event pushed by an external session bridge."""

    type: Literal["qr", "ready", "auth_failure", "disconnected", "message", "batch"]
    payload: Any | None = None
    reason: str | None = None
