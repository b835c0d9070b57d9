"""Platform variants and the registry that owns them.

Each supported platform is one variant class exposing the same capability
set: normalize native payloads and build the client that connects, sends and
fetches history. New platforms are added as new variants.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Iterator, Sequence
from typing import Any, ClassVar, Protocol

from unibox.errors import UnknownPlatform
from unibox.schemas.messages import CanonicalMessage, Platform
from unibox.services import normalizer


# ── Client boundary ───────────────────────────────────────────────────────────


class ClientCallbacks(Protocol):
    def on_challenge(self, payload: Any) -> None: ...
    def on_ready(self) -> None: ...
    def on_auth_failure(self, reason: str) -> None: ...
    def on_disconnected(self, reason: str | None = None) -> None: ...
    def on_message(self, payload: dict[str, Any]) -> None: ...
    def on_batch(self, payloads: Sequence[dict[str, Any]]) -> None: ...


@dataclasses.dataclass(frozen=True)
class FetchedBatch:
    payloads: list[dict[str, Any]]
    cursor: dict[str, Any] | None = None


class PlatformClient(Protocol):
    """What the supervisor needs from a platform connection.

    ``start`` must return promptly; everything the connection observes later
    is reported through the callbacks.
    """

    def start(self, callbacks: ClientCallbacks) -> None: ...
    def stop(self) -> None: ...
    def send_message(self, target: str, body: str, subject: str | None = None) -> dict[str, Any]: ...
    def fetch_batch(self, since_cursor: dict[str, Any] | None = None) -> FetchedBatch: ...


# ── Variants ──────────────────────────────────────────────────────────────────


class PlatformVariant:
    platform: ClassVar[Platform]
    sync_on_ready: ClassVar[bool] = False

    def normalize(self, payload: Any) -> CanonicalMessage:
        return normalizer.normalize(self.platform, payload)

    def build_client(self) -> PlatformClient:
        raise NotImplementedError


@dataclasses.dataclass(frozen=True)
class WhatsAppPlatform(PlatformVariant):
    bridge_url: str
    bridge_token: str = ""

    platform: ClassVar[Platform] = Platform.WHATSAPP

    def build_client(self) -> PlatformClient:
        from unibox.services.whatsapp_bridge import WhatsAppBridgeClient

        return WhatsAppBridgeClient(
            self.bridge_url, session=self.platform.value, token=self.bridge_token
        )


@dataclasses.dataclass(frozen=True)
class WhatsAppBusinessPlatform(WhatsAppPlatform):
    platform: ClassVar[Platform] = Platform.WHATSAPP_BUSINESS


@dataclasses.dataclass(frozen=True)
class GmailPlatform(PlatformVariant):
    refresh_token: str
    fetch_limit: int = 50

    platform: ClassVar[Platform] = Platform.GMAIL
    sync_on_ready: ClassVar[bool] = True

    def build_client(self) -> PlatformClient:
        from unibox.services.gmail_connector import GmailConnector

        return GmailConnector(refresh_token=self.refresh_token, fetch_limit=self.fetch_limit)


# ── Registry ──────────────────────────────────────────────────────────────────


class PlatformRegistry:
    """Configured platforms, keyed by ``Platform``.

    Anything not registered here is rejected with ``UnknownPlatform``.
    """

    def __init__(self, variants: Iterable[PlatformVariant]) -> None:
        self._variants: dict[Platform, PlatformVariant] = {v.platform: v for v in variants}

    @classmethod
    def from_settings(cls, settings) -> "PlatformRegistry":
        factories = {
            Platform.WHATSAPP.value: lambda: WhatsAppPlatform(
                bridge_url=settings.WHATSAPP_BRIDGE_URL, bridge_token=settings.BRIDGE_TOKEN
            ),
            Platform.WHATSAPP_BUSINESS.value: lambda: WhatsAppBusinessPlatform(
                bridge_url=settings.WHATSAPP_BRIDGE_URL, bridge_token=settings.BRIDGE_TOKEN
            ),
            Platform.GMAIL.value: lambda: GmailPlatform(
                refresh_token=settings.GMAIL_REFRESH_TOKEN, fetch_limit=settings.GMAIL_FETCH_LIMIT
            ),
        }
        variants = []
        for name in settings.enabled_platforms:
            if name not in factories:
                raise UnknownPlatform(name)
            variants.append(factories[name]())
        return cls(variants)

    def resolve(self, platform: Platform | str) -> Platform:
        try:
            resolved = Platform(platform)
        except ValueError as exc:
            raise UnknownPlatform(str(platform)) from exc
        if resolved not in self._variants:
            raise UnknownPlatform(resolved.value)
        return resolved

    def get(self, platform: Platform | str) -> PlatformVariant:
        return self._variants[self.resolve(platform)]

    def __contains__(self, platform: object) -> bool:
        try:
            self.resolve(platform)  # type: ignore[arg-type]
        except UnknownPlatform:
            return False
        return True

    def __iter__(self) -> Iterator[PlatformVariant]:
        return iter(self._variants.values())

    def platforms(self) -> list[Platform]:
        return list(self._variants)
