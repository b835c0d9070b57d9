"""HTTP client for the external WhatsApp session bridge.

The bridge process owns the WhatsApp Web session (pairing, protocol,
reconnects). It pushes lifecycle and message events back to
``POST /platforms/{platform}/events``; this client only issues commands.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from unibox.services.platforms import ClientCallbacks, FetchedBatch

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15  # seconds


class WhatsAppBridgeError(Exception):
    """Raised when the bridge is unreachable or rejects a command."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class WhatsAppBridgeClient:
    def __init__(
        self,
        base_url: str,
        *,
        session: str,
        token: str = "",
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.session = session
        # A client passed in belongs to the caller and is left open on stop()
        self._owns_client = client is None
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, f"/sessions/{self.session}{path}", **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise WhatsAppBridgeError(
                f"bridge returned {exc.response.status_code} for {method} {path}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise WhatsAppBridgeError(f"bridge unreachable: {exc}") from exc
        if not response.content:
            return {}
        return response.json()

    def start(self, callbacks: ClientCallbacks) -> None:
        """Ask the bridge to open the session; QR and ready arrive as events."""
        try:
            self._request("POST", "/start")
        except WhatsAppBridgeError as exc:
            callbacks.on_auth_failure(str(exc))

    def stop(self) -> None:
        try:
            self._request("POST", "/stop")
        except WhatsAppBridgeError as exc:
            logger.warning("bridge stop failed for %s: %s", self.session, exc)
        finally:
            if self._owns_client:
                self._client.close()

    def send_message(self, target: str, body: str, subject: str | None = None) -> dict[str, Any]:
        return self._request("POST", "/messages", json={"to": target, "body": body})

    def fetch_batch(self, since_cursor: dict[str, Any] | None = None) -> FetchedBatch:
        params = {}
        since = (since_cursor or {}).get("since")
        if since is not None:
            params["since"] = since
        response = self._request("GET", "/messages", params=params)
        payloads = response.get("messages", [])

        newest = since
        for payload in payloads:
            ts = payload.get("timestamp")
            if isinstance(ts, (int, float)) and (newest is None or ts > newest):
                newest = ts
        return FetchedBatch(
            payloads=payloads,
            cursor={"since": newest} if newest is not None else since_cursor,
        )
