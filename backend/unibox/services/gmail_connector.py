from __future__ import annotations

import base64
import dataclasses
import logging
from email.message import EmailMessage
from typing import Any

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from unibox.config import settings
from unibox.errors import ConnectionFailure
from unibox.services.platforms import ClientCallbacks, FetchedBatch

logger = logging.getLogger(__name__)


# ── Exceptions ────────────────────────────────────────────────────────────────


class GmailAuthError(ConnectionFailure):
    """Raised when the Google credentials are invalid or revoked."""

    def __init__(self, reason: str) -> None:
        super().__init__("gmail", reason)


class GmailAPIError(Exception):
    """Raised when the Gmail API returns an HTTP error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


# ── Data structures ───────────────────────────────────────────────────────────


@dataclasses.dataclass(frozen=True)
class MessageListResult:
    message_ids: list[str]
    next_page_token: str | None
    result_size_estimate: int


@dataclasses.dataclass(frozen=True)
class WatchRegistration:
    history_id: str
    expiration_ms: int   # Unix epoch ms from Gmail API


@dataclasses.dataclass(frozen=True)
class HistoryListResult:
    message_ids: list[str]        # deduplicated, in history order
    history_id: str               # new cursor to store


# ── Service ───────────────────────────────────────────────────────────────────


class GmailConnector:
    """Wraps the Gmail API v1 for one mailbox and acts as its platform client.

    The Google API service is built lazily on first use. Messages are returned
    as raw ``format=full`` resources; mapping them to the canonical shape is
    the normalizer's job.
    """

    _TOKEN_URI = "https://oauth2.googleapis.com/token"
    _SCOPES = [
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.send",
    ]

    def __init__(self, *, refresh_token: str | None, fetch_limit: int = 50) -> None:
        if not refresh_token:
            raise ValueError("Gmail has no configured refresh token")
        self._refresh_token = refresh_token
        self._fetch_limit = fetch_limit
        self._service: Any = None
        self.email_address: str | None = None

    # ── Credential / service construction ────────────────────────────────

    def _build_credentials(self) -> Credentials:
        return Credentials(
            token=None,
            refresh_token=self._refresh_token,
            token_uri=self._TOKEN_URI,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            scopes=self._SCOPES,
        )

    def _get_service(self) -> Any:
        if self._service is None:
            self._service = build("gmail", "v1", credentials=self._build_credentials())
        return self._service

    @staticmethod
    def _execute(request: Any) -> dict[str, Any]:
        try:
            return request.execute()
        except RefreshError as exc:
            raise GmailAuthError("Google credentials expired or revoked") from exc
        except HttpError as exc:
            raise GmailAPIError(exc.resp.status, exc._get_reason()) from exc

    # ── Platform client ──────────────────────────────────────────────────

    def start(self, callbacks: ClientCallbacks) -> None:
        """Check the credentials; Gmail has no pairing challenge."""
        try:
            self.verify()
        except GmailAuthError as exc:
            callbacks.on_auth_failure(exc.reason)
            return
        except GmailAPIError as exc:
            callbacks.on_auth_failure(f"Gmail API error {exc.status_code}: {exc.message}")
            return
        callbacks.on_ready()

    def stop(self) -> None:
        self._service = None

    def fetch_batch(self, since_cursor: dict[str, Any] | None = None) -> FetchedBatch:
        """Fetch inbox messages, incrementally when a history cursor is known."""
        profile = self._execute(self._get_service().users().getProfile(userId="me"))
        current_history_id = str(profile.get("historyId", ""))

        message_ids: list[str] | None = None
        start_history_id = (since_cursor or {}).get("history_id")
        if start_history_id:
            try:
                history = self.list_history(start_history_id)
                message_ids = history.message_ids
                current_history_id = history.history_id
            except GmailAPIError as exc:
                if exc.status_code != 404:
                    raise
                logger.warning("Gmail historyId %s too old, falling back to inbox listing", start_history_id)

        if message_ids is None:
            message_ids = self.list_message_ids(
                query="in:inbox", max_results=self._fetch_limit
            ).message_ids

        payloads: list[dict[str, Any]] = []
        for message_id in message_ids:
            try:
                payloads.append(self.get_message(message_id))
            except GmailAPIError as exc:
                logger.warning("fetch_batch: failed to fetch message %s: %s", message_id, exc)

        cursor = {"history_id": current_history_id} if current_history_id else since_cursor
        return FetchedBatch(payloads=payloads, cursor=cursor)

    # ── Public API ────────────────────────────────────────────────────────

    def verify(self) -> str:
        """Return the mailbox address, refreshing credentials on the way."""
        profile = self._execute(self._get_service().users().getProfile(userId="me"))
        self.email_address = profile.get("emailAddress")
        return self.email_address or ""

    def list_message_ids(
        self,
        query: str | None = None,
        max_results: int = 50,
        page_token: str | None = None,
    ) -> MessageListResult:
        kwargs: dict[str, Any] = {"userId": "me", "maxResults": max_results}
        if query:
            kwargs["q"] = query
        if page_token:
            kwargs["pageToken"] = page_token

        response = self._execute(self._get_service().users().messages().list(**kwargs))
        return MessageListResult(
            message_ids=[m["id"] for m in response.get("messages", [])],
            next_page_token=response.get("nextPageToken"),
            result_size_estimate=response.get("resultSizeEstimate", 0),
        )

    def get_message(self, message_id: str) -> dict[str, Any]:
        return self._execute(
            self._get_service().users().messages().get(userId="me", id=message_id, format="full")
        )

    def list_history(self, start_history_id: str, label_id: str = "INBOX") -> HistoryListResult:
        """Collect ids of messages added since start_history_id."""
        seen: set[str] = set()
        message_ids: list[str] = []
        page_token: str | None = None
        history_id = start_history_id

        while True:
            kwargs: dict[str, Any] = {
                "userId": "me",
                "startHistoryId": start_history_id,
                "labelId": label_id,
                "historyTypes": ["messageAdded"],
            }
            if page_token:
                kwargs["pageToken"] = page_token
            response = self._execute(self._get_service().users().history().list(**kwargs))

            for entry in response.get("history", []):
                for added in entry.get("messagesAdded", []):
                    mid = added.get("message", {}).get("id")
                    if mid and mid not in seen:
                        seen.add(mid)
                        message_ids.append(mid)

            history_id = str(response.get("historyId", history_id))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return HistoryListResult(message_ids=message_ids, history_id=history_id)

    def register_watch(self, topic_name: str, label_ids: list[str] | None = None) -> WatchRegistration:
        """Register a Gmail push watch and return the registration details."""
        body: dict[str, Any] = {
            "topicName": topic_name,
            "labelIds": label_ids if label_ids is not None else ["INBOX"],
            "labelFilterBehavior": "INCLUDE",
        }
        response = self._execute(self._get_service().users().watch(userId="me", body=body))
        return WatchRegistration(
            history_id=str(response["historyId"]),
            expiration_ms=int(response["expiration"]),
        )

    def send_message(self, target: str, body: str, subject: str | None = None) -> dict[str, Any]:
        response = self._execute(
            self._get_service()
            .users()
            .messages()
            .send(userId="me", body={"raw": self._encode_message(target, body, subject)})
        )
        return {"id": response.get("id"), "threadId": response.get("threadId")}

    @staticmethod
    def _encode_message(to: str, body: str, subject: str | None) -> str:
        """RFC 822 message, base64url without padding as the API expects."""
        message = EmailMessage()
        message["To"] = to
        message["Subject"] = subject or ""
        message.set_content(body)
        return base64.urlsafe_b64encode(message.as_bytes()).decode().rstrip("=")
