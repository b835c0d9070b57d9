"""Pure mappings from platform-native payloads to ``CanonicalMessage``.

Every function here is deterministic and free of I/O. A payload whose id,
timestamp or platform cannot be derived raises ``MalformedPayload``.
"""

from __future__ import annotations

import base64
import binascii
import email.utils
from collections.abc import Callable
from datetime import timezone
from typing import Any

from dateutil import parser as dateutil_parser
from pydantic import ValidationError

from unibox.errors import MalformedPayload
from unibox.schemas.messages import CanonicalMessage, MessageType, Platform

PREVIEW_LENGTH = 500
NO_SUBJECT = "(no subject)"


# ── Shared helpers ────────────────────────────────────────────────────────────


def _serialized(value: Any) -> str | None:
    """Return a WhatsApp id as a string; ids may arrive as ``{"_serialized": ...}``."""
    if isinstance(value, dict):
        value = value.get("_serialized")
    if value is None or value == "":
        return None
    return str(value)


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _build(platform: str, fields: dict[str, Any]) -> CanonicalMessage:
    try:
        return CanonicalMessage.model_validate(fields)
    except ValidationError as exc:
        raise MalformedPayload(platform, str(exc.errors()[0]["msg"]), fields.get("id")) from exc


# ── WhatsApp ──────────────────────────────────────────────────────────────────


def _whatsapp_timestamp_ms(platform: str, raw: Any, msg_id: str) -> int:
    # Session timestamps are epoch seconds
    if raw is None or isinstance(raw, bool):
        raise MalformedPayload(platform, "missing timestamp", msg_id)
    try:
        return int(float(raw) * 1000)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedPayload(platform, f"bad timestamp {raw!r}", msg_id) from exc


def normalize_whatsapp(platform: Platform, payload: dict[str, Any]) -> CanonicalMessage:
    """Map a message extracted by a WhatsApp session bridge.

    Both the personal and the business session produce the same shape; the
    session's own platform wins over anything the payload claims.
    """
    msg_id = _serialized(payload.get("id"))
    if msg_id is None:
        raise MalformedPayload(platform.value, "missing id")
    timestamp = _whatsapp_timestamp_ms(platform.value, payload.get("timestamp"), msg_id)

    contact = _dict(payload.get("contact"))
    chat = _dict(payload.get("chat"))

    return _build(
        platform.value,
        {
            "id": msg_id,
            "platform": platform.value,
            "from_name": contact.get("pushname") or contact.get("number") or payload.get("notifyName"),
            "from_id": _serialized(contact.get("id")) or _serialized(payload.get("from")),
            "to": _serialized(payload.get("to")),
            "body": payload.get("body") or "",
            "timestamp": timestamp,
            "is_from_me": bool(payload.get("fromMe", False)),
            "chat_name": chat.get("name") or None,
            "thread_id": _serialized(chat.get("id")),
            "type": MessageType.MESSAGE,
            "has_media": bool(payload.get("hasMedia", False)),
        },
    )


# ── Gmail ─────────────────────────────────────────────────────────────────────


def _get_header(headers: list[dict[str, str]], name: str) -> str:
    """Case-insensitive header lookup; returns '' if not found."""
    name_lower = name.lower()
    for h in _list(headers):
        h = _dict(h)
        header_name = h.get("name")
        if isinstance(header_name, str) and header_name.lower() == name_lower:
            value = h.get("value")
            return value if isinstance(value, str) else ""
    return ""


def _decode_body_data(data: str) -> str:
    """Base64url-decode a Gmail body.data string to UTF-8 text.

    Gmail omits base64 padding ('='). Appending '==' before decoding is
    safe because the decoder ignores excess padding characters.
    """
    if not isinstance(data, str):
        return ""
    try:
        return base64.urlsafe_b64decode(data + "==").decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _find_part_body(payload: dict[str, Any], mime_type: str) -> str:
    """Recursively walk the MIME tree and return the first matching body."""
    payload = _dict(payload)
    if payload.get("mimeType") == mime_type:
        data = _dict(payload.get("body")).get("data")
        if data:
            return _decode_body_data(data)

    for part in _list(payload.get("parts")):
        result = _find_part_body(part, mime_type)
        if result:
            return result

    return ""


def _extract_body(payload: dict[str, Any]) -> str:
    """Plain-text part first, then the top-level body, then ''."""
    body = _find_part_body(payload, "text/plain")
    if body:
        return body
    data = _dict(payload.get("body")).get("data")
    if data:
        return _decode_body_data(data)
    return ""


def _has_attachment(payload: dict[str, Any]) -> bool:
    payload = _dict(payload)
    if payload.get("filename") or _dict(payload.get("body")).get("attachmentId"):
        return True
    return any(_has_attachment(part) for part in _list(payload.get("parts")))


def _parse_sender(raw: str) -> tuple[str | None, str | None]:
    """Return (display name, address); the name falls back to the address."""
    if not raw:
        return None, None
    name, addr = email.utils.parseaddr(raw)
    addr = addr or raw.strip()
    return (name or addr), addr


def _gmail_timestamp_ms(raw: dict[str, Any], headers: list[dict[str, str]], msg_id: str) -> int:
    internal_date = raw.get("internalDate")
    if internal_date not in (None, ""):
        try:
            return int(internal_date)
        except (TypeError, ValueError, OverflowError):
            pass

    date_header = _get_header(headers, "Date")
    if date_header:
        try:
            dt = dateutil_parser.parse(date_header)
        except (ValueError, OverflowError):
            dt = None
        if dt is not None:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)

    raise MalformedPayload(Platform.GMAIL.value, "no internalDate or parseable Date header", msg_id)


def normalize_gmail(platform: Platform, raw: dict[str, Any]) -> CanonicalMessage:
    """Map a Gmail API ``users.messages.get(format=full)`` resource.

    The body is cut to ``PREVIEW_LENGTH`` characters; it is a preview and is
    never used to re-derive the original message.
    """
    msg_id = raw.get("id")
    if not msg_id:
        raise MalformedPayload(platform.value, "missing id")

    payload = _dict(raw.get("payload"))
    headers = _list(payload.get("headers"))
    timestamp = _gmail_timestamp_ms(raw, headers, msg_id)
    from_name, from_id = _parse_sender(_get_header(headers, "From"))

    return _build(
        platform.value,
        {
            "id": msg_id,
            "platform": platform.value,
            "from_name": from_name,
            "from_id": from_id,
            "to": _get_header(headers, "To") or None,
            "body": _extract_body(payload)[:PREVIEW_LENGTH],
            "subject": _get_header(headers, "Subject") or NO_SUBJECT,
            "timestamp": timestamp,
            "is_from_me": "SENT" in _list(raw.get("labelIds")),
            "thread_id": raw.get("threadId") or None,
            "type": MessageType.EMAIL,
            "has_media": _has_attachment(payload),
        },
    )


# ── Dispatch ──────────────────────────────────────────────────────────────────

_NORMALIZERS: dict[Platform, Callable[[Platform, dict[str, Any]], CanonicalMessage]] = {
    Platform.WHATSAPP: normalize_whatsapp,
    Platform.WHATSAPP_BUSINESS: normalize_whatsapp,
    Platform.GMAIL: normalize_gmail,
}


def normalize(platform: Platform | str, payload: Any) -> CanonicalMessage:
    try:
        platform = Platform(platform)
    except ValueError as exc:
        raise MalformedPayload(str(platform), "platform cannot be derived") from exc
    if not isinstance(payload, dict):
        raise MalformedPayload(platform.value, f"expected an object, got {type(payload).__name__}")
    return _NORMALIZERS[platform](platform, payload)


def normalize_canonical(payload: Any) -> CanonicalMessage:
    """Validate a payload that is already in canonical shape."""
    if isinstance(payload, CanonicalMessage):
        return payload
    if not isinstance(payload, dict):
        raise MalformedPayload("unknown", f"expected an object, got {type(payload).__name__}")
    return _build(str(payload.get("platform", "unknown")), payload)
