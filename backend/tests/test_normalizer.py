"""Tests for the platform payload normalizers. Pure functions, no I/O."""

import base64

import pytest

from unibox.errors import MalformedPayload
from unibox.schemas.messages import CanonicalMessage, Platform
from unibox.services.normalizer import (
    NO_SUBJECT,
    PREVIEW_LENGTH,
    _decode_body_data,
    _extract_body,
    _get_header,
    _has_attachment,
    _parse_sender,
    normalize,
    normalize_canonical,
    normalize_gmail,
    normalize_whatsapp,
)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _b64(text: str) -> str:
    """Base64url-encode a string the way Gmail does (no padding)."""
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _whatsapp_payload(**overrides) -> dict:
    payload = {
        "id": {"_serialized": "true_15551234567@c.us_ABCDEF"},
        "body": "See you at 6",
        "timestamp": 1700000000,
        "fromMe": False,
        "hasMedia": False,
        "from": "15551234567@c.us",
        "to": "15557654321@c.us",
        "contact": {"id": {"_serialized": "15551234567@c.us"}, "pushname": "Alice", "number": "15551234567"},
        "chat": {"id": {"_serialized": "15551234567@c.us"}, "name": "Alice"},
    }
    payload.update(overrides)
    return payload


def _gmail_message(
    msg_id: str = "msg_1",
    thread_id: str = "thread_1",
    subject: str = "Invoice #42",
    sender: str = "Alice <alice@example.com>",
    to: str = "Bob <bob@example.com>",
    body_text: str = "Hello, world!",
    labels: list | None = None,
    internal_date_ms: str | None = "1700000000000",
) -> dict:
    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
    ]
    if subject is not None:
        headers.append({"name": "Subject", "value": subject})
    raw = {
        "id": msg_id,
        "threadId": thread_id,
        "labelIds": labels if labels is not None else ["INBOX"],
        "payload": {
            "mimeType": "text/plain",
            "headers": headers,
            "body": {"data": _b64(body_text), "size": len(body_text)},
        },
    }
    if internal_date_ms is not None:
        raw["internalDate"] = internal_date_ms
    return raw


def _multipart_payload() -> dict:
    """multipart/mixed > multipart/alternative > text/plain + text/html, plus an attachment."""
    return {
        "mimeType": "multipart/mixed",
        "headers": [],
        "body": {"size": 0},
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "body": {"size": 0},
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": _b64("Nested plain")}},
                    {"mimeType": "text/html", "body": {"data": _b64("<p>Nested html</p>")}},
                ],
            },
            {
                "mimeType": "application/pdf",
                "filename": "invoice.pdf",
                "body": {"attachmentId": "att_1", "size": 1234},
            },
        ],
    }


# ── Gmail helpers ─────────────────────────────────────────────────────────────


class TestGetHeader:
    def test_case_insensitive(self):
        headers = [{"name": "Subject", "value": "Hi"}]
        assert _get_header(headers, "subject") == "Hi"
        assert _get_header(headers, "SUBJECT") == "Hi"

    def test_missing_returns_empty(self):
        assert _get_header([], "From") == ""


class TestDecodeBodyData:
    def test_roundtrip_without_padding(self):
        assert _decode_body_data(_b64("Hi there")) == "Hi there"

    def test_unicode(self):
        assert _decode_body_data(_b64("Café ☕")) == "Café ☕"

    def test_garbage_returns_empty(self):
        assert _decode_body_data("!!!") == ""


class TestExtractBody:
    def test_prefers_nested_plain_text(self):
        assert _extract_body(_multipart_payload()) == "Nested plain"

    def test_falls_back_to_top_level_body(self):
        payload = {"mimeType": "text/html", "body": {"data": _b64("<b>only html</b>")}}
        assert _extract_body(payload) == "<b>only html</b>"

    def test_empty_when_no_data(self):
        assert _extract_body({"mimeType": "multipart/alternative", "body": {"size": 0}}) == ""


class TestHasAttachment:
    def test_nested_attachment(self):
        assert _has_attachment(_multipart_payload()) is True

    def test_plain_message(self):
        assert _has_attachment(_gmail_message()["payload"]) is False


class TestParseSender:
    def test_name_and_address(self):
        assert _parse_sender("Alice <alice@example.com>") == ("Alice", "alice@example.com")

    def test_quoted_name_with_comma(self):
        assert _parse_sender('"Doe, Jane" <jane@example.com>') == ("Doe, Jane", "jane@example.com")

    def test_bare_address_uses_address_as_name(self):
        assert _parse_sender("bob@example.com") == ("bob@example.com", "bob@example.com")

    def test_empty(self):
        assert _parse_sender("") == (None, None)


# ── normalize_gmail ───────────────────────────────────────────────────────────


class TestNormalizeGmail:
    def test_basic_mapping(self):
        msg = normalize_gmail(Platform.GMAIL, _gmail_message())

        assert isinstance(msg, CanonicalMessage)
        assert msg.id == "msg_1"
        assert msg.platform == "gmail"
        assert msg.from_name == "Alice"
        assert msg.from_id == "alice@example.com"
        assert msg.to == "Bob <bob@example.com>"
        assert msg.subject == "Invoice #42"
        assert msg.body == "Hello, world!"
        assert msg.timestamp == 1700000000000
        assert msg.thread_id == "thread_1"
        assert msg.type == "email"
        assert msg.is_from_me is False
        assert msg.has_media is False
        assert msg.conversation_key == "thread_1"

    def test_missing_subject_uses_placeholder(self):
        msg = normalize_gmail(Platform.GMAIL, _gmail_message(subject=None))
        assert msg.subject == NO_SUBJECT

    def test_sent_label_marks_from_me(self):
        msg = normalize_gmail(Platform.GMAIL, _gmail_message(labels=["SENT"]))
        assert msg.is_from_me is True

    def test_body_is_truncated_to_preview(self):
        msg = normalize_gmail(Platform.GMAIL, _gmail_message(body_text="x" * 2000))
        assert len(msg.body) == PREVIEW_LENGTH

    def test_date_header_fallback(self):
        raw = _gmail_message(internal_date_ms=None)
        raw["payload"]["headers"].append(
            {"name": "Date", "value": "Tue, 14 Nov 2023 22:13:20 +0000"}
        )
        msg = normalize_gmail(Platform.GMAIL, raw)
        assert msg.timestamp == 1700000000000

    def test_naive_date_header_is_utc(self):
        raw = _gmail_message(internal_date_ms=None)
        raw["payload"]["headers"].append({"name": "Date", "value": "2023-11-14 22:13:20"})
        assert normalize_gmail(Platform.GMAIL, raw).timestamp == 1700000000000

    def test_no_timestamp_is_malformed(self):
        raw = _gmail_message(internal_date_ms=None)
        with pytest.raises(MalformedPayload) as exc_info:
            normalize_gmail(Platform.GMAIL, raw)
        assert exc_info.value.payload_id == "msg_1"

    def test_missing_id_is_malformed(self):
        raw = _gmail_message()
        del raw["id"]
        with pytest.raises(MalformedPayload):
            normalize_gmail(Platform.GMAIL, raw)

    def test_attachment_sets_has_media(self):
        raw = _gmail_message()
        raw["payload"] = {**_multipart_payload(), "headers": raw["payload"]["headers"]}
        msg = normalize_gmail(Platform.GMAIL, raw)
        assert msg.has_media is True
        assert msg.body == "Nested plain"


# ── normalize_whatsapp ────────────────────────────────────────────────────────


class TestNormalizeWhatsApp:
    def test_basic_mapping(self):
        msg = normalize_whatsapp(Platform.WHATSAPP, _whatsapp_payload())

        assert msg.id == "true_15551234567@c.us_ABCDEF"
        assert msg.platform == "whatsapp"
        assert msg.from_name == "Alice"
        assert msg.from_id == "15551234567@c.us"
        assert msg.to == "15557654321@c.us"
        assert msg.body == "See you at 6"
        assert msg.timestamp == 1700000000000
        assert msg.chat_name == "Alice"
        assert msg.thread_id == "15551234567@c.us"
        assert msg.type == "message"
        assert msg.subject is None

    def test_business_session_keeps_its_platform(self):
        msg = normalize_whatsapp(Platform.WHATSAPP_BUSINESS, _whatsapp_payload(platform="whatsapp"))
        assert msg.platform == "whatsapp-business"

    def test_plain_string_ids(self):
        msg = normalize_whatsapp(Platform.WHATSAPP, _whatsapp_payload(id="ABC", contact={}, chat={}))
        assert msg.id == "ABC"
        assert msg.from_id == "15551234567@c.us"
        assert msg.thread_id is None
        assert msg.conversation_key == "15551234567@c.us"

    def test_name_falls_back_to_number(self):
        payload = _whatsapp_payload(contact={"number": "15551234567"})
        assert normalize_whatsapp(Platform.WHATSAPP, payload).from_name == "15551234567"

    def test_media_and_from_me(self):
        msg = normalize_whatsapp(Platform.WHATSAPP, _whatsapp_payload(hasMedia=True, fromMe=True, body=None))
        assert msg.has_media is True
        assert msg.is_from_me is True
        assert msg.body == ""

    def test_missing_id_is_malformed(self):
        with pytest.raises(MalformedPayload, match="missing id"):
            normalize_whatsapp(Platform.WHATSAPP, _whatsapp_payload(id={"_serialized": ""}))

    def test_missing_timestamp_is_malformed(self):
        with pytest.raises(MalformedPayload, match="missing timestamp"):
            normalize_whatsapp(Platform.WHATSAPP, _whatsapp_payload(timestamp=None))

    def test_non_numeric_timestamp_is_malformed(self):
        with pytest.raises(MalformedPayload, match="bad timestamp"):
            normalize_whatsapp(Platform.WHATSAPP, _whatsapp_payload(timestamp="yesterday"))

    def test_negative_timestamp_is_malformed(self):
        with pytest.raises(MalformedPayload):
            normalize_whatsapp(Platform.WHATSAPP, _whatsapp_payload(timestamp=-5))


# ── Dispatch ──────────────────────────────────────────────────────────────────


class TestNormalize:
    def test_dispatches_by_platform_name(self):
        assert normalize("gmail", _gmail_message()).type == "email"
        assert normalize("whatsapp", _whatsapp_payload()).type == "message"

    def test_unknown_platform_is_malformed(self):
        with pytest.raises(MalformedPayload, match="platform cannot be derived"):
            normalize("telegram", {})

    def test_non_object_payload_is_malformed(self):
        with pytest.raises(MalformedPayload, match="expected an object"):
            normalize("gmail", "not a dict")

    def test_deterministic(self):
        assert normalize("gmail", _gmail_message()) == normalize("gmail", _gmail_message())


class TestNormalizeCanonical:
    def test_camel_case_input(self):
        msg = normalize_canonical(
            {"id": "m1", "platform": "whatsapp", "threadId": "t1", "timestamp": 1000, "isFromMe": False}
        )
        assert msg.thread_id == "t1"
        assert msg.is_from_me is False
        assert msg.body == ""

    def test_serializes_camel_case(self):
        msg = normalize_canonical({"id": "m1", "platform": "gmail", "timestamp": 5, "from_name": "A"})
        dumped = msg.model_dump(by_alias=True)
        assert dumped["fromName"] == "A"
        assert "isFromMe" in dumped

    def test_missing_timestamp_is_malformed(self):
        with pytest.raises(MalformedPayload) as exc_info:
            normalize_canonical({"id": "m1", "platform": "whatsapp"})
        assert exc_info.value.payload_id == "m1"

    def test_unknown_platform_is_malformed(self):
        with pytest.raises(MalformedPayload):
            normalize_canonical({"id": "m1", "platform": "fax", "timestamp": 1})

    def test_passes_through_canonical_instances(self):
        msg = CanonicalMessage(id="m1", platform="gmail", timestamp=1)
        assert normalize_canonical(msg) is msg


# ── Wrongly-typed fields ──────────────────────────────────────────────────────


def _gmail_with(**changes) -> dict:
    """A valid Gmail message with top-level or ``payload`` keys replaced."""
    raw = _gmail_message()
    payload_changes = changes.pop("payload_fields", {})
    raw["payload"].update(payload_changes)
    raw.update(changes)
    return raw


class TestWronglyTypedFields:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"timestamp": float("inf")},
            {"timestamp": float("nan")},
            {"timestamp": "1e400"},
            {"timestamp": 1e300},
            {"timestamp": 2**63},
            {"timestamp": [1700000000]},
            {"body": ["See", "you"]},
            {"contact": {"pushname": {"first": "Alice"}}},
        ],
        ids=["inf", "nan", "inf-string", "huge-float", "int64-overflow", "list", "list-body", "dict-name"],
    )
    def test_whatsapp_rejected(self, overrides):
        with pytest.raises(MalformedPayload):
            normalize("whatsapp", _whatsapp_payload(**overrides))

    @pytest.mark.parametrize(
        "overrides",
        [{"contact": "bob"}, {"contact": ["bob"]}, {"chat": ["x"]}, {"chat": 42}],
        ids=["str-contact", "list-contact", "list-chat", "int-chat"],
    )
    def test_whatsapp_non_object_contact_or_chat_is_ignored(self, overrides):
        msg = normalize("whatsapp", _whatsapp_payload(notifyName="Bob", **overrides))
        assert msg.id == "true_15551234567@c.us_ABCDEF"
        assert msg.from_id is not None

    def test_whatsapp_non_object_contact_falls_back_to_sender(self):
        msg = normalize("whatsapp", _whatsapp_payload(contact="bob", notifyName="Bob"))
        assert msg.from_name == "Bob"
        assert msg.from_id == "15551234567@c.us"

    @pytest.mark.parametrize(
        "changes",
        [
            {"internalDate": "9" * 30},
            {"internalDate": None, "payload_fields": {"headers": "From: alice"}},
            {"internalDate": float("inf"), "payload_fields": {"headers": None}},
            {"threadId": {"id": "t1"}},
        ],
        ids=["int64-overflow", "string-headers", "inf-no-headers", "dict-thread"],
    )
    def test_gmail_rejected(self, changes):
        with pytest.raises(MalformedPayload):
            normalize("gmail", _gmail_with(**changes))

    @pytest.mark.parametrize(
        "changes",
        [
            {"labelIds": None},
            {"labelIds": "SENT"},
            {"payload": None},
            {"payload": "text"},
            {"payload_fields": {"body": "x"}},
            {"payload_fields": {"body": {"data": 12345}}},
            {"payload_fields": {"parts": None}},
            {"payload_fields": {"parts": "x"}},
            {"payload_fields": {"parts": ["x", None, {"body": []}]}},
            {"payload_fields": {"headers": {"From": "alice"}}},
            {"payload_fields": {"headers": ["From", None, {"name": 1, "value": 2}]}},
        ],
        ids=[
            "null-labels", "string-labels", "null-payload", "string-payload", "string-body",
            "int-body-data", "null-parts", "string-parts", "junk-parts", "dict-headers", "junk-headers",
        ],
    )
    def test_gmail_wrong_shapes_degrade(self, changes):
        msg = normalize("gmail", _gmail_with(**changes))
        assert msg.id == "msg_1"
        assert msg.timestamp == 1700000000000
        assert msg.is_from_me is False

    def test_gmail_inf_internal_date_falls_back_to_date_header(self):
        raw = _gmail_message(internal_date_ms=None)
        raw["internalDate"] = float("inf")
        raw["payload"]["headers"].append({"name": "Date", "value": "Tue, 14 Nov 2023 22:13:20 +0000"})
        assert normalize("gmail", raw).timestamp == 1700000000000

    def test_canonical_timestamp_is_bounded(self):
        with pytest.raises(MalformedPayload):
            normalize_canonical({"id": "m1", "platform": "gmail", "timestamp": 2**63})
