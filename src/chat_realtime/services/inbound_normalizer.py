"""Maps decoded broker payloads onto typed ``InboundMessage`` variants.

Nothing here raises on odd input: unknown content types degrade to a text
message with an "unsupported" marker, missing authors fall back to id 0 and
unparseable timestamps fall through to the next candidate field.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from chat_realtime.domain.entities.message import (
    AttachmentMessage,
    AudioMessage,
    FileMessage,
    ImageMessage,
    InboundMessage,
    SystemMessage,
    TextMessage,
    UnknownMessage,
    VideoMessage,
)
from chat_realtime.domain.value_objects.enums import FileCategory, MessageStatus
from chat_realtime.domain.value_objects.file_types import SUPPORTED_TYPES

logger = logging.getLogger(__name__)

UNKNOWN_AUTHOR_ID = 0

_EXACT_TYPES: dict[str, type[InboundMessage]] = {
    "TEXT": TextMessage,
    "IMAGE": ImageMessage,
    "VIDEO": VideoMessage,
    "AUDIO": AudioMessage,
    "FILE": FileMessage,
}
_PREFIX_TYPES: tuple[tuple[str, type[AttachmentMessage]], ...] = (
    ("image/", ImageMessage),
    ("video/", VideoMessage),
    ("audio/", AudioMessage),
)
_FILE_MARKERS = (
    "pdf", "document", "msword", "sheet", "excel",
    "presentation", "powerpoint", "zip", "compressed", "gzip", "x-tar",
)
_FILE_MIME_TYPES = frozenset(
    mime for category, mime in SUPPORTED_TYPES.values()
    if category in (FileCategory.DOCUMENT, FileCategory.ARCHIVE)
)
_DEFAULT_NAMES: dict[type[AttachmentMessage], str] = {
    ImageMessage: "Image",
    VideoMessage: "Video",
    AudioMessage: "Audio",
    FileMessage: "File",
}
_STATUSES = {
    "SENDING": MessageStatus.SENDING,
    "SENT": MessageStatus.SENT,
    "DELIVERED": MessageStatus.DELIVERED,
    "READ": MessageStatus.SEEN,
    "SEEN": MessageStatus.SEEN,
    "ERROR": MessageStatus.ERROR,
    "FAILED": MessageStatus.ERROR,
}
_SYSTEM_TYPES = frozenset({"JOIN", "LEAVE"})
_URL_PREFIXES = ("http://", "https://", "file://", "/")
_TIMESTAMP_FIELDS = ("sentAt", "timestamp", "createdAt")


def unsupported_marker(content_type: str) -> str:
    return f"[Unsupported message type: {content_type}]"


def normalize(data: Mapping[str, Any], *, now: datetime | None = None) -> InboundMessage:
    """Build the message variant for one ``/topic/chatrooms/{id}`` payload."""
    common: dict[str, Any] = {
        "id": _message_id(data),
        "author_id": _author_id(data),
        "created_at": _timestamp(data, now),
        "status": _status(data.get("status")),
        "room_id": _int_or_none(data.get("chatRoomId", data.get("roomId"))),
        "author_name": _author_name(data),
    }
    frame_type = str(data.get("type") or "").upper()
    if frame_type in _SYSTEM_TYPES:
        return SystemMessage(**common, event=frame_type, text=str(data.get("content") or ""))
    if frame_type and frame_type != "CHAT":
        logger.debug("Non-chat frame type %s kept as unknown", frame_type)
        return UnknownMessage(**common, frame_type=frame_type, raw=dict(data))

    content = data.get("content")
    content = "" if content is None else str(content)
    content_type = str(data.get("contentType") or "TEXT")
    variant = classify(content_type)

    if variant is TextMessage:
        return TextMessage(**common, text=content)
    if variant is None:
        logger.warning("Unknown content type %s, falling back to text", content_type)
        return TextMessage(
            **common,
            text=unsupported_marker(content_type),
            unsupported_type=content_type,
            metadata={"content": content, "contentType": content_type},
        )
    return variant(
        **common,
        uri=_attachment_uri(data, content),
        name=str(data.get("name") or data.get("fileName") or _DEFAULT_NAMES[variant]),
        size=_int_or_none(data.get("size", data.get("fileSize"))) or 0,
        content_type=content_type,
    )


def classify(content_type: str) -> type[InboundMessage] | None:
    """Return the variant class for a content type, None when unsupported."""
    exact = _EXACT_TYPES.get(content_type.upper())
    if exact is not None:
        return exact
    lowered = content_type.lower().split(";", 1)[0].strip()
    for prefix, variant in _PREFIX_TYPES:
        if lowered.startswith(prefix):
            return variant
    if lowered == "text/plain":
        return TextMessage
    if lowered in _FILE_MIME_TYPES or any(marker in lowered for marker in _FILE_MARKERS):
        return FileMessage
    return None


def _message_id(data: Mapping[str, Any]) -> str:
    raw = data.get("id", data.get("messageId"))
    return str(raw) if raw is not None else f"local-{uuid.uuid4()}"


def _author_id(data: Mapping[str, Any]) -> int:
    candidates = [data.get("senderId")]
    sender = data.get("sender")
    if isinstance(sender, Mapping):
        candidates.append(sender.get("id"))
    for candidate in candidates:
        value = _int_or_none(candidate)
        if value is not None:
            return value
    logger.warning("No sender information in message %s", data.get("id"))
    return UNKNOWN_AUTHOR_ID


def _author_name(data: Mapping[str, Any]) -> str | None:
    for key in ("senderName", "senderUsername"):
        if data.get(key):
            return str(data[key])
    sender = data.get("sender")
    if isinstance(sender, Mapping):
        for key in ("fullName", "username"):
            if sender.get(key):
                return str(sender[key])
    return None


def _timestamp(data: Mapping[str, Any], now: datetime | None) -> datetime:
    for key in _TIMESTAMP_FIELDS:
        parsed = parse_timestamp(data.get(key))
        if parsed is not None:
            return parsed
    return now or datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 string or epoch milliseconds; None if neither."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_millis(value)
    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return _from_millis(int(text))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp %r", text)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _from_millis(value: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _status(value: Any) -> MessageStatus:
    if value is None:
        return MessageStatus.SENDING
    return _STATUSES.get(str(value).upper(), MessageStatus.SENDING)


def _attachment_uri(data: Mapping[str, Any], content: str) -> str:
    for key in ("attachmentUrl", "fileUrl"):
        if data.get(key):
            return str(data[key])
    stripped = content.strip()
    if stripped.startswith(_URL_PREFIXES):
        return stripped
    if stripped.startswith("{"):
        try:
            embedded = json.loads(stripped)
        except ValueError:
            embedded = None
        if isinstance(embedded, dict):
            for key in ("attachmentUrl", "fileUrl", "url", "uri"):
                if embedded.get(key):
                    return str(embedded[key])
    return stripped


def _int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
