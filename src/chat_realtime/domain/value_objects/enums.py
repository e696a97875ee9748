from __future__ import annotations

from enum import StrEnum


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class MessageKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class MessageStatus(StrEnum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"
    ERROR = "error"


class UploadStatus(StrEnum):
    PREPARING = "preparing"
    SENDING = "sending"
    AWAITING_COMPLETION = "awaiting_completion"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UnreadReason(StrEnum):
    NEW_MESSAGE = "NEW_MESSAGE"
    MESSAGE_READ = "MESSAGE_READ"
    MESSAGE_DELETED = "MESSAGE_DELETED"
    ROOM_READ = "ROOM_READ"


class FileCategory(StrEnum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    ARCHIVE = "archive"
