"""Typed chat messages produced by the inbound normalizer."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from chat_realtime.domain.value_objects.enums import MessageKind, MessageStatus


@dataclass(frozen=True, slots=True)
class InboundMessage:
    id: str
    author_id: int
    created_at: datetime
    status: MessageStatus
    room_id: int | None = None
    author_name: str | None = None

    kind: ClassVar[MessageKind] = MessageKind.UNKNOWN


@dataclass(frozen=True, slots=True)
class TextMessage(InboundMessage):
    text: str = ""
    unsupported_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[MessageKind] = MessageKind.TEXT

    @property
    def is_unsupported(self) -> bool:
        return self.unsupported_type is not None


@dataclass(frozen=True, slots=True)
class AttachmentMessage(InboundMessage):
    uri: str = ""
    name: str = ""
    size: int = 0
    content_type: str = ""


@dataclass(frozen=True, slots=True)
class ImageMessage(AttachmentMessage):
    kind: ClassVar[MessageKind] = MessageKind.IMAGE


@dataclass(frozen=True, slots=True)
class VideoMessage(AttachmentMessage):
    kind: ClassVar[MessageKind] = MessageKind.VIDEO


@dataclass(frozen=True, slots=True)
class AudioMessage(AttachmentMessage):
    kind: ClassVar[MessageKind] = MessageKind.AUDIO


@dataclass(frozen=True, slots=True)
class FileMessage(AttachmentMessage):
    kind: ClassVar[MessageKind] = MessageKind.FILE


@dataclass(frozen=True, slots=True)
class SystemMessage(InboundMessage):
    event: str = ""
    text: str = ""

    kind: ClassVar[MessageKind] = MessageKind.SYSTEM


@dataclass(frozen=True, slots=True)
class UnknownMessage(InboundMessage):
    frame_type: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[MessageKind] = MessageKind.UNKNOWN
