"""JSON payload models exchanged with the broker."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, model_serializer
from pydantic.alias_generators import to_camel

SEND_MESSAGE_DESTINATION = "/app/chat.sendMessage/{room_id}"
ROOM_TOPIC = "/topic/chatrooms/{room_id}"
ADD_USER_DESTINATION = "/app/chat.addUser"
LEAVE_ROOM_DESTINATION = "/app/chat.leaveRoom"
ENTER_ROOM_PRESENCE = "/app/chat.enterRoom/{room_id}"
LEAVE_ROOM_PRESENCE = "/app/chat.leaveRoom/{room_id}"
ROOM_PRESENCE_REQUEST = "/app/chat.getRoomPresence/{room_id}"
UNREAD_COUNTS_REQUEST = "/app/chat.getUnreadCounts"
MARK_ROOM_READ = "/app/chat.markRoomAsRead/{room_id}"

UNREAD_QUEUE = "/user/queue/unread"
UNREAD_NOTIFICATIONS = "/user/unread-messages"
FILES_ACCEPTED_QUEUE = "/user/queue/files.chunk.response"
FILES_PROGRESS_QUEUE = "/user/queue/files.progress"
FILES_COMPLETED_QUEUE = "/user/queue/files"
ERRORS_QUEUE = "/user/queue/errors"
USER_STATUS_QUEUE = "/user/queue/notifications"


class _Wire(BaseModel):
    """camelCase on the wire, snake_case in Python; unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class ChatMessagePayload(_Wire):
    chat_room_id: int
    content: str
    content_type: str = "TEXT"
    type: str = "CHAT"
    timestamp: datetime


class RoomSignalPayload(BaseModel):
    """Join/leave body; the room id is repeated under every key servers have read."""

    room_id: int
    type: str

    @model_serializer
    def _aliased(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "chatRoomId": self.room_id,
            "id": self.room_id,
            "room_id": self.room_id,
            "chat_room_id": self.room_id,
            "type": self.type,
        }


class FileChunkPayload(_Wire):
    file_name: str
    content_type: str
    file_size: int
    chunk_index: int
    total_chunks: int
    data: str
    chat_room_id: int
    upload_id: str | None = None
    upload_session_id: str


class ChunkAcceptedReply(_Wire):
    upload_id: str | None = None
    upload_session_id: str | None = None


class UploadProgressNotice(_Wire):
    upload_id: str | None = None
    upload_session_id: str | None = None
    chunk_index: int = 0
    total_chunks: int = 0


class UploadCompletedNotice(_Wire):
    upload_id: str | None = None
    upload_session_id: str | None = None
    file_name: str | None = None
    attachment_url: str | None = None
    file_url: str | None = None

    @property
    def url(self) -> str | None:
        return self.attachment_url or self.file_url


class UploadErrorNotice(_Wire):
    message: str = "Unknown error"
    upload_id: str | None = None
    upload_session_id: str | None = None
    file_name: str | None = None

    @property
    def has_identity(self) -> bool:
        return any((self.upload_id, self.upload_session_id, self.file_name))


class UnreadUpdate(_Wire):
    chat_room_id: int | None = None
    unread_count: int | None = None
    delta: int | None = None
    update_type: str | None = None
    total_unread_count: int | None = None


class UnreadNotification(_Wire):
    message_id: int
    chat_room_id: int
    chat_room_name: str = ""
    sender_id: int = 0
    sender_username: str = ""
    sender_full_name: str | None = None
    content_preview: str | None = None
    content_type: str = "TEXT"
    sent_at: datetime | None = None
    unread_count: int = 0
    total_unread_count: int = 0
    is_private_chat: bool = False
    attachment_url: str | None = None
    notification_type: str = "NEW_MESSAGE"


class UserStatusNotice(_Wire):
    """Online flag for one user; the queue also carries other notification types."""

    type: str | None = None
    user_id: int | str | None = None
    online: bool = False

    def concerns(self, user_id: int | str) -> bool:
        return self.type == "STATUS" and self.user_id is not None and str(self.user_id) == str(user_id)
