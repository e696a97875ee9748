from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True, slots=True)
class RoomUnread:
    room_id: int
    unread_count: int

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RoomUnread:
        raw_id = data.get("id", data.get("chatRoomId", data.get("roomId")))
        if raw_id is None:
            raise ValueError(f"room entry without id: {data!r}")
        count = data.get("unreadCount", data.get("unread_count", 0)) or 0
        return cls(room_id=int(raw_id), unread_count=int(count))
