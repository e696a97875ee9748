"""Single authoritative unread counter per room."""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from chat_realtime.domain.entities.unread import RoomUnread
from chat_realtime.domain.value_objects.enums import UnreadReason
from chat_realtime.infrastructure.stomp.protocol import UnreadUpdate

logger = logging.getLogger(__name__)


class UnreadReconciler:
    """Seeded by the bulk room load, then mutated by realtime deltas only.

    Rooms marked as viewed read as 0 without touching the stored count, so
    the real count is back as soon as the caller clears the marker.
    """

    def __init__(self) -> None:
        self._counts: dict[int, int] = {}
        self._viewed: set[int] = set()

    def sync_from_bulk_load(self, rooms: Iterable[RoomUnread | Mapping[str, Any]]) -> None:
        counts: dict[int, int] = {}
        for room in rooms:
            entry = room if isinstance(room, RoomUnread) else RoomUnread.from_mapping(room)
            counts[entry.room_id] = max(entry.unread_count, 0)
        self._counts = counts
        logger.debug("Unread counts seeded for %d rooms", len(counts))

    def apply_realtime_delta(
        self,
        room_id: int,
        delta: int,
        reason: UnreadReason | str = UnreadReason.NEW_MESSAGE,
    ) -> int:
        reason = _coerce_reason(reason)
        if reason is UnreadReason.ROOM_READ:
            self._counts[room_id] = 0
            return 0
        if reason is UnreadReason.NEW_MESSAGE and room_id in self._viewed:
            logger.debug("Ignoring new-message delta for viewed room %d", room_id)
            return self._counts.get(room_id, 0)
        count = max(self._counts.get(room_id, 0) + delta, 0)
        self._counts[room_id] = count
        return count

    def apply_snapshot(self, room_id: int, unread_count: int) -> None:
        self._counts[room_id] = max(unread_count, 0)

    def apply_update(self, update: UnreadUpdate) -> None:
        """Apply a ``/user/queue/unread`` payload: delta if present, else snapshot."""
        if update.chat_room_id is None:
            logger.debug("Unread update without room id ignored: %s", update)
            return
        reason = update.update_type or UnreadReason.NEW_MESSAGE
        if update.delta is not None:
            self.apply_realtime_delta(update.chat_room_id, update.delta, reason)
        elif update.unread_count is not None:
            self.apply_snapshot(update.chat_room_id, update.unread_count)

    def mark_read(self, room_id: int) -> None:
        self._counts[room_id] = 0

    def get_unread_count(self, room_id: int) -> int:
        if room_id in self._viewed:
            return 0
        return self._counts.get(room_id, 0)

    def total_unread(self) -> int:
        return sum(self.get_unread_count(room_id) for room_id in self._counts)

    def mark_viewed(self, room_id: int) -> None:
        self._viewed.add(room_id)

    def clear_viewed(self, room_id: int | None = None) -> None:
        if room_id is None:
            self._viewed.clear()
        else:
            self._viewed.discard(room_id)

    def is_viewed(self, room_id: int) -> bool:
        return room_id in self._viewed


def _coerce_reason(reason: UnreadReason | str) -> UnreadReason:
    try:
        return UnreadReason(str(reason).upper())
    except ValueError:
        logger.warning("Unknown unread reason %r treated as NEW_MESSAGE", reason)
        return UnreadReason.NEW_MESSAGE
