from __future__ import annotations

import logging

from chat_realtime.infrastructure.stomp.protocol import (
    ADD_USER_DESTINATION,
    ENTER_ROOM_PRESENCE,
    LEAVE_ROOM_DESTINATION,
    LEAVE_ROOM_PRESENCE,
    MARK_ROOM_READ,
    ROOM_PRESENCE_REQUEST,
    UNREAD_COUNTS_REQUEST,
    RoomSignalPayload,
)
from chat_realtime.services.outbound_dispatcher import OutboundDispatcher

logger = logging.getLogger(__name__)


class RoomPresence:
    """Join/leave membership signals and enter/exit presence for rooms.

    Membership signals are queued while offline. Presence is ephemeral:
    an enter that cannot be sent now is dropped, the server learns about
    the room again on the next explicit enter.
    """

    def __init__(self, dispatcher: OutboundDispatcher) -> None:
        self._dispatcher = dispatcher
        self._active: set[int] = set()

    @property
    def active_rooms(self) -> frozenset[int]:
        return frozenset(self._active)

    async def join(self, room_id: int) -> bool:
        body = RoomSignalPayload(room_id=room_id, type="JOIN").model_dump_json()
        return await self._dispatcher.send_raw(ADD_USER_DESTINATION, body)

    async def leave(self, room_id: int) -> bool:
        body = RoomSignalPayload(room_id=room_id, type="LEAVE").model_dump_json()
        return await self._dispatcher.send_raw(LEAVE_ROOM_DESTINATION, body)

    async def enter(self, room_id: int) -> bool:
        self._active.add(room_id)
        return await self._dispatcher.send_raw(
            ENTER_ROOM_PRESENCE.format(room_id=room_id), "{}", queue_on_failure=False,
        )

    async def exit(self, room_id: int) -> bool:
        self._active.discard(room_id)
        return await self._dispatcher.send_raw(
            LEAVE_ROOM_PRESENCE.format(room_id=room_id), "{}", queue_on_failure=False,
        )

    async def leave_all(self) -> None:
        rooms = sorted(self._active)
        for room_id in rooms:
            await self.exit(room_id)
        if rooms:
            logger.info("Left %d active rooms", len(rooms))

    async def request_presence(self, room_id: int) -> bool:
        return await self._dispatcher.send_raw(
            ROOM_PRESENCE_REQUEST.format(room_id=room_id), "{}", queue_on_failure=False,
        )

    async def request_unread_counts(self) -> bool:
        return await self._dispatcher.send_raw(
            UNREAD_COUNTS_REQUEST, "{}", queue_on_failure=False,
        )

    async def mark_room_read(self, room_id: int) -> bool:
        return await self._dispatcher.send_raw(MARK_ROOM_READ.format(room_id=room_id), "{}")
