"""Composition root: wires transport, registry, dispatcher and the services."""
from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping

from pydantic import ValidationError as PayloadError

from chat_realtime.application.exceptions import AuthFailure, ProtocolError
from chat_realtime.application.ports.auth import TokenProvider
from chat_realtime.application.ports.clock import Clock, SystemClock
from chat_realtime.application.ports.files import FileSource
from chat_realtime.application.ports.socket import SocketFactory
from chat_realtime.config import Settings, settings
from chat_realtime.domain.entities.message import InboundMessage
from chat_realtime.domain.entities.unread import RoomUnread
from chat_realtime.domain.events.connection_state_changed import ConnectionStateChanged
from chat_realtime.domain.value_objects.enums import ConnectionState
from chat_realtime.infrastructure.files.source import LocalFileSource
from chat_realtime.infrastructure.stomp.connection import TransportConnection
from chat_realtime.infrastructure.stomp.frame import StompFrame
from chat_realtime.infrastructure.stomp.protocol import (
    ROOM_TOPIC,
    UNREAD_NOTIFICATIONS,
    UNREAD_QUEUE,
    USER_STATUS_QUEUE,
    UnreadNotification,
    UnreadUpdate,
    UserStatusNotice,
)
from chat_realtime.infrastructure.stomp.websocket import open_websocket
from chat_realtime.services.chunked_transfer import (
    ChunkedTransferCoordinator,
    CompleteCallback,
    ErrorCallback,
    ProgressCallback,
    UploadHandle,
)
from chat_realtime.services.inbound_normalizer import normalize
from chat_realtime.services.outbound_dispatcher import OutboundDispatcher
from chat_realtime.services.room_presence import RoomPresence
from chat_realtime.services.subscription_registry import (
    Callback,
    SubscriptionHandle,
    SubscriptionRegistry,
)
from chat_realtime.services.unread_reconciler import UnreadReconciler

logger = logging.getLogger(__name__)

MessageCallback = Callable[[InboundMessage], Awaitable[None] | None]
NotificationCallback = Callable[[UnreadNotification], Awaitable[None] | None]
StatusCallback = Callable[[bool], Awaitable[None] | None]


class ChatClient:
    """Facade handed to the UI layer; one instance per signed-in user."""

    def __init__(
        self,
        transport: TransportConnection,
        registry: SubscriptionRegistry,
        dispatcher: OutboundDispatcher,
        transfers: ChunkedTransferCoordinator,
        presence: RoomPresence,
        unread: UnreadReconciler,
        token_provider: TokenProvider,
        *,
        clock: Clock,
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.dispatcher = dispatcher
        self.transfers = transfers
        self.presence = presence
        self.unread = unread
        self._token_provider = token_provider
        self._clock = clock
        self._room_handles: dict[int, list[SubscriptionHandle]] = {}
        self._user_handles: list[SubscriptionHandle] = []
        self._notification_callbacks: list[NotificationCallback] = []
        transport.add_listener(self._on_state)

    # -- connection --------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.transport.state

    def watch_connection(self) -> AsyncIterator[ConnectionStateChanged]:
        return self.transport.watch()

    async def connect(self, token: str | None = None) -> ConnectionState:
        await self._ensure_user_queues()
        return await self.transport.connect(token)

    async def refresh_and_connect(self) -> ConnectionState:
        token = await self._token_provider.refresh()
        if not token:
            raise AuthFailure("Token refresh returned no token")
        return await self.connect(token)

    async def disconnect(self) -> None:
        """Exit active rooms, drain callbacks, then close the socket."""
        await self.presence.leave_all()
        self.transfers.cancel_all()
        await self.registry.clear()
        self._room_handles.clear()
        self._user_handles.clear()
        await self.transport.disconnect()

    async def _on_state(self, event: ConnectionStateChanged) -> None:
        if event.current is ConnectionState.CONNECTED:
            await self.presence.request_unread_counts()

    # -- rooms and destinations --------------------------------------------

    async def subscribe(self, destination: str, callback: Callback) -> SubscriptionHandle:
        return await self.registry.subscribe(destination, callback)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        await self.registry.unsubscribe(handle)

    async def subscribe_room(self, room_id: int, callback: MessageCallback) -> SubscriptionHandle:
        """Deliver normalized messages for a room and send the join signal."""

        async def _deliver(frame: StompFrame) -> None:
            message = _normalize_frame(frame, self._clock)
            if message is None:
                return
            result = callback(message)
            if inspect.isawaitable(result):
                await result

        handle = await self.registry.subscribe(ROOM_TOPIC.format(room_id=room_id), _deliver)
        first = room_id not in self._room_handles
        self._room_handles.setdefault(room_id, []).append(handle)
        if first:
            await self.presence.join(room_id)
        return handle

    async def unsubscribe_room(self, room_id: int, handle: SubscriptionHandle | None = None) -> None:
        """Drop one room callback, or all of them; leaves the room when none remain."""
        handles = self._room_handles.get(room_id, [])
        targets = [handle] if handle is not None else list(handles)
        for target in targets:
            await self.registry.unsubscribe(target)
            if target in handles:
                handles.remove(target)
        if not handles and self._room_handles.pop(room_id, None) is not None:
            await self.presence.leave(room_id)

    async def room_messages(self, room_id: int) -> AsyncIterator[InboundMessage]:
        queue: asyncio.Queue[InboundMessage] = asyncio.Queue()
        handle = await self.subscribe_room(room_id, queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            await self.unsubscribe_room(room_id, handle)

    async def watch_user_status(self, user_id: int | str, callback: StatusCallback) -> SubscriptionHandle:
        """Report the online flag carried by STATUS notifications for one user.

        Replayed after reconnects like any other subscription; pass the
        handle to ``unsubscribe`` to stop watching.
        """

        async def _deliver(frame: StompFrame) -> None:
            try:
                notice = UserStatusNotice.model_validate(frame.json())
            except (ProtocolError, PayloadError) as exc:
                logger.warning("Dropping malformed status notification: %s", exc)
                return
            if not notice.concerns(user_id):
                return
            result = callback(notice.online)
            if inspect.isawaitable(result):
                await result

        return await self.registry.subscribe(USER_STATUS_QUEUE, _deliver)

    async def enter_room(self, room_id: int) -> None:
        self.unread.mark_viewed(room_id)
        await self.presence.enter(room_id)

    async def leave_room(self, room_id: int) -> None:
        self.unread.clear_viewed(room_id)
        await self.presence.exit(room_id)

    # -- sending -----------------------------------------------------------

    async def send_message(self, room_id: int, content: str, content_type: str = "TEXT") -> bool:
        return await self.dispatcher.send_message(room_id, content, content_type)

    async def send_message_with_retry(
        self,
        room_id: int,
        content: str,
        content_type: str = "TEXT",
    ) -> bool:
        return await self.dispatcher.send_message_with_retry(room_id, content, content_type)

    async def send_raw(
        self,
        destination: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> bool:
        return await self.dispatcher.send_raw(destination, body, headers)

    async def upload_file(
        self,
        room_id: int,
        source: FileSource | str | Path,
        *,
        content_type: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> UploadHandle:
        if isinstance(source, (str, Path)):
            source = LocalFileSource(source)
        return await self.transfers.start_upload(
            room_id,
            source,
            content_type=content_type,
            on_progress=on_progress,
            on_complete=on_complete,
            on_error=on_error,
        )

    # -- unread ------------------------------------------------------------

    def unread_count(self, room_id: int) -> int:
        return self.unread.get_unread_count(room_id)

    def total_unread(self) -> int:
        return self.unread.total_unread()

    def sync_unread(self, rooms: Iterable[RoomUnread | Mapping[str, Any]]) -> None:
        self.unread.sync_from_bulk_load(rooms)

    async def request_unread_counts(self) -> bool:
        return await self.presence.request_unread_counts()

    async def mark_room_read(self, room_id: int) -> bool:
        self.unread.mark_read(room_id)
        return await self.presence.mark_room_read(room_id)

    def on_unread_notification(self, callback: NotificationCallback) -> None:
        self._notification_callbacks.append(callback)

    async def _ensure_user_queues(self) -> None:
        if self._user_handles:
            return
        self._user_handles = [
            await self.registry.subscribe(UNREAD_QUEUE, self._on_unread_update),
            await self.registry.subscribe(UNREAD_NOTIFICATIONS, self._on_unread_notification),
        ]

    def _on_unread_update(self, frame: StompFrame) -> None:
        try:
            data = frame.json()
            items = data if isinstance(data, list) else [data]
            updates = [UnreadUpdate.model_validate(item) for item in items]
        except (ProtocolError, PayloadError) as exc:
            logger.warning("Dropping malformed unread update: %s", exc)
            return
        for update in updates:
            self.unread.apply_update(update)

    async def _on_unread_notification(self, frame: StompFrame) -> None:
        try:
            notification = UnreadNotification.model_validate(frame.json())
        except (ProtocolError, PayloadError) as exc:
            logger.warning("Dropping malformed unread notification: %s", exc)
            return
        for callback in list(self._notification_callbacks):
            result = callback(notification)
            if inspect.isawaitable(result):
                await result


def _normalize_frame(frame: StompFrame, clock: Clock) -> InboundMessage | None:
    try:
        data = frame.json()
    except ProtocolError as exc:
        logger.warning("Dropping room frame: %s", exc.detail)
        return None
    if not isinstance(data, dict):
        logger.warning("Dropping room frame with %s body", type(data).__name__)
        return None
    return normalize(data, now=clock.now())


def create_client(
    token_provider: TokenProvider,
    *,
    config: Settings = settings,
    socket_factory: SocketFactory | None = None,
    clock: Clock | None = None,
) -> ChatClient:
    clock = clock or SystemClock()
    transport = TransportConnection(
        config.BROKER_URL,
        token_provider,
        socket_factory=socket_factory or open_websocket,
        host=config.STOMP_HOST,
        heartbeat=config.heartbeat,
        connect_timeout=config.CONNECT_TIMEOUT_SECONDS,
        reconnect_base_delay=config.RECONNECT_BASE_DELAY_SECONDS,
        reconnect_max_delay=config.RECONNECT_MAX_DELAY_SECONDS,
        max_reconnect_attempts=config.RECONNECT_MAX_ATTEMPTS,
    )
    # Listener order matters: subscriptions are replayed before the queue flushes.
    registry = SubscriptionRegistry(
        transport, replay_delay=config.SUBSCRIBE_REPLAY_DELAY_SECONDS,
    )
    dispatcher = OutboundDispatcher(
        transport,
        clock=clock,
        dedup_window=config.DEDUP_WINDOW_SECONDS,
        dedup_capacity=config.DEDUP_CAPACITY,
        replay_delay=config.OUTBOX_REPLAY_DELAY_SECONDS,
        retry_attempts=config.SEND_RETRY_ATTEMPTS,
        retry_base_delay=config.SEND_RETRY_BASE_DELAY_SECONDS,
        connection_wait=config.CONNECTION_WAIT_SECONDS,
    )
    transfers = ChunkedTransferCoordinator(
        registry,
        dispatcher,
        transport,
        chunk_size=config.UPLOAD_CHUNK_SIZE,
        max_file_size=config.UPLOAD_MAX_FILE_SIZE,
        destination_template=config.UPLOAD_DESTINATION,
        chunk_delay=config.UPLOAD_CHUNK_DELAY_SECONDS,
        accept_timeout=config.UPLOAD_ACCEPT_TIMEOUT_SECONDS,
        completion_base_timeout=config.UPLOAD_COMPLETION_BASE_SECONDS,
        completion_per_mb_timeout=config.UPLOAD_COMPLETION_PER_MB_SECONDS,
        connection_wait=config.CONNECTION_WAIT_SECONDS,
    )
    return ChatClient(
        transport,
        registry,
        dispatcher,
        transfers,
        RoomPresence(dispatcher),
        UnreadReconciler(),
        token_provider,
        clock=clock,
    )
