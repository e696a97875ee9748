"""End-to-end wiring of the client facade over a scripted socket."""
from __future__ import annotations

import asyncio

import pytest

from chat_realtime.client import create_client
from chat_realtime.config import Settings, settings
from chat_realtime.domain.entities.message import ImageMessage, TextMessage
from chat_realtime.domain.value_objects.enums import ConnectionState
from chat_realtime.infrastructure.files.source import BytesSource
from tests.conftest import eventually


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        BROKER_URL="ws://broker.test/ws",
        STOMP_HOST="broker.test",
        RECONNECT_BASE_DELAY_SECONDS=0.01,
        RECONNECT_MAX_DELAY_SECONDS=0.05,
        SUBSCRIBE_REPLAY_DELAY_SECONDS=0,
        OUTBOX_REPLAY_DELAY_SECONDS=0,
        CONNECTION_WAIT_SECONDS=0.2,
        UPLOAD_CHUNK_DELAY_SECONDS=0,
        UPLOAD_ACCEPT_TIMEOUT_SECONDS=0.05,
    )


def subscribed(socket) -> list[str]:
    return [frame.destination for frame in socket.frames_for("SUBSCRIBE")]


def sends(socket) -> list[str]:
    return [frame.destination for frame in socket.frames_for("SEND")]


def test_test_environment_is_loaded():
    assert settings.BROKER_URL == "ws://broker.test/ws"
    assert settings.UPLOAD_CHUNK_DELAY_SECONDS == 0


@pytest.mark.asyncio
async def test_connect_replays_rooms_then_flushes_queue(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)
    received = []

    await client.subscribe_room(5, received.append)
    assert await client.send_message(5, "queued while offline") is False

    assert await client.connect() is ConnectionState.CONNECTED
    socket = socket_factory.latest

    assert set(subscribed(socket)) == {
        "/topic/chatrooms/5",
        "/user/queue/unread",
        "/user/unread-messages",
    }
    assert sends(socket) == [
        "/app/chat.addUser",
        "/app/chat.sendMessage/5",
        "/app/chat.getUnreadCounts",
    ]
    assert socket.sent_to("/app/chat.sendMessage/5")[0]["content"] == "queued while offline"

    socket.push_message(
        "/topic/chatrooms/5",
        {"id": 1, "chatRoomId": 5, "senderId": 9, "contentType": "image/jpeg", "content": "/files/1.jpg"},
    )
    await eventually(lambda: len(received) == 1)
    assert isinstance(received[0], ImageMessage)
    assert received[0].uri == "/files/1.jpg"
    await client.disconnect()


@pytest.mark.asyncio
async def test_reconnect_restores_room_subscription(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)
    await client.connect()
    received = []
    await client.subscribe_room(5, received.append)

    socket_factory.latest.drop()
    await eventually(lambda: len(socket_factory.sockets) == 2 and client.state is ConnectionState.CONNECTED)

    socket = socket_factory.latest
    assert "/topic/chatrooms/5" in subscribed(socket)
    assert "/app/chat.getUnreadCounts" in sends(socket)
    socket.push_message("/topic/chatrooms/5", {"id": 2, "senderId": 9, "content": "back"})
    await eventually(lambda: len(received) == 1)
    assert isinstance(received[0], TextMessage)
    await client.disconnect()


@pytest.mark.asyncio
async def test_unread_deltas_and_notifications(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)
    notifications = []
    client.on_unread_notification(notifications.append)
    await client.connect()
    client.sync_unread([{"id": 5, "unreadCount": 3}])
    socket = socket_factory.latest

    socket.push_message("/user/queue/unread", {"chatRoomId": 5, "delta": 1, "updateType": "NEW_MESSAGE"})
    await eventually(lambda: client.unread_count(5) == 4)

    socket.push_message(
        "/user/unread-messages",
        {"messageId": 11, "chatRoomId": 5, "senderUsername": "ann", "unreadCount": 4, "totalUnreadCount": 4},
    )
    await eventually(lambda: len(notifications) == 1)
    assert notifications[0].sender_username == "ann"

    await client.enter_room(5)
    assert client.unread_count(5) == 0
    await client.leave_room(5)
    assert client.unread_count(5) == 4

    await client.mark_room_read(5)
    assert client.unread_count(5) == 0
    assert "/app/chat.markRoomAsRead/5" in sends(socket)
    await client.disconnect()


@pytest.mark.asyncio
async def test_room_messages_stream(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)
    await client.connect()
    stream = client.room_messages(7)
    first = asyncio.create_task(anext(stream))
    socket = socket_factory.latest
    await eventually(lambda: "/topic/chatrooms/7" in subscribed(socket))

    socket.push_message("/topic/chatrooms/7", {"id": 3, "senderId": 1, "content": "hi"})
    message = await asyncio.wait_for(first, 1.0)
    await stream.aclose()

    assert message.text == "hi"
    assert sends(socket)[-1] == "/app/chat.leaveRoom"
    await client.disconnect()


@pytest.mark.asyncio
async def test_upload_over_transport(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)
    await client.connect()
    socket = socket_factory.latest

    handle = await client.upload_file(5, BytesSource("a.png", b"\x89PNG"))
    await eventually(lambda: "/app/files.upload/5" in sends(socket))
    socket.push_message("/user/queue/files", {"fileName": "a.png", "fileUrl": "/files/a.png"})

    assert await handle.wait() == "/files/a.png"
    await client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_leaves_rooms_before_closing(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)
    await client.connect()
    await client.subscribe_room(5, lambda message: None)
    await client.enter_room(5)
    socket = socket_factory.latest

    await client.disconnect()

    commands = socket.commands()
    leave_at = next(
        i for i, frame in enumerate(socket.frames)
        if frame.command == "SEND" and frame.destination == "/app/chat.leaveRoom/5"
    )
    assert leave_at < commands.index("UNSUBSCRIBE") < commands.index("DISCONNECT")
    assert commands.count("UNSUBSCRIBE") == 3
    assert client.state is ConnectionState.DISCONNECTED
    assert client.registry.destinations == []


@pytest.mark.asyncio
async def test_refresh_and_connect_uses_new_token(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)

    await client.refresh_and_connect()

    assert tokens.refresh_calls == 1
    assert socket_factory.calls[-1][1]["Authorization"] == "Bearer fresh-token"
    await client.disconnect()


@pytest.mark.asyncio
async def test_user_status_updates_survive_reconnect(fast_settings, socket_factory, tokens, clock):
    client = create_client(tokens, config=fast_settings, socket_factory=socket_factory, clock=clock)
    statuses = []
    handle = await client.watch_user_status(42, statuses.append)
    await client.connect()
    socket = socket_factory.latest
    assert "/user/queue/notifications" in subscribed(socket)

    socket.push_message("/user/queue/notifications", ["not", "an", "object"])
    socket.push_message("/user/queue/notifications", {"type": "STATUS", "userId": 7, "online": True})
    socket.push_message("/user/queue/notifications", {"type": "TYPING", "userId": 42})
    socket.push_message("/user/queue/notifications", {"type": "STATUS", "userId": "42", "online": True})
    await eventually(lambda: statuses == [True])

    socket.drop()
    await eventually(lambda: len(socket_factory.sockets) == 2 and client.state is ConnectionState.CONNECTED)
    socket = socket_factory.latest
    socket.push_message("/user/queue/notifications", {"type": "STATUS", "userId": 42, "online": False})
    await eventually(lambda: statuses == [True, False])

    await client.unsubscribe(handle)
    assert "/user/queue/notifications" not in client.registry.destinations
    await client.disconnect()
