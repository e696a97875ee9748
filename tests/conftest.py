"""Shared test fixtures and in-memory fakes for the broker, socket and clock."""
from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from chat_realtime.application.exceptions import TransportFailure
from chat_realtime.domain.events.connection_state_changed import ConnectionStateChanged
from chat_realtime.domain.value_objects.enums import ConnectionState
from chat_realtime.infrastructure.stomp.frame import StompFrame, decode_frames


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep: records the delay and only yields."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeTokenProvider:
    def __init__(self, token: str | None = "test-token", refreshed: str | None = "fresh-token") -> None:
        self.token = token
        self.refreshed = refreshed
        self.refresh_calls = 0

    async def get_token(self) -> str | None:
        return self.token

    async def refresh(self) -> str | None:
        self.refresh_calls += 1
        self.token = self.refreshed
        return self.refreshed


# -- websocket level --------------------------------------------------------


class FakeSocket:
    """Scripted broker end of a websocket.

    Answers CONNECT with CONNECTED (or an ERROR when ``connect_error`` is
    set); everything the client writes is kept in ``sent``.
    """

    def __init__(
        self,
        *,
        auto_connect: bool = True,
        connect_error: str | None = None,
        server_heartbeat: str = "0,0",
    ) -> None:
        self.auto_connect = auto_connect
        self.connect_error = connect_error
        self.server_heartbeat = server_heartbeat
        self.sent: list[str] = []
        self.closed = False
        self.fail_sends = False
        self._inbox: asyncio.Queue[str | bytes | Exception] = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed or self.fail_sends:
            raise TransportFailure("fake socket write failed")
        self.sent.append(data)
        if data.startswith("CONNECT\n") and self.auto_connect:
            if self.connect_error is not None:
                self.push(StompFrame("ERROR", {"message": self.connect_error}))
            else:
                self.push(StompFrame("CONNECTED", {"version": "1.2", "heart-beat": self.server_heartbeat}))

    async def recv(self) -> str | bytes:
        item = await self._inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    # helpers

    def push(self, frame: StompFrame) -> None:
        self._inbox.put_nowait(frame.encode())

    def push_raw(self, raw: str | bytes) -> None:
        self._inbox.put_nowait(raw)

    def drop(self, reason: str = "connection reset") -> None:
        self._inbox.put_nowait(TransportFailure(reason))

    @property
    def frames(self) -> list[StompFrame]:
        return [frame for raw in self.sent for frame in decode_frames(raw)]

    def commands(self) -> list[str]:
        return [frame.command for frame in self.frames]

    def frames_for(self, command: str) -> list[StompFrame]:
        return [frame for frame in self.frames if frame.command == command]

    def subscription_id(self, destination: str) -> str:
        for frame in reversed(self.frames_for("SUBSCRIBE")):
            if frame.destination == destination:
                return frame.headers["id"]
        raise AssertionError(f"no SUBSCRIBE for {destination}")

    def sent_to(self, destination: str) -> list[Any]:
        return [frame.json() for frame in self.frames_for("SEND") if frame.destination == destination]

    def push_message(self, destination: str, payload: Any) -> None:
        self.push(
            StompFrame(
                "MESSAGE",
                {
                    "destination": destination,
                    "subscription": self.subscription_id(destination),
                    "message-id": "m-1",
                },
                json.dumps(payload),
            )
        )


class FakeSocketFactory:
    def __init__(self, **socket_options: Any) -> None:
        self.socket_options = socket_options
        self.sockets: list[FakeSocket] = []
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.failures: list[Exception] = []

    async def __call__(self, url: str, headers: dict[str, str]) -> FakeSocket:
        self.calls.append((url, dict(headers)))
        if self.failures:
            raise self.failures.pop(0)
        socket = FakeSocket(**self.socket_options)
        self.sockets.append(socket)
        return socket

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


# -- broker session level -----------------------------------------------------


class FakeBroker:
    """In-memory BrokerSession; tests drive state changes explicitly."""

    def __init__(self, *, connected: bool = False) -> None:
        self.connected = connected
        self.sent: list[tuple[str, str, dict[str, str]]] = []
        self.subscriptions: dict[str, tuple[str, Callable[[StompFrame], Any]]] = {}
        self.subscribe_calls: list[str] = []
        self.unsubscribed: list[str] = []
        self.fail_sends = 0
        self._listeners: list[Callable[[ConnectionStateChanged], Any]] = []
        self._ids = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return self.connected

    def add_listener(self, listener: Callable[[ConnectionStateChanged], Any]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def wait_connected(self, timeout: float) -> bool:
        return self.connected

    async def send(self, destination: str, body: str, headers: dict[str, str] | None = None) -> None:
        if not self.connected:
            raise TransportFailure("Not connected to broker")
        if self.fail_sends:
            self.fail_sends -= 1
            raise TransportFailure("write failed")
        self.sent.append((destination, body, dict(headers or {})))

    async def subscribe(self, destination: str, handler: Callable[[StompFrame], Any]) -> str:
        if not self.connected:
            raise TransportFailure("Not connected to broker")
        subscription_id = f"sub-{next(self._ids)}"
        self.subscriptions[subscription_id] = (destination, handler)
        self.subscribe_calls.append(destination)
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        self.subscriptions.pop(subscription_id, None)
        self.unsubscribed.append(subscription_id)

    async def set_connected(self, connected: bool) -> None:
        previous = ConnectionState.CONNECTED if self.connected else ConnectionState.DISCONNECTED
        self.connected = connected
        if not connected:
            self.subscriptions.clear()
        current = ConnectionState.CONNECTED if connected else ConnectionState.RECONNECTING
        event = ConnectionStateChanged(previous=previous, current=current)
        for listener in list(self._listeners):
            result = listener(event)
            if inspect.isawaitable(result):
                await result

    async def deliver(self, destination: str, payload: Any) -> None:
        frame = StompFrame("MESSAGE", {"destination": destination}, json.dumps(payload))
        for target, handler in list(self.subscriptions.values()):
            if target == destination:
                result = handler(frame)
                if inspect.isawaitable(result):
                    await result

    def sent_to(self, destination: str) -> list[Any]:
        return [json.loads(body) for target, body, _ in self.sent if target == destination]

    def destinations(self) -> list[str]:
        return [target for target, _, _ in self.sent]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def tokens() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker(connected=True)
