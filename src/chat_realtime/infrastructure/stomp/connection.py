"""Single STOMP-over-WebSocket session with heart-beats and reconnection."""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import urlsplit

from chat_realtime.application.exceptions import (
    AppError,
    AuthFailure,
    ProtocolError,
    TransportFailure,
)
from chat_realtime.application.ports.auth import TokenProvider
from chat_realtime.application.ports.broker import FrameHandler, StateListener
from chat_realtime.application.ports.socket import SocketFactory, WebSocketPort
from chat_realtime.domain.events.connection_state_changed import ConnectionStateChanged
from chat_realtime.domain.value_objects.enums import ConnectionState
from chat_realtime.infrastructure.auth.token import is_token_expired
from chat_realtime.infrastructure.stomp.frame import (
    HEARTBEAT,
    StompFrame,
    connect_frame,
    decode_frames,
    disconnect_frame,
    parse_heartbeat,
    send_frame,
    subscribe_frame,
    unsubscribe_frame,
)
from chat_realtime.infrastructure.stomp.websocket import open_websocket

logger = logging.getLogger(__name__)

BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0

_AUTH_MARKERS = ("unauthorized", "forbidden", "401", "403", "expired", "invalid token")


def calc_backoff(
    attempt: int,
    *,
    base: float = BASE_DELAY_SECONDS,
    max_delay: float = MAX_DELAY_SECONDS,
) -> float:
    return min(base * (2 ** max(attempt, 0)), max_delay)


def error_from_frame(frame: StompFrame) -> AppError:
    message = frame.headers.get("message") or frame.body.strip() or "broker error"
    if any(marker in message.lower() for marker in _AUTH_MARKERS):
        return AuthFailure(f"Broker rejected session: {message}")
    return TransportFailure(f"Broker error frame: {message}")


class TransportConnection:
    """Owns the socket, the STOMP session and the connection state machine.

    State transitions are published to awaited listeners (in registration
    order) and to ``watch()`` iterators. A dropped session moves to
    RECONNECTING once and stays there across backoff attempts; exhausting
    the attempt cap or an auth failure lands in DISCONNECTED, after which
    only an explicit ``connect()`` starts over.
    """

    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        *,
        socket_factory: SocketFactory = open_websocket,
        host: str | None = None,
        heartbeat: tuple[int, int] = (10_000, 10_000),
        connect_timeout: float = 10.0,
        reconnect_base_delay: float = BASE_DELAY_SECONDS,
        reconnect_max_delay: float = MAX_DELAY_SECONDS,
        max_reconnect_attempts: int = 5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._token_provider = token_provider
        self._socket_factory = socket_factory
        self._host = host or urlsplit(url).hostname or "localhost"
        self._heartbeat = heartbeat
        self._connect_timeout = connect_timeout
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._token: str | None = None
        self._session_token: str | None = None
        self._socket: WebSocketPort | None = None
        self._handlers: dict[str, FrameHandler] = {}
        self._sub_ids = itertools.count(1)
        self._listeners: list[StateListener] = []
        self._watchers: set[asyncio.Queue[ConnectionStateChanged]] = set()
        self._connected = asyncio.Event()

        self._connect_task: asyncio.Task[ConnectionState] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._attempts = 0
        self._closing = False
        self._dropping = False
        self._send_interval = 0.0
        self._receive_interval = 0.0
        self._last_received = 0.0

    # -- observation -------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def watch(self) -> AsyncIterator[ConnectionStateChanged]:
        """Yield every state transition from now on."""
        queue: asyncio.Queue[ConnectionStateChanged] = asyncio.Queue()
        self._watchers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.discard(queue)

    async def wait_connected(self, timeout: float) -> bool:
        if self.is_connected:
            return True
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except TimeoutError:
            return False
        return self.is_connected

    # -- lifecycle ---------------------------------------------------------

    async def connect(self, token: str | None = None) -> ConnectionState:
        """Open the session; a no-op while connected or already connecting.

        Raises AuthFailure when the credentials are rejected. Transient
        failures are not raised: the state moves to RECONNECTING and the
        backoff loop takes over.
        """
        if token is not None:
            self._token = token
        if self.is_connected:
            return self._state
        if self._connect_task is not None and not self._connect_task.done():
            return await asyncio.shield(self._connect_task)
        self._connect_task = asyncio.create_task(self._connect(), name="stomp-connect")
        return await asyncio.shield(self._connect_task)

    async def _connect(self) -> ConnectionState:
        await self._cancel_reconnect()
        await self._teardown()
        self._closing = False
        self._attempts = 0
        await self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
        except AuthFailure as exc:
            logger.error("Broker authentication failed: %s", exc.detail)
            await self._set_state(ConnectionState.DISCONNECTED, error=exc)
            raise
        except TransportFailure as exc:
            logger.warning("Broker connect failed, scheduling reconnect: %s", exc.detail)
            await self._set_state(ConnectionState.RECONNECTING, error=exc)
            self._schedule_reconnect()
        return self._state

    async def disconnect(self) -> None:
        self._closing = True
        await self._cancel_reconnect()
        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, AppError):
                pass
        socket = self._socket
        if socket is not None and self.is_connected:
            try:
                await socket.send(disconnect_frame().encode())
            except AppError as exc:
                logger.debug("DISCONNECT frame not delivered: %s", exc.detail)
        await self._teardown()
        self._attempts = 0
        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from broker")

    async def _open(self) -> None:
        token = await self._resolve_token()
        if is_token_expired(token):
            raise AuthFailure("Bearer token has expired")
        self._session_token = token

        headers = {"Authorization": f"Bearer {token}"}
        try:
            socket = await asyncio.wait_for(
                self._socket_factory(self._url, headers), self._connect_timeout,
            )
        except TimeoutError as exc:
            raise TransportFailure(
                f"WebSocket open timed out after {self._connect_timeout:.0f}s"
            ) from exc
        except OSError as exc:
            raise TransportFailure(f"WebSocket open failed: {exc}") from exc

        self._socket = socket
        try:
            await socket.send(connect_frame(self._host, token, self._heartbeat).encode())
            connected = await asyncio.wait_for(
                self._await_connected(socket), self._connect_timeout,
            )
            self._negotiate_heartbeat(connected.headers.get("heart-beat"))
        except TimeoutError as exc:
            await self._teardown()
            raise TransportFailure(
                f"STOMP handshake timed out after {self._connect_timeout:.0f}s"
            ) from exc
        except AuthFailure:
            await self._teardown()
            raise
        except AppError as exc:
            await self._teardown()
            raise TransportFailure(f"STOMP handshake failed: {exc.detail}") from exc

        self._last_received = self._now()
        self._reader_task = asyncio.create_task(self._read_loop(socket), name="stomp-reader")
        if self._send_interval or self._receive_interval:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(socket), name="stomp-heartbeat",
            )
        self._attempts = 0
        logger.info(
            "Connected to broker %s (heart-beat out=%.0fs in=%.0fs)",
            self._url, self._send_interval, self._receive_interval,
        )
        await self._set_state(ConnectionState.CONNECTED)

    async def _resolve_token(self) -> str:
        token = self._token or await self._token_provider.get_token()
        if not token:
            raise AuthFailure("No bearer token available")
        return token

    async def _await_connected(self, socket: WebSocketPort) -> StompFrame:
        while True:
            raw = await socket.recv()
            for frame in decode_frames(raw):
                if frame.command == "CONNECTED":
                    return frame
                if frame.command == "ERROR":
                    raise error_from_frame(frame)
                logger.debug("Ignoring %s frame before CONNECTED", frame.command)

    def _negotiate_heartbeat(self, server_value: str | None) -> None:
        cx, cy = self._heartbeat
        sx, sy = parse_heartbeat(server_value)
        self._send_interval = max(cx, sy) / 1000 if cx and sy else 0.0
        self._receive_interval = max(sx, cy) / 1000 if sx and cy else 0.0

    # -- reconnection ------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        task = self._reconnect_task
        # A drop inside the CONNECTED listeners runs on the reconnect task
        # itself, which is about to return; it needs a fresh loop.
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(), name="stomp-reconnect",
        )

    async def _reconnect_loop(self) -> None:
        while self._attempts < self._max_reconnect_attempts:
            delay = calc_backoff(
                self._attempts,
                base=self._reconnect_base_delay,
                max_delay=self._reconnect_max_delay,
            )
            self._attempts += 1
            logger.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay, self._attempts, self._max_reconnect_attempts,
            )
            await self._sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
                return
            except AuthFailure as exc:
                logger.error("Reconnect stopped, credentials rejected: %s", exc.detail)
                await self._set_state(ConnectionState.DISCONNECTED, error=exc)
                return
            except TransportFailure as exc:
                logger.warning("Reconnect attempt %d failed: %s", self._attempts, exc.detail)

        logger.error(
            "Giving up after %d reconnect attempts; call connect() to retry",
            self._attempts,
        )
        await self._set_state(
            ConnectionState.DISCONNECTED,
            error=TransportFailure("Reconnect attempts exhausted"),
        )

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _handle_drop(self, exc: AppError) -> None:
        if self._closing or self._dropping or not self.is_connected:
            return
        self._dropping = True
        try:
            await self._teardown()
        finally:
            self._dropping = False
        if isinstance(exc, AuthFailure):
            logger.error("Broker session ended by auth failure: %s", exc.detail)
            await self._set_state(ConnectionState.DISCONNECTED, error=exc)
            return
        logger.warning("Broker connection lost: %s", exc.detail)
        await self._set_state(ConnectionState.RECONNECTING, error=exc)
        self._schedule_reconnect()

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reader_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None
        self._reader_task = None
        self._handlers.clear()
        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                await socket.close()
            except Exception as exc:
                logger.debug("Socket close raised: %s", exc)

    # -- session I/O -------------------------------------------------------

    async def send(
        self,
        destination: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        frame = send_frame(destination, body, {**self._auth_headers(), **(headers or {})})
        await self._write(frame)

    async def subscribe(self, destination: str, handler: FrameHandler) -> str:
        subscription_id = f"sub-{next(self._sub_ids)}"
        self._handlers[subscription_id] = handler
        try:
            await self._write(
                subscribe_frame(destination, subscription_id, self._auth_headers()),
            )
        except AppError:
            self._handlers.pop(subscription_id, None)
            raise
        logger.debug("Subscribed %s as %s", destination, subscription_id)
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        if self._handlers.pop(subscription_id, None) is None or not self.is_connected:
            return
        try:
            await self._write(unsubscribe_frame(subscription_id))
        except TransportFailure as exc:
            logger.debug("UNSUBSCRIBE %s not delivered: %s", subscription_id, exc.detail)

    def _auth_headers(self) -> dict[str, str]:
        token = self._session_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _write(self, frame: StompFrame) -> None:
        socket = self._socket
        if socket is None or not self.is_connected:
            raise TransportFailure("Not connected to broker")
        try:
            await socket.send(frame.encode())
        except TransportFailure as exc:
            await self._handle_drop(exc)
            raise

    async def _read_loop(self, socket: WebSocketPort) -> None:
        try:
            while True:
                raw = await socket.recv()
                self._last_received = self._now()
                try:
                    frames = decode_frames(raw)
                except ProtocolError as exc:
                    logger.warning("Dropping malformed broker frame: %s", exc.detail)
                    continue
                for frame in frames:
                    await self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except AppError as exc:
            await self._handle_drop(exc)
        except Exception as exc:
            logger.exception("Unexpected error in broker read loop")
            await self._handle_drop(TransportFailure(str(exc)))

    async def _dispatch(self, frame: StompFrame) -> None:
        if frame.command == "MESSAGE":
            subscription_id = frame.headers.get("subscription", "")
            handler = self._handlers.get(subscription_id)
            if handler is None:
                logger.debug("No handler for subscription %r, dropping frame", subscription_id)
                return
            try:
                result = handler(frame)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber for %s failed", frame.destination)
        elif frame.command == "ERROR":
            raise error_from_frame(frame)
        else:
            logger.debug("Ignoring %s frame", frame.command)

    async def _heartbeat_loop(self, socket: WebSocketPort) -> None:
        interval = min(i for i in (self._send_interval, self._receive_interval) if i)
        try:
            while True:
                await asyncio.sleep(interval)
                if self._send_interval:
                    await socket.send(HEARTBEAT)
                silence = self._now() - self._last_received
                if self._receive_interval and silence > self._receive_interval * 2:
                    raise TransportFailure(f"No broker heart-beat for {silence:.1f}s")
        except asyncio.CancelledError:
            raise
        except AppError as exc:
            await self._handle_drop(exc)

    # -- state -------------------------------------------------------------

    async def _set_state(
        self,
        state: ConnectionState,
        *,
        error: Exception | None = None,
    ) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        if state is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        event = ConnectionStateChanged(previous=previous, current=state, error=error)
        logger.debug("Connection state %s -> %s", previous, state)
        for queue in list(self._watchers):
            queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connection state listener failed")

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()
