"""``websockets``-backed implementation of the socket port."""
from __future__ import annotations

import logging

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.typing import Subprotocol

from chat_realtime.application.exceptions import AuthFailure, TransportFailure

logger = logging.getLogger(__name__)

STOMP_SUBPROTOCOLS = [Subprotocol("v12.stomp"), Subprotocol("v11.stomp")]

_AUTH_STATUSES = {401, 403}


class WebsocketsSocket:
    """Adapts a ``websockets`` client connection to text send/recv/close."""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    async def send(self, data: str) -> None:
        try:
            await self._connection.send(data)
        except ConnectionClosed as exc:
            raise TransportFailure(f"Socket closed while sending: {exc}") from exc

    async def recv(self) -> str | bytes:
        try:
            message = await self._connection.recv()
        except ConnectionClosed as exc:
            raise TransportFailure(f"Socket closed: {exc}") from exc
        return message

    async def close(self) -> None:
        await self._connection.close()


async def open_websocket(url: str, headers: dict[str, str]) -> WebsocketsSocket:
    """Open the upgrade with the bearer token in the handshake headers."""
    try:
        connection = await connect(
            url,
            additional_headers=headers,
            subprotocols=STOMP_SUBPROTOCOLS,
            # STOMP heart-beats replace websocket pings.
            ping_interval=None,
            open_timeout=None,
        )
    except InvalidStatus as exc:
        status = exc.response.status_code
        if status in _AUTH_STATUSES:
            raise AuthFailure(f"Broker rejected credentials (HTTP {status})") from exc
        raise TransportFailure(f"WebSocket upgrade failed (HTTP {status})") from exc
    except (OSError, WebSocketException) as exc:
        raise TransportFailure(f"WebSocket connect failed: {exc}") from exc
    logger.debug("WebSocket open to %s (subprotocol=%s)", url, connection.subprotocol)
    return WebsocketsSocket(connection)
