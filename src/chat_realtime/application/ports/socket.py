from __future__ import annotations

from typing import Awaitable, Callable, Protocol


class WebSocketPort(Protocol):
    """Text-frame socket as seen by the STOMP session.

    Implementations raise ``TransportFailure`` / ``AuthFailure`` instead of
    library-specific exceptions.
    """

    async def send(self, data: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


SocketFactory = Callable[[str, dict[str, str]], Awaitable[WebSocketPort]]
