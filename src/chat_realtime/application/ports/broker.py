from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from chat_realtime.domain.events.connection_state_changed import ConnectionStateChanged

FrameHandler = Callable[[Any], Awaitable[None] | None]
StateListener = Callable[[ConnectionStateChanged], Awaitable[None] | None]


class BrokerSession(Protocol):
    """What registry, dispatcher and transfer need from the transport."""

    @property
    def is_connected(self) -> bool: ...

    def add_listener(self, listener: StateListener) -> Callable[[], None]: ...

    async def wait_connected(self, timeout: float) -> bool: ...

    async def send(
        self,
        destination: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> None: ...

    async def subscribe(self, destination: str, handler: FrameHandler) -> str: ...

    async def unsubscribe(self, subscription_id: str) -> None: ...
