"""Destination -> callbacks map that survives reconnects."""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chat_realtime.application.exceptions import AppError
from chat_realtime.application.ports.broker import BrokerSession
from chat_realtime.domain.events.connection_state_changed import ConnectionStateChanged
from chat_realtime.domain.value_objects.enums import ConnectionState
from chat_realtime.infrastructure.stomp.frame import StompFrame

logger = logging.getLogger(__name__)

Callback = Callable[[StompFrame], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    destination: str
    token: int


class SubscriptionRegistry:
    """One broker subscription per destination, fanned out to every callback.

    The map is independent of the connection: subscribing while offline only
    records the callback, and every Connected transition re-issues a broker
    subscribe for each destination that still has callbacks.
    """

    def __init__(
        self,
        broker: BrokerSession,
        *,
        replay_delay: float = 0.05,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._broker = broker
        self._replay_delay = replay_delay
        self._sleep = sleep
        self._callbacks: dict[str, dict[int, Callback]] = {}
        self._broker_ids: dict[str, str] = {}
        self._tokens = itertools.count(1)
        self._remove_listener = broker.add_listener(self._on_state)

    @property
    def destinations(self) -> list[str]:
        return list(self._callbacks)

    def is_active(self, destination: str) -> bool:
        return destination in self._broker_ids

    async def subscribe(self, destination: str, callback: Callback) -> SubscriptionHandle:
        token = next(self._tokens)
        callbacks = self._callbacks.setdefault(destination, {})
        callbacks[token] = callback
        if destination not in self._broker_ids and self._broker.is_connected:
            await self._activate(destination)
        return SubscriptionHandle(destination=destination, token=token)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        callbacks = self._callbacks.get(handle.destination)
        if callbacks is None or callbacks.pop(handle.token, None) is None:
            return
        if callbacks:
            return
        del self._callbacks[handle.destination]
        broker_id = self._broker_ids.pop(handle.destination, None)
        if broker_id is not None:
            await self._broker.unsubscribe(broker_id)
        logger.debug("Dropped %s, no callbacks left", handle.destination)

    async def clear(self) -> None:
        """Forget every destination and release their broker subscriptions."""
        broker_ids = list(self._broker_ids.values())
        self._callbacks.clear()
        self._broker_ids.clear()
        for broker_id in broker_ids:
            try:
                await self._broker.unsubscribe(broker_id)
            except AppError as exc:
                logger.debug("Unsubscribe %s failed during clear: %s", broker_id, exc.detail)

    def close(self) -> None:
        self._remove_listener()

    async def _activate(self, destination: str) -> None:
        try:
            broker_id = await self._broker.subscribe(
                destination, lambda frame: self._fan_out(destination, frame),
            )
        except AppError as exc:
            logger.warning("Subscribe to %s deferred: %s", destination, exc.detail)
            return
        self._broker_ids[destination] = broker_id

    async def _fan_out(self, destination: str, frame: StompFrame) -> None:
        for callback in list(self._callbacks.get(destination, {}).values()):
            try:
                result = callback(frame)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Callback for %s failed", destination)

    async def _on_state(self, event: ConnectionStateChanged) -> None:
        if event.current is not ConnectionState.CONNECTED:
            # Broker ids die with the session.
            self._broker_ids.clear()
            return
        await self._replay()

    async def _replay(self) -> None:
        pending = [d for d in self._callbacks if d not in self._broker_ids]
        if pending:
            logger.info("Replaying %d subscriptions", len(pending))
        for index, destination in enumerate(pending):
            if not self._broker.is_connected:
                logger.debug("Connection lost during subscription replay")
                return
            if index:
                await self._sleep(self._replay_delay)
            if destination in self._callbacks and destination not in self._broker_ids:
                await self._activate(destination)
