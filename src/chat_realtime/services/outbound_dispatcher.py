"""Outbound sends: dedup, offline queue, FIFO replay and bounded retry."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Any, Awaitable, Callable

from chat_realtime.application.exceptions import DuplicateSend, TransportFailure
from chat_realtime.application.ports.broker import BrokerSession
from chat_realtime.application.ports.clock import Clock, SystemClock
from chat_realtime.domain.entities.envelope import OutboundEnvelope, make_dedup_key
from chat_realtime.domain.events.connection_state_changed import ConnectionStateChanged
from chat_realtime.domain.value_objects.enums import ConnectionState
from chat_realtime.infrastructure.stomp.connection import calc_backoff
from chat_realtime.infrastructure.stomp.protocol import (
    SEND_MESSAGE_DESTINATION,
    ChatMessagePayload,
)

logger = logging.getLogger(__name__)


class OutboundDispatcher:
    """Owns the replay queue; nothing else touches it.

    A send that cannot go out right now is queued with its resolved
    destination and reported as failed to the caller. The queue is flushed
    in enqueue order on the next Connected transition.
    """

    def __init__(
        self,
        broker: BrokerSession,
        *,
        clock: Clock | None = None,
        dedup_window: float = 1.0,
        dedup_capacity: int = 100,
        replay_delay: float = 0.05,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        connection_wait: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._broker = broker
        self._clock = clock or SystemClock()
        self._dedup_window = dedup_window
        self._dedup_capacity = dedup_capacity
        self._replay_delay = replay_delay
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._connection_wait = connection_wait
        self._sleep = sleep
        self._queue: deque[OutboundEnvelope] = deque()
        self._recent: OrderedDict[str, float] = OrderedDict()
        self._flushing = False
        self._remove_listener = broker.add_listener(self._on_state)

    @property
    def pending(self) -> list[OutboundEnvelope]:
        return list(self._queue)

    def close(self) -> None:
        self._remove_listener()

    # -- chat messages -----------------------------------------------------

    async def send_message(
        self,
        room_id: int,
        content: str,
        content_type: str = "TEXT",
    ) -> bool:
        """Fire-and-forget send; False means queued for replay."""
        envelope = self._build_message(room_id, content, content_type)
        try:
            self._claim(envelope.dedup_key)
        except DuplicateSend as exc:
            logger.warning("%s", exc.detail)
            return True
        if not self._broker.is_connected:
            self._enqueue(envelope, "not connected")
            return False
        try:
            await self._transmit(envelope)
        except TransportFailure as exc:
            self._enqueue(envelope, exc.detail)
            return False
        return True

    async def send_message_with_retry(
        self,
        room_id: int,
        content: str,
        content_type: str = "TEXT",
    ) -> bool:
        """Send and wait for the broker write, retrying with backoff.

        Waits up to the connection wait for a live session first. If every
        attempt fails the envelope is queued once and False is returned.
        """
        envelope = self._build_message(room_id, content, content_type)
        try:
            self._claim(envelope.dedup_key)
        except DuplicateSend as exc:
            logger.warning("%s", exc.detail)
            return True

        if not await self._broker.wait_connected(self._connection_wait):
            self._enqueue(envelope, "no connection within wait period")
            return False

        last_error: TransportFailure | None = None
        for attempt in range(self._retry_attempts):
            if attempt:
                delay = calc_backoff(attempt - 1, base=self._retry_base_delay)
                logger.info(
                    "Retrying send to room %d in %.1fs (attempt %d/%d)",
                    room_id, delay, attempt + 1, self._retry_attempts,
                )
                await self._sleep(delay)
            try:
                await self._transmit(envelope)
                return True
            except TransportFailure as exc:
                last_error = exc
        self._enqueue(envelope, last_error.detail if last_error else "retries exhausted")
        return False

    # -- raw frames --------------------------------------------------------

    async def send_raw(
        self,
        destination: str,
        body: str,
        headers: dict[str, str] | None = None,
        *,
        queue_on_failure: bool = True,
    ) -> bool:
        envelope = OutboundEnvelope(
            destination=destination,
            body=body,
            headers=dict(headers or {}),
            enqueued_at=self._clock.now(),
        )
        if self._broker.is_connected:
            try:
                await self._transmit(envelope)
                return True
            except TransportFailure as exc:
                reason = exc.detail
        else:
            reason = "not connected"
        if queue_on_failure:
            self._enqueue(envelope, reason)
        else:
            logger.debug("Dropped send to %s: %s", destination, reason)
        return False

    async def send_now(
        self,
        destination: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Transmit immediately; raises TransportFailure instead of queueing."""
        await self._broker.send(destination, body, headers)

    # -- internals ---------------------------------------------------------

    def _build_message(self, room_id: int, content: str, content_type: str) -> OutboundEnvelope:
        now = self._clock.now()
        payload = ChatMessagePayload(
            chat_room_id=room_id,
            content=content,
            content_type=content_type,
            timestamp=now,
        )
        return OutboundEnvelope(
            destination=SEND_MESSAGE_DESTINATION.format(room_id=room_id),
            body=payload.to_json(),
            dedup_key=make_dedup_key(room_id, content, content_type),
            enqueued_at=now,
        )

    def _claim(self, dedup_key: str | None) -> None:
        if dedup_key is None:
            return
        now = self._clock.monotonic()
        while self._recent:
            oldest, seen_at = next(iter(self._recent.items()))
            if now - seen_at < self._dedup_window and len(self._recent) < self._dedup_capacity:
                break
            del self._recent[oldest]
        seen_at = self._recent.get(dedup_key)
        if seen_at is not None and now - seen_at < self._dedup_window:
            raise DuplicateSend(f"Duplicate send absorbed: {dedup_key}")
        self._recent[dedup_key] = now

    async def _transmit(self, envelope: OutboundEnvelope) -> None:
        await self._broker.send(envelope.destination, envelope.body, envelope.headers)

    def _enqueue(self, envelope: OutboundEnvelope, reason: str) -> None:
        self._queue.append(envelope)
        logger.warning(
            "Queued send to %s (%s); %d pending",
            envelope.destination, reason, len(self._queue),
        )

    async def _on_state(self, event: ConnectionStateChanged) -> None:
        if event.current is ConnectionState.CONNECTED:
            await self.flush()

    async def flush(self) -> int:
        """Replay queued envelopes in order; stops at the first failure."""
        if self._flushing or not self._queue:
            return 0
        self._flushing = True
        sent = 0
        try:
            while self._queue and self._broker.is_connected:
                if sent:
                    await self._sleep(self._replay_delay)
                envelope = self._queue.popleft()
                try:
                    await self._transmit(envelope)
                except TransportFailure as exc:
                    self._queue.appendleft(envelope)
                    logger.warning(
                        "Replay to %s failed, %d left queued: %s",
                        envelope.destination, len(self._queue), exc.detail,
                    )
                    break
                sent += 1
        finally:
            self._flushing = False
        if sent:
            logger.info("Replayed %d queued sends", sent)
        return sent
