"""Entrypoint: python -m chat_realtime

Connects with AUTH_TOKEN and logs every message arriving in TAIL_ROOMS.
"""
from __future__ import annotations

import asyncio
import logging

from chat_realtime.application.exceptions import AuthFailure
from chat_realtime.client import create_client
from chat_realtime.config import settings
from chat_realtime.domain.entities.message import InboundMessage
from chat_realtime.domain.value_objects.enums import ConnectionState
from chat_realtime.infrastructure.auth.token import StaticTokenProvider

logger = logging.getLogger("chat_realtime")


def _log_message(message: InboundMessage) -> None:
    body = getattr(message, "text", None) or getattr(message, "uri", "")
    logger.info(
        "[room %s] %s #%s (%s): %s",
        message.room_id, message.kind, message.id, message.author_name or message.author_id, body,
    )


async def _tail(rooms: list[int]) -> int:
    client = create_client(StaticTokenProvider(settings.AUTH_TOKEN))
    try:
        await client.connect()
    except AuthFailure as exc:
        logger.error("Cannot connect: %s", exc.detail)
        return 1
    try:
        for room_id in rooms:
            await client.subscribe_room(room_id, _log_message)
        logger.info("Tailing rooms %s on %s", rooms, settings.BROKER_URL)
        async for event in client.watch_connection():
            logger.info("Connection %s -> %s", event.previous, event.current)
            if event.current is ConnectionState.DISCONNECTED:
                return 1
    finally:
        await client.disconnect()
    return 0


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if not settings.AUTH_TOKEN:
        logger.error("AUTH_TOKEN is not set")
        raise SystemExit(2)
    if not settings.TAIL_ROOMS:
        logger.error("TAIL_ROOMS is empty, nothing to tail")
        raise SystemExit(2)
    try:
        raise SystemExit(asyncio.run(_tail(settings.TAIL_ROOMS)))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
