from __future__ import annotations

from dataclasses import dataclass

from chat_realtime.domain.value_objects.enums import ConnectionState


@dataclass(frozen=True, slots=True)
class ConnectionStateChanged:
    previous: ConnectionState
    current: ConnectionState
    error: Exception | None = None
