from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True, slots=True)
class OutboundEnvelope:
    """One resolved send request, held in the replay queue while disconnected."""

    destination: str
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    dedup_key: str | None = None
    enqueued_at: datetime | None = None


def make_dedup_key(room_id: int, content: str, content_type: str) -> str:
    """Identity of a chat send; the dispatcher decides how long it stays a duplicate."""
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
    return f"{room_id}:{content_type}:{digest}"
