"""STOMP 1.2 text-frame codec."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from chat_realtime.application.exceptions import ProtocolError

NULL = "\x00"
EOL = "\n"
HEARTBEAT = EOL

_CLIENT_COMMANDS = frozenset(
    {"CONNECT", "STOMP", "SEND", "SUBSCRIBE", "UNSUBSCRIBE", "ACK", "NACK", "DISCONNECT"}
)
_SERVER_COMMANDS = frozenset({"CONNECTED", "MESSAGE", "RECEIPT", "ERROR"})
_UNESCAPED_COMMANDS = frozenset({"CONNECT", "CONNECTED"})

_ESCAPES = (("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c"))
_UNESCAPES = {"\\": "\\", "r": "\r", "n": "\n", "c": ":"}


@dataclass(frozen=True, slots=True)
class StompFrame:
    command: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def destination(self) -> str | None:
        return self.headers.get("destination")

    def encode(self) -> str:
        escape = self.command not in _UNESCAPED_COMMANDS
        lines = [self.command]
        for key, value in self.headers.items():
            if escape:
                key, value = _escape(key), _escape(value)
            lines.append(f"{key}:{value}")
        return EOL.join(lines) + EOL + EOL + self.body + NULL

    def json(self) -> Any:
        """Decode the body as JSON, raising ProtocolError on garbage."""
        try:
            return json.loads(self.body) if self.body else {}
        except ValueError as exc:
            raise ProtocolError(f"Frame body is not JSON: {self.body[:120]!r}") from exc


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def _unescape(value: str) -> str:
    if "\\" not in value:
        return value
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        if nxt not in _UNESCAPES:
            raise ProtocolError(f"Invalid header escape sequence: \\{nxt}")
        out.append(_UNESCAPES[nxt])
    return "".join(out)


def decode_frames(raw: str | bytes) -> list[StompFrame]:
    """Split one websocket message into frames; bare EOLs are heart-beats."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Frame is not valid UTF-8: {exc}") from exc
    frames: list[StompFrame] = []
    for chunk in raw.split(NULL):
        chunk = chunk.lstrip("\r\n")
        if not chunk:
            continue
        frames.append(_decode_one(chunk))
    return frames


def _decode_one(text: str) -> StompFrame:
    head, sep, body = text.partition(EOL + EOL)
    if not sep:
        head, sep, body = text.partition("\r\n\r\n")
    if not sep:
        raise ProtocolError(f"Frame has no header terminator: {text[:80]!r}")
    lines = head.replace("\r\n", EOL).split(EOL)
    command = lines[0].strip()
    if command not in _SERVER_COMMANDS and command not in _CLIENT_COMMANDS:
        raise ProtocolError(f"Unknown STOMP command: {command!r}")
    escape = command not in _UNESCAPED_COMMANDS
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        key, colon, value = line.partition(":")
        if not colon:
            raise ProtocolError(f"Malformed header line: {line!r}")
        if escape:
            key, value = _unescape(key), _unescape(value)
        # Repeated headers: the first occurrence wins.
        headers.setdefault(key, value)
    return StompFrame(command=command, headers=headers, body=body)


def connect_frame(host: str, token: str, heartbeat: tuple[int, int]) -> StompFrame:
    return StompFrame(
        "CONNECT",
        {
            "accept-version": "1.2",
            "host": host,
            "heart-beat": f"{heartbeat[0]},{heartbeat[1]}",
            "Authorization": f"Bearer {token}",
        },
    )


def subscribe_frame(
    destination: str,
    subscription_id: str,
    headers: dict[str, str] | None = None,
) -> StompFrame:
    return StompFrame(
        "SUBSCRIBE",
        {"id": subscription_id, "destination": destination, "ack": "auto", **(headers or {})},
    )


def unsubscribe_frame(subscription_id: str) -> StompFrame:
    return StompFrame("UNSUBSCRIBE", {"id": subscription_id})


def send_frame(
    destination: str,
    body: str,
    headers: dict[str, str] | None = None,
) -> StompFrame:
    merged = {"destination": destination, **(headers or {})}
    if body:
        merged.setdefault("content-type", "application/json")
        merged["content-length"] = str(len(body.encode("utf-8")))
    return StompFrame("SEND", merged, body)


def disconnect_frame(receipt: str = "disconnect") -> StompFrame:
    return StompFrame("DISCONNECT", {"receipt": receipt})


def parse_heartbeat(value: str | None) -> tuple[int, int]:
    if not value:
        return 0, 0
    try:
        sx, sy = (int(part.strip()) for part in value.split(","))
    except ValueError as exc:
        raise ProtocolError(f"Invalid heart-beat header: {value!r}") from exc
    return sx, sy
