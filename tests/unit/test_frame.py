from __future__ import annotations

import pytest

from chat_realtime.application.exceptions import ProtocolError
from chat_realtime.infrastructure.stomp.frame import (
    StompFrame,
    connect_frame,
    decode_frames,
    parse_heartbeat,
    send_frame,
    subscribe_frame,
)


def test_send_frame_encodes_headers_and_body():
    frame = send_frame("/app/chat.sendMessage/3", '{"content":"hi"}')

    raw = frame.encode()

    assert raw.startswith("SEND\ndestination:/app/chat.sendMessage/3\n")
    assert "content-type:application/json\n" in raw
    assert "content-length:16\n" in raw
    assert raw.endswith('\n\n{"content":"hi"}\x00')


def test_content_length_counts_utf8_bytes():
    frame = send_frame("/app/x", '"привет"')

    assert frame.headers["content-length"] == str(len('"привет"'.encode("utf-8")))


def test_connect_frame_carries_token_and_heartbeat():
    frame = connect_frame("broker.test", "abc", (10_000, 10_000))

    assert frame.headers["accept-version"] == "1.2"
    assert frame.headers["heart-beat"] == "10000,10000"
    assert frame.headers["Authorization"] == "Bearer abc"
    assert frame.headers["host"] == "broker.test"


def test_header_values_are_escaped_and_restored():
    frame = StompFrame("MESSAGE", {"destination": "/topic/a", "note": "a:b\nc\\d"}, "x")

    (decoded,) = decode_frames(frame.encode())

    assert "note:a\\cb\\nc\\\\d" in frame.encode()
    assert decoded.headers["note"] == "a:b\nc\\d"
    assert decoded.body == "x"


def test_decode_splits_frames_and_skips_heartbeats():
    raw = (
        "\n"
        + StompFrame("MESSAGE", {"destination": "/topic/a"}, "1").encode()
        + "\n\n"
        + StompFrame("RECEIPT", {"receipt-id": "disconnect"}).encode()
    )

    frames = decode_frames(raw)

    assert [f.command for f in frames] == ["MESSAGE", "RECEIPT"]
    assert frames[0].body == "1"


def test_bare_heartbeat_decodes_to_nothing():
    assert decode_frames("\n") == []


def test_repeated_header_keeps_first_value():
    (frame,) = decode_frames("MESSAGE\ndestination:/a\ndestination:/b\n\n\x00")

    assert frame.destination == "/a"


@pytest.mark.parametrize(
    "raw",
    [
        "BOGUS\n\n\x00",
        "MESSAGE\ndestination /a\n\n\x00",
        "MESSAGE\ndestination:/a",
        "MESSAGE\nbad:\\x\n\n\x00",
        b"MESSAGE\ndestination:/a\n\n\xff\xfe\x00",
    ],
)
def test_malformed_frames_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        decode_frames(raw)


def test_json_body_errors_are_protocol_errors():
    frame = StompFrame("MESSAGE", {}, "{not json")

    with pytest.raises(ProtocolError):
        frame.json()
    assert StompFrame("MESSAGE").json() == {}


def test_subscribe_frame_uses_auto_ack():
    frame = subscribe_frame("/topic/chatrooms/1", "sub-1", {"Authorization": "Bearer t"})

    assert frame.headers == {
        "id": "sub-1",
        "destination": "/topic/chatrooms/1",
        "ack": "auto",
        "Authorization": "Bearer t",
    }


def test_parse_heartbeat():
    assert parse_heartbeat("5000,20000") == (5000, 20000)
    assert parse_heartbeat(None) == (0, 0)
    with pytest.raises(ProtocolError):
        parse_heartbeat("soon")
