from __future__ import annotations

import pytest

from frames import Command, FrameParseError, decode, encode, encode_text


def test_encode_writes_command_headers_blank_line_body_and_terminator():
    raw = encode(
        Command.CONNECT,
        {"accept-version": "1.1", "heart-beat": "0,0", "Authorization": "Bearer abc"},
    )
    assert raw == b"CONNECT\naccept-version:1.1\nheart-beat:0,0\nAuthorization:Bearer abc\n\n\x00"


def test_encode_adds_no_implicit_headers():
    assert encode(Command.DISCONNECT, {}) == b"DISCONNECT\n\n\x00"
    assert encode_text("DISCONNECT") == "DISCONNECT\n\n\x00"


def test_encoded_frame_ends_with_single_terminator():
    raw = encode(Command.SEND, {"destination": "/pub/chat.message.1"}, '{"content":"hi"}')
    assert raw.endswith(b"}\x00")
    assert raw.count(b"\x00") == 1


@pytest.mark.parametrize(
    "command, headers, body",
    [
        (Command.SEND, {"destination": "/pub/chat.message.c1", "content-type": "application/json"}, b'{"content":"hello"}'),
        (Command.SUBSCRIBE, {"id": "sub-0", "destination": "/exchange/chat.exchange/chat.channel.7"}, b""),
        (Command.MESSAGE, {"z": "1", "a": "2", "m": "3"}, "성능테스트 메시지".encode("utf-8")),
    ],
)
def test_decode_reverses_encode(command, headers, body):
    frame = decode(encode(command, headers, body))
    assert frame is not None
    assert frame.command is command
    assert list(frame.headers.items()) == list(headers.items())
    assert frame.body == body


def test_header_value_is_split_on_first_colon_only():
    frame = decode("SEND\ndestination:/queue/a:b\n\nbody\x00")
    assert frame is not None
    assert frame.headers == {"destination": "/queue/a:b"}


def test_body_is_cut_at_terminator_and_stripped():
    frame = decode("MESSAGE\ndestination:/topic/x\n\n  {\"content\": \"hi\"}  \n\x00\n")
    assert frame is not None
    assert frame.body == b'{"content": "hi"}'


def test_first_header_occurrence_wins():
    frame = decode("MESSAGE\nfoo:first\nfoo:second\n\n\x00")
    assert frame is not None
    assert frame.header("foo") == "first"


def test_crlf_frames_are_accepted():
    frame = decode(b"CONNECTED\r\nversion:1.2\r\n\r\n\x00")
    assert frame is not None
    assert frame.command is Command.CONNECTED
    assert frame.headers == {"version": "1.2"}


def test_garbage_without_separator_is_a_parse_error():
    with pytest.raises(FrameParseError):
        decode("GARBAGE")


def test_unknown_command_is_a_parse_error():
    with pytest.raises(FrameParseError):
        decode("RECEIPT\nreceipt-id:1\n\n\x00")


def test_header_without_colon_is_a_parse_error():
    with pytest.raises(FrameParseError):
        decode("MESSAGE\nnot-a-header\n\n\x00")


def test_heartbeat_decodes_to_none():
    assert decode("\n") is None
    assert decode(b"\r\n\x00") is None
