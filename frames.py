from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

NULL = b"\x00"
HEADER_SEPARATORS = (b"\r\n\r\n", b"\n\n")


class Command(str, Enum):
    CONNECT = "CONNECT"
    CONNECTED = "CONNECTED"
    SUBSCRIBE = "SUBSCRIBE"
    SEND = "SEND"
    MESSAGE = "MESSAGE"
    ERROR = "ERROR"
    DISCONNECT = "DISCONNECT"


class FrameParseError(ValueError):
    """Raised for frames without a header/body separator or with a bad header block."""


@dataclass
class Frame:
    command: Command
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(key, default)

    def body_text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def _to_bytes(value: Union[str, bytes, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def encode(
    command: Union[Command, str],
    headers: Optional[dict[str, str]] = None,
    body: Union[str, bytes, None] = None,
) -> bytes:
    name = command.value if isinstance(command, Command) else str(command)
    lines = [name]
    for key, value in (headers or {}).items():
        lines.append(f"{key}:{value}")
    head = ("\n".join(lines) + "\n\n").encode("utf-8")
    return head + _to_bytes(body) + NULL


def encode_text(
    command: Union[Command, str],
    headers: Optional[dict[str, str]] = None,
    body: Union[str, bytes, None] = None,
) -> str:
    return encode(command, headers, body).decode("utf-8")


def _split_head(data: bytes) -> tuple[bytes, bytes]:
    best: Optional[tuple[int, int]] = None
    for separator in HEADER_SEPARATORS:
        index = data.find(separator)
        if index < 0:
            continue
        if best is None or index < best[0]:
            best = (index, len(separator))
    if best is None:
        raise FrameParseError("no blank line between headers and body")
    index, width = best
    return data[:index], data[index + width :]


def decode(raw: Union[str, bytes]) -> Optional[Frame]:
    """Parse one frame.

    Returns ``None`` for a bare heart-beat (only newlines and terminators).
    The body is cut at its trailing terminator and stripped of surrounding
    whitespace. When the server repeats a header the first value wins.
    """
    data = _to_bytes(raw)
    if not data.strip(b"\r\n" + NULL):
        return None

    head, body = _split_head(data.lstrip(b"\r\n"))
    terminator = body.find(NULL)
    if terminator >= 0:
        body = body[:terminator]
    body = body.strip()

    head_lines = head.decode("utf-8", errors="replace").splitlines()
    command_name = head_lines[0].strip()
    try:
        command = Command(command_name)
    except ValueError as exc:
        raise FrameParseError(f"unknown command {command_name!r}") from exc

    headers: dict[str, str] = {}
    for line in head_lines[1:]:
        if not line:
            continue
        key, sep, value = line.partition(":")
        if not sep:
            raise FrameParseError(f"header line without colon: {line!r}")
        if key not in headers:
            headers[key] = value
    return Frame(command=command, headers=headers, body=body)
