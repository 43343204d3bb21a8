from __future__ import annotations

import json
import random
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class MessageType(str, Enum):
    TALK = "TALK"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


FILE_EXTENSIONS = {MessageType.IMAGE: "jpg", MessageType.FILE: "pdf"}


@dataclass(frozen=True)
class ChatPayload:
    server_id: str
    email: str
    writer: str
    content: str
    message_type: MessageType = MessageType.TALK
    file_url: Optional[str] = None
    file_name: Optional[str] = None

    def __post_init__(self) -> None:
        carries_file = self.file_url is not None or self.file_name is not None
        if carries_file and self.message_type not in FILE_EXTENSIONS:
            raise ValueError(
                f"fileUrl/fileName are only allowed for IMAGE or FILE, got {self.message_type.value}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "serverId": self.server_id,
            "email": self.email,
            "writer": self.writer,
            "content": self.content,
            "messageType": self.message_type.value,
            "fileUrl": self.file_url,
            "fileName": self.file_name,
        }


def parse_message_types(value: str) -> list[MessageType]:
    types: list[MessageType] = []
    for part in (p.strip().upper() for p in value.split(",")):
        if not part:
            continue
        try:
            types.append(MessageType(part))
        except ValueError as exc:
            raise ValueError(
                f"Unsupported message type '{part}'. "
                f"Expected any of {', '.join(t.value for t in MessageType)}."
            ) from exc
    if not types:
        raise ValueError("message types cannot be empty")
    return types


def _extract_message_from_jsonl_row(obj: Any) -> str:
    if isinstance(obj, str):
        return obj
    if not isinstance(obj, dict):
        return ""
    for key in ("content", "text", "message"):
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def load_messages_from_file(message_file: Path) -> list[str]:
    """Read one message per line; JSON rows may carry ``content``/``text``/``message``."""
    messages: list[str] = []
    with message_file.open("r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            value = line.strip()
            if not value:
                continue
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                messages.append(value)
                continue
            message = _extract_message_from_jsonl_row(parsed)
            if message:
                messages.append(message)
            else:
                raise ValueError(
                    f"Unsupported message row at line {line_number} in {message_file}"
                )
    if not messages:
        raise ValueError(f"No usable messages found in {message_file}")
    return messages


def default_channels(count: int) -> list[str]:
    return [f"channel-{index}" for index in range(1, count + 1)]


def default_messages(count: int) -> list[str]:
    return [f"load test message {index}" for index in range(1, count + 1)]


class ChatPayloadFactory:
    def __init__(
        self,
        channels: list[str],
        messages: list[str],
        message_types: Optional[list[MessageType]] = None,
        unique_content: bool = False,
        server_id: str = "test-server",
    ) -> None:
        if not channels:
            raise ValueError("channel pool cannot be empty")
        if not messages:
            raise ValueError("message pool cannot be empty")
        self.channels = list(channels)
        self.messages = list(messages)
        self.message_types = list(message_types or [MessageType.TALK])
        self.unique_content = unique_content
        self.server_id = server_id

    def pick_channel(self, rng: random.Random) -> str:
        return rng.choice(self.channels)

    def build(self, rng: random.Random) -> ChatPayload:
        user_number = rng.randrange(1000)
        content = rng.choice(self.messages)
        if self.unique_content:
            content = f"{content} - {rng.getrandbits(48):012x}"
        message_type = rng.choice(self.message_types)
        file_url: Optional[str] = None
        file_name: Optional[str] = None
        extension = FILE_EXTENSIONS.get(message_type)
        if extension is not None:
            token = f"{rng.getrandbits(32):08x}"
            file_url = f"https://example.com/files/{token}.{extension}"
            file_name = f"test-file-{token}.{extension}"
        return ChatPayload(
            server_id=self.server_id,
            email=f"test{user_number}@example.com",
            writer=f"test-user-{user_number}",
            content=content,
            message_type=message_type,
            file_url=file_url,
            file_name=file_name,
        )
