from __future__ import annotations

import random
from pathlib import Path

import pytest

from payloads import (
    ChatPayload,
    ChatPayloadFactory,
    MessageType,
    load_messages_from_file,
    parse_message_types,
)


def test_talk_payload_serializes_with_null_file_fields():
    payload = ChatPayload(server_id="s", email="a@b.c", writer="w", content="hi")
    assert payload.to_dict() == {
        "serverId": "s",
        "email": "a@b.c",
        "writer": "w",
        "content": "hi",
        "messageType": "TALK",
        "fileUrl": None,
        "fileName": None,
    }


def test_file_fields_require_a_file_message_type():
    with pytest.raises(ValueError):
        ChatPayload(server_id="s", email="e", writer="w", content="c", file_url="https://x/y.jpg")
    ChatPayload(
        server_id="s",
        email="e",
        writer="w",
        content="c",
        message_type=MessageType.IMAGE,
        file_url="https://x/y.jpg",
        file_name="y.jpg",
    )


def test_factory_attaches_files_to_image_and_file_messages():
    factory = ChatPayloadFactory(
        channels=["1"], messages=["m"], message_types=[MessageType.IMAGE, MessageType.FILE]
    )
    rng = random.Random(5)
    for _ in range(20):
        payload = factory.build(rng)
        extension = "jpg" if payload.message_type is MessageType.IMAGE else "pdf"
        assert payload.file_url.endswith(f".{extension}")
        assert payload.file_name.startswith("test-file-")


def test_factory_is_deterministic_for_a_seed():
    factory = ChatPayloadFactory(channels=["1", "2", "3"], messages=["a", "b", "c"], unique_content=True)
    first = [factory.build(random.Random(11)) for _ in range(3)]
    again = [factory.build(random.Random(11)) for _ in range(3)]
    assert first == again
    assert first[0].content.split(" - ")[0] in {"a", "b", "c"}


def test_factory_requires_pools():
    with pytest.raises(ValueError):
        ChatPayloadFactory(channels=[], messages=["m"])
    with pytest.raises(ValueError):
        ChatPayloadFactory(channels=["1"], messages=[])


def test_parse_message_types():
    assert parse_message_types("talk, FILE") == [MessageType.TALK, MessageType.FILE]
    with pytest.raises(ValueError):
        parse_message_types("VIDEO")
    with pytest.raises(ValueError):
        parse_message_types(" , ")


def test_message_file_rejects_rows_without_text(tmp_path: Path):
    path = tmp_path / "messages.jsonl"
    path.write_text('{"content": "ok"}\n{"id": 3}\n', encoding="utf-8")
    with pytest.raises(ValueError):
        load_messages_from_file(path)
