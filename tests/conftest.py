from __future__ import annotations

import asyncio
import json
import random
from typing import Callable, Optional, Union

import pytest

from frames import Command, decode, encode_text
from metrics import MetricsAggregator
from payloads import ChatPayloadFactory
from session import (
    Session,
    SessionSettings,
    SessionStateMachine,
    TransportClosed,
    TransportError,
)

_CLOSE = object()


class FakeTransport:
    """In-memory transport; ``responder`` sees every outbound frame."""

    def __init__(self, responder: Optional[Callable[["FakeTransport", str], None]] = None) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.responder = responder
        self._incoming: asyncio.Queue[object] = asyncio.Queue()

    def push(self, data: Union[str, bytes]) -> None:
        self._incoming.put_nowait(data)

    def push_frame(self, command: Command, headers: Optional[dict[str, str]] = None, body: str = "") -> None:
        self.push(encode_text(command, headers or {}, body))

    def push_close(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    def push_error(self, exc: Exception) -> None:
        self._incoming.put_nowait(exc)

    def sent_commands(self) -> list[str]:
        return [data.split("\n", 1)[0] for data in self.sent]

    def sent_frames(self, command: Command) -> list:
        frames = [decode(data) for data in self.sent]
        return [frame for frame in frames if frame is not None and frame.command is command]

    async def send(self, data: str) -> None:
        if self.closed:
            raise TransportClosed("closed")
        self.sent.append(data)
        if self.responder is not None:
            self.responder(self, data)

    async def recv(self) -> Union[str, bytes]:
        if self.closed and self._incoming.empty():
            raise TransportClosed("closed")
        item = await self._incoming.get()
        if item is _CLOSE:
            self.closed = True
            raise TransportClosed("closed by peer")
        if isinstance(item, Exception):
            raise item
        return item  # type: ignore[return-value]

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSE)


class ChatServerStub:
    """Answers CONNECT and echoes SEND bodies back as MESSAGE frames."""

    def __init__(
        self,
        echo: bool = True,
        error_on_connect: bool = False,
        close_after_send: bool = False,
        before_echo: Optional[list[str]] = None,
    ) -> None:
        self.echo = echo
        self.error_on_connect = error_on_connect
        self.close_after_send = close_after_send
        self.before_echo = list(before_echo or [])
        self.transports: list[FakeTransport] = []

    def __call__(self, transport: FakeTransport, data: str) -> None:
        frame = decode(data)
        assert frame is not None
        if frame.command is Command.CONNECT:
            if self.error_on_connect:
                transport.push_frame(Command.ERROR, {"message": "Unauthorized"}, "invalid token")
            else:
                transport.push_frame(Command.CONNECTED, {"version": "1.1", "heart-beat": "0,0"})
        elif frame.command is Command.SEND:
            if self.close_after_send:
                transport.push_close()
                return
            for raw in self.before_echo:
                transport.push(raw)
            if self.echo:
                channel = frame.headers["destination"].rsplit(".", 1)[-1]
                transport.push_frame(
                    Command.MESSAGE,
                    {
                        "destination": f"/topic/chat.channel.{channel}",
                        "subscription": "sub-0",
                        "message-id": "m-1",
                    },
                    frame.body_text(),
                )

    async def connect(self, url: str) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport


def message_from(content: str, writer: str = "someone-else") -> str:
    body = json.dumps(
        {
            "serverId": "test-server",
            "email": "other@example.com",
            "writer": writer,
            "content": content,
            "messageType": "TALK",
            "fileUrl": None,
            "fileName": None,
        }
    )
    return encode_text(Command.MESSAGE, {"destination": "/topic/chat.channel.c1"}, body)


@pytest.fixture
def metrics() -> MetricsAggregator:
    return MetricsAggregator()


@pytest.fixture
def settings() -> SessionSettings:
    return SessionSettings(url="ws://test/ws", token="t0k3n", settle_delay_s=0.0)


@pytest.fixture
def make_machine(metrics: MetricsAggregator, settings: SessionSettings):
    def _make(
        connector,
        content: str = "hello",
        channel_id: str = "c1",
        session_settings: Optional[SessionSettings] = None,
    ) -> SessionStateMachine:
        factory = ChatPayloadFactory(channels=[channel_id], messages=[content])
        rng = random.Random(1)
        return SessionStateMachine(
            session=Session(id=f"s-{content}", channel_id=channel_id, token="t0k3n"),
            settings=session_settings or settings,
            metrics=metrics,
            connector=connector,
            build_payload=lambda: factory.build(rng),
        )

    return _make


async def refused(url: str) -> FakeTransport:
    raise TransportError(f"connection refused: {url}")
