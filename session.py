from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from frames import Command, Frame, FrameParseError, decode, encode_text
from metrics import (
    CONNECTION_ATTEMPTS,
    CONNECTION_SUCCESS,
    ERROR_COUNT,
    MESSAGE_LATENCY,
    MESSAGE_SUCCESS,
    MESSAGES_SENT,
    MetricsAggregator,
)
from payloads import ChatPayload

logger = logging.getLogger(__name__)

ROUTING_TEMPLATES = {
    "topic": "/topic/chat.channel.{channel_id}",
    "exchange": "/exchange/chat.exchange/chat.channel.{channel_id}",
}
PUBLISH_TEMPLATE = "/pub/chat.message.{channel_id}"


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def subscribe_destination(routing: str, channel_id: str) -> str:
    try:
        template = ROUTING_TEMPLATES[routing]
    except KeyError as exc:
        raise ValueError(
            f"Unsupported routing convention: {routing}. "
            f"Expected one of {', '.join(ROUTING_TEMPLATES)}."
        ) from exc
    return template.format(channel_id=channel_id)


def bearer(token: str) -> str:
    return f"Bearer {token}"


def publish_destination(channel_id: str) -> str:
    return PUBLISH_TEMPLATE.format(channel_id=channel_id)


# ---- transport ----


class TransportError(Exception):
    """Connection refused, abrupt close or I/O failure."""


class TransportClosed(Exception):
    """The connection was closed cleanly, by either side."""


class Transport(Protocol):
    async def send(self, data: str) -> None: ...

    async def recv(self) -> Union[str, bytes]: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


# ---- session ----


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_CONNECTED = "awaiting_connected"
    SUBSCRIBING = "subscribing"
    SENDING = "sending"
    AWAITING_ECHO = "awaiting_echo"
    DISCONNECTING = "disconnecting"
    CLOSED = "closed"
    FAILED = "failed"


class SessionOutcome(str, Enum):
    PENDING = "pending"
    CONNECTION_FAILED = "connection_failed"
    MESSAGE_SUCCEEDED = "message_succeeded"
    MESSAGE_FAILED = "message_failed"
    ABANDONED = "abandoned"


TERMINAL_STATES = (SessionState.CLOSED, SessionState.FAILED)
SENT_STATES = (SessionState.SENDING, SessionState.AWAITING_ECHO)


@dataclass
class SessionSettings:
    url: str = "ws://localhost:8081/ws"
    token: str = "test-token"
    accept_version: str = "1.1"
    heart_beat: str = "0,0"
    routing: str = "topic"
    settle_delay_s: float = 0.5
    echo_timeout_s: Optional[float] = None
    subscription_id: str = "sub-0"


@dataclass
class Session:
    id: str
    channel_id: str
    token: str
    worker_id: int = 0
    phase: str = ""
    state: SessionState = SessionState.IDLE
    sent_payload: Optional[ChatPayload] = None
    send_timestamp: Optional[float] = None
    outcome: SessionOutcome = SessionOutcome.PENDING
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    timed_out: bool = False
    start_time_unix_ms: int = field(default_factory=now_unix_ms)
    end_time_unix_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        payload["outcome"] = self.outcome.value
        payload["sent_payload"] = self.sent_payload.to_dict() if self.sent_payload else None
        payload.pop("token", None)
        return payload


@dataclass
class ScheduledAction:
    """A delayed step owned by one session; cancelled when the session closes."""

    session_id: str
    name: str
    task: Optional[asyncio.Task[None]] = None
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is None or self.task.done():
            return
        # an action that ends its own session must be allowed to finish closing
        if self.task is not asyncio.current_task():
            self.task.cancel()


class SessionStateMachine:
    def __init__(
        self,
        session: Session,
        settings: SessionSettings,
        metrics: MetricsAggregator,
        connector: Connector,
        build_payload: Callable[[], ChatPayload],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.settings = settings
        self.metrics = metrics
        self._connector = connector
        self._build_payload = build_payload
        self._clock = clock
        self._transport: Optional[Transport] = None
        self._scheduled: list[ScheduledAction] = []

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def finished(self) -> bool:
        return self.session.state in TERMINAL_STATES

    def _set_state(self, state: SessionState) -> None:
        logger.debug("[%s] %s -> %s", self.session.id, self.session.state.value, state.value)
        self.session.state = state

    def _finish(self, state: SessionState, outcome: SessionOutcome) -> None:
        self.session.outcome = outcome
        self.session.end_time_unix_ms = now_unix_ms()
        self._set_state(state)
        self._cancel_scheduled()

    async def run(self) -> Session:
        self._set_state(SessionState.CONNECTING)
        try:
            self._transport = await self._connector(self.settings.url)
        except TransportError as exc:
            self.handle_transport_error(exc)
            return self.session
        except asyncio.CancelledError:
            self.handle_transport_close()
            raise

        try:
            await self.handle_open()
            await self._pump()
        except TransportClosed:
            self.handle_transport_close()
        except TransportError as exc:
            self.handle_transport_error(exc)
        except asyncio.CancelledError:
            # forced close at scenario end
            self.handle_transport_close()
            raise
        finally:
            self._cancel_scheduled()
            await self._close_transport()
            await self._drain_scheduled()
        return self.session

    async def _pump(self) -> None:
        assert self._transport is not None
        while not self.finished:
            try:
                raw = await self._transport.recv()
            except TransportClosed:
                self.handle_transport_close()
                return
            except TransportError as exc:
                self.handle_transport_error(exc)
                return
            await self.handle_raw(raw)

    async def _send(self, command: Command, headers: dict[str, str], body: str = "") -> None:
        assert self._transport is not None
        await self._transport.send(encode_text(command, headers, body))

    async def _close_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.close()
        except TransportError as exc:
            logger.debug("[%s] close failed: %s", self.session.id, exc)

    def _schedule(self, name: str, delay_s: float, action: Callable[[], Awaitable[None]]) -> ScheduledAction:
        scheduled = ScheduledAction(session_id=self.session.id, name=name)

        async def _fire() -> None:
            await asyncio.sleep(max(0.0, delay_s))
            if scheduled.cancelled or self.finished:
                return
            await action()

        scheduled.task = asyncio.create_task(_fire())
        self._scheduled.append(scheduled)
        return scheduled

    def _cancel_scheduled(self) -> None:
        for scheduled in self._scheduled:
            scheduled.cancel()

    async def _drain_scheduled(self) -> None:
        pending = [scheduled for scheduled in self._scheduled if scheduled.task is not None]
        results = await asyncio.gather(
            *(scheduled.task for scheduled in pending), return_exceptions=True
        )
        for scheduled, result in zip(pending, results):
            if isinstance(result, Exception):
                logger.error("[%s] %s step failed: %r", self.session.id, scheduled.name, result)

    # ---- transitions ----

    async def handle_open(self) -> None:
        self.metrics.add(CONNECTION_ATTEMPTS)
        await self._send(
            Command.CONNECT,
            {
                "accept-version": self.settings.accept_version,
                "heart-beat": self.settings.heart_beat,
                "Authorization": bearer(self.session.token),
            },
        )
        self._set_state(SessionState.AWAITING_CONNECTED)

    async def handle_raw(self, raw: Union[str, bytes]) -> None:
        try:
            frame = decode(raw)
        except FrameParseError as exc:
            self.metrics.add(ERROR_COUNT)
            logger.debug("[%s] discarded frame: %s", self.session.id, exc)
            return
        if frame is None:
            return
        await self.handle_frame(frame)

    async def handle_frame(self, frame: Frame) -> None:
        if self.finished:
            return
        if frame.command is Command.ERROR:
            await self.handle_error_frame(frame)
        elif frame.command is Command.CONNECTED and self.state is SessionState.AWAITING_CONNECTED:
            await self.handle_connected()
        elif frame.command is Command.MESSAGE and self.state in SENT_STATES:
            await self.handle_message(frame)

    async def handle_connected(self) -> None:
        self.metrics.record_boolean(CONNECTION_SUCCESS, True)
        await self._send(
            Command.SUBSCRIBE,
            {
                "id": self.settings.subscription_id,
                "destination": subscribe_destination(
                    self.settings.routing, self.session.channel_id
                ),
            },
        )
        self._set_state(SessionState.SUBSCRIBING)
        self._schedule("publish", self.settings.settle_delay_s, self._publish)

    async def _publish(self) -> None:
        if self.state is not SessionState.SUBSCRIBING:
            return
        payload = self._build_payload()
        self.session.sent_payload = payload
        self._set_state(SessionState.SENDING)
        self.session.send_timestamp = self._clock()
        try:
            await self._send(
                Command.SEND,
                {
                    "destination": publish_destination(self.session.channel_id),
                    "content-type": "application/json",
                    "Authorization": bearer(self.session.token),
                },
                json.dumps(payload.to_dict(), ensure_ascii=False),
            )
        except TransportClosed:
            self.handle_transport_close()
            await self._close_transport()
            return
        except TransportError as exc:
            self.handle_transport_error(exc)
            await self._close_transport()
            return
        self.metrics.add(MESSAGES_SENT)
        if self.state is SessionState.SENDING:
            self._set_state(SessionState.AWAITING_ECHO)
        if self.settings.echo_timeout_s is not None and not self.finished:
            self._schedule("echo-timeout", self.settings.echo_timeout_s, self._expire_echo)

    async def _expire_echo(self) -> None:
        if self.state not in SENT_STATES:
            return
        logger.debug("[%s] no echo within %.1fs", self.session.id, self.settings.echo_timeout_s)
        self.session.timed_out = True
        self.handle_transport_close()
        await self._close_transport()

    async def handle_message(self, frame: Frame) -> None:
        sent = self.session.sent_payload
        assert sent is not None and self.session.send_timestamp is not None
        try:
            data = json.loads(frame.body_text())
        except json.JSONDecodeError as exc:
            self.metrics.add(ERROR_COUNT)
            logger.debug("[%s] undecodable MESSAGE body: %s", self.session.id, exc)
            return
        if not isinstance(data, dict):
            self.metrics.add(ERROR_COUNT)
            return
        if data.get("content") != sent.content:
            return

        latency_ms = max(0.0, (self._clock() - self.session.send_timestamp) * 1000.0)
        self.session.latency_ms = latency_ms
        self.metrics.record_boolean(MESSAGE_SUCCESS, True)
        self.metrics.record_value(MESSAGE_LATENCY, latency_ms)

        self._set_state(SessionState.DISCONNECTING)
        try:
            await self._send(Command.DISCONNECT, {})
        except (TransportClosed, TransportError) as exc:
            logger.debug("[%s] DISCONNECT not delivered: %s", self.session.id, exc)
        self._finish(SessionState.CLOSED, SessionOutcome.MESSAGE_SUCCEEDED)
        await self._close_transport()

    async def handle_error_frame(self, frame: Frame) -> None:
        self.session.error = frame.header("message") or frame.body_text() or "ERROR frame"
        logger.warning("[%s] server ERROR: %s", self.session.id, self.session.error)
        self.metrics.add(ERROR_COUNT)
        self.metrics.record_boolean(CONNECTION_SUCCESS, False)
        self.metrics.record_boolean(MESSAGE_SUCCESS, False)
        self._finish(SessionState.FAILED, SessionOutcome.CONNECTION_FAILED)
        await self._close_transport()

    def handle_transport_close(self) -> None:
        if self.finished:
            return
        if self.state in SENT_STATES:
            self.metrics.record_boolean(MESSAGE_SUCCESS, False)
            self.metrics.add(ERROR_COUNT)
            outcome = SessionOutcome.MESSAGE_FAILED
        elif self.state in (SessionState.CONNECTING, SessionState.AWAITING_CONNECTED):
            self.metrics.record_boolean(CONNECTION_SUCCESS, False)
            outcome = SessionOutcome.CONNECTION_FAILED
        else:
            outcome = SessionOutcome.ABANDONED
        self._finish(SessionState.CLOSED, outcome)

    def handle_transport_error(self, exc: BaseException) -> None:
        if self.finished:
            return
        self.session.error = str(exc) or type(exc).__name__
        logger.warning("[%s] transport error: %s", self.session.id, self.session.error)
        self.metrics.add(ERROR_COUNT)
        self.metrics.record_boolean(CONNECTION_SUCCESS, False)
        self.metrics.record_boolean(MESSAGE_SUCCESS, False)
        self._finish(SessionState.FAILED, SessionOutcome.CONNECTION_FAILED)
