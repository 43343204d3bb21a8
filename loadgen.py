from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from metrics import MetricsAggregator
from payloads import ChatPayloadFactory
from scenario import Scenario
from session import (
    Connector,
    Session,
    SessionSettings,
    SessionStateMachine,
    TransportClosed,
    TransportError,
)

logger = logging.getLogger(__name__)


class WebSocketTransport:
    def __init__(self, connection: Any) -> None:
        self._connection = connection

    @classmethod
    async def connect(
        cls,
        url: str,
        open_timeout_s: float = 10.0,
        max_size: Optional[int] = 1 << 22,
    ) -> "WebSocketTransport":
        try:
            connection = await websockets.connect(
                url,
                open_timeout=open_timeout_s,
                max_size=max_size,
                ping_interval=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        return cls(connection)

    async def send(self, data: str) -> None:
        try:
            await self._connection.send(data)
        except ConnectionClosedOK as exc:
            raise TransportClosed(str(exc)) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc

    async def recv(self) -> Union[str, bytes]:
        try:
            return await self._connection.recv()
        except ConnectionClosedOK as exc:
            raise TransportClosed(str(exc)) from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc

    async def close(self) -> None:
        try:
            await self._connection.close()
        except (OSError, WebSocketException) as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc


def websocket_connector(open_timeout_s: float = 10.0) -> Connector:
    async def _connect(url: str) -> WebSocketTransport:
        return await WebSocketTransport.connect(url, open_timeout_s=open_timeout_s)

    return _connect


@dataclass
class TimelinePoint:
    elapsed_s: float
    phase: str
    target: int
    active: int
    retiring: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _VirtualUser:
    worker_id: int
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task[None]] = None


class LoadGenerator:
    """Keeps the number of running virtual users at the scenario's target.

    Each virtual user runs sessions back to back until it is retired. Retired
    users finish their current session; at scenario end every session still
    open is cancelled and finalized as a transport close.
    """

    def __init__(
        self,
        scenario: Scenario,
        settings: SessionSettings,
        metrics: MetricsAggregator,
        connector: Connector,
        payload_factory: ChatPayloadFactory,
        *,
        seed: int = 42,
        tick_s: float = 0.5,
        iteration_pause_s: float = 1.0,
        on_session_done: Optional[Callable[[Session], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tick_s <= 0:
            raise ValueError(f"tick_s must be > 0, got {tick_s}")
        self.scenario = scenario
        self.settings = settings
        self.metrics = metrics
        self.connector = connector
        self.payload_factory = payload_factory
        self.seed = seed
        self.tick_s = tick_s
        self.iteration_pause_s = iteration_pause_s
        self.on_session_done = on_session_done
        self._clock = clock
        self._users: list[_VirtualUser] = []
        self._live: dict[int, Session] = {}
        self._next_worker_id = 0
        self._phase = ""
        self.timeline: list[TimelinePoint] = []
        self.sessions_started = 0

    @property
    def active_users(self) -> int:
        return sum(1 for user in self._users if not user.stop_event.is_set())

    async def run(self) -> list[TimelinePoint]:
        total_s = self.scenario.total_duration_s
        started = self._clock()
        try:
            while True:
                elapsed = self._clock() - started
                if elapsed >= total_s:
                    break
                target = int(round(self.scenario.target(elapsed)))
                self._phase = self.scenario.phase_name(elapsed)
                self._reconcile(target)
                self.timeline.append(
                    TimelinePoint(
                        elapsed_s=round(elapsed, 3),
                        phase=self._phase,
                        target=target,
                        active=self.active_users,
                        retiring=len(self._users) - self.active_users,
                    )
                )
                await asyncio.sleep(min(self.tick_s, max(0.0, total_s - elapsed)))
        finally:
            await self._shutdown()
        return self.timeline

    def _reconcile(self, target: int) -> None:
        self._users = [user for user in self._users if user.task is None or not user.task.done()]
        active = [user for user in self._users if not user.stop_event.is_set()]
        if len(active) < target:
            for _ in range(target - len(active)):
                self._spawn()
        elif len(active) > target:
            for user in reversed(active[target:]):
                user.stop_event.set()

    def _spawn(self) -> None:
        user = _VirtualUser(worker_id=self._next_worker_id)
        self._next_worker_id += 1
        rng = random.Random(self.seed + (user.worker_id * 971) + 17)
        user.task = asyncio.create_task(self._user_loop(user, rng))
        self._users.append(user)
        logger.debug("spawned virtual user %d", user.worker_id)

    def new_session_machine(self, worker_id: int, rng: random.Random) -> SessionStateMachine:
        session = Session(
            id=str(uuid.uuid4()),
            channel_id=self.payload_factory.pick_channel(rng),
            token=self.settings.token,
            worker_id=worker_id,
            phase=self._phase,
        )
        return SessionStateMachine(
            session=session,
            settings=self.settings,
            metrics=self.metrics,
            connector=self.connector,
            build_payload=lambda: self.payload_factory.build(rng),
        )

    async def _user_loop(self, user: _VirtualUser, rng: random.Random) -> None:
        while not user.stop_event.is_set():
            machine = self.new_session_machine(user.worker_id, rng)
            self._live[user.worker_id] = machine.session
            self.sessions_started += 1
            try:
                await machine.run()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                machine.handle_transport_error(exc)
            self._live.pop(user.worker_id, None)
            await self._emit(machine.session)
            if self.iteration_pause_s <= 0:
                continue
            try:
                await asyncio.wait_for(user.stop_event.wait(), timeout=self.iteration_pause_s)
            except asyncio.TimeoutError:
                pass

    async def _emit(self, session: Session) -> None:
        if self.on_session_done is not None:
            await self.on_session_done(session)

    async def _shutdown(self) -> None:
        tasks = [user.task for user in self._users if user.task is not None]
        for user in self._users:
            user.stop_event.set()
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("virtual user crashed: %r", result)
        interrupted = list(self._live.values())
        self._live.clear()
        for session in interrupted:
            await self._emit(session)
        self._users = []
        logger.info(
            "scenario %s finished: %d sessions, %d interrupted at end",
            self.scenario.name,
            self.sessions_started,
            len(interrupted),
        )
