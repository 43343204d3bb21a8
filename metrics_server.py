from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import httpx
from prometheus_client.parser import text_string_to_metric_families

logger = logging.getLogger(__name__)

WEBSOCKET_SESSION_ALIASES = [
    "websocket_sessions_active",
    "spring_websocket_sessions_current",
    "tomcat_sessions_active_current_sessions",
]
PROCESS_CPU_ALIASES = ["process_cpu_usage", "system_cpu_usage"]
LIVE_THREAD_ALIASES = ["jvm_threads_live_threads", "jvm_threads_live"]
HEAP_USED_BASE = "jvm_memory_used_bytes"
BROKER_CONNECTION_ALIASES = ["rabbitmq_connections", "rabbitmq_connections_total"]


def _pick_first(values: dict[str, float], aliases: list[str]) -> Optional[float]:
    for alias in aliases:
        if alias in values:
            return values[alias]
    return None


@dataclass
class ServerMetricsSnapshot:
    timestamp_unix_ms: int
    source: str
    scrape_ok: bool
    scrape_error: Optional[str]
    websocket_sessions: Optional[float] = None
    process_cpu_usage: Optional[float] = None
    live_threads: Optional[float] = None
    heap_used_bytes: Optional[float] = None
    broker_connections: Optional[float] = None
    extra: dict[str, float] = field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["extra"] = json.dumps(self.extra, sort_keys=True)
        return row


def parse_prometheus_metrics(
    text: str,
    source: str,
    timestamp_unix_ms: int,
    extra_metrics: Optional[list[str]] = None,
) -> ServerMetricsSnapshot:
    values: dict[str, float] = {}
    heap_used: Optional[float] = None

    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            name = sample.name
            value = float(sample.value)
            values[name] = values.get(name, 0.0) + value
            if name == HEAP_USED_BASE and sample.labels.get("area") == "heap":
                heap_used = (heap_used or 0.0) + value

    extra = {name: values[name] for name in (extra_metrics or []) if name in values}
    return ServerMetricsSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        source=source,
        scrape_ok=True,
        scrape_error=None,
        websocket_sessions=_pick_first(values, WEBSOCKET_SESSION_ALIASES),
        process_cpu_usage=_pick_first(values, PROCESS_CPU_ALIASES),
        live_threads=_pick_first(values, LIVE_THREAD_ALIASES),
        heap_used_bytes=heap_used,
        broker_connections=_pick_first(values, BROKER_CONNECTION_ALIASES),
        extra=extra,
    )


class ServerMetricsScraper:
    """Polls a Prometheus text endpoint (e.g. ``/actuator/prometheus``) during a run."""

    def __init__(
        self,
        metrics_url: str,
        poll_interval_s: float = 1.0,
        request_timeout_s: float = 5.0,
        extra_metrics: Optional[list[str]] = None,
    ) -> None:
        self.metrics_url = metrics_url
        self.poll_interval_s = poll_interval_s
        self.request_timeout_s = request_timeout_s
        self.extra_metrics = list(extra_metrics or [])
        self._client: Optional[httpx.AsyncClient] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._rows: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._client = httpx.AsyncClient(timeout=self.request_timeout_s)
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def snapshot(self, source: str = "snapshot") -> ServerMetricsSnapshot:
        snapshot = await self._scrape_once(source=source)
        async with self._lock:
            self._rows.append(snapshot.to_row())
        return snapshot

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            loop_started = time.monotonic()
            await self.snapshot(source="poll")
            elapsed = time.monotonic() - loop_started
            sleep_for = max(0.0, self.poll_interval_s - elapsed)
            if sleep_for <= 0.0:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    def _failed(self, timestamp_unix_ms: int, source: str, error: str) -> ServerMetricsSnapshot:
        logger.debug("metrics scrape of %s failed: %s", self.metrics_url, error)
        return ServerMetricsSnapshot(
            timestamp_unix_ms=timestamp_unix_ms,
            source=source,
            scrape_ok=False,
            scrape_error=error,
        )

    async def _scrape_once(self, source: str) -> ServerMetricsSnapshot:
        timestamp_unix_ms = int(time.time() * 1000)

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.request_timeout_s)

        try:
            response = await self._client.get(self.metrics_url, timeout=self.request_timeout_s)
        except httpx.HTTPError as exc:
            return self._failed(timestamp_unix_ms, source, str(exc) or type(exc).__name__)
        if response.status_code != 200:
            return self._failed(timestamp_unix_ms, source, f"HTTP {response.status_code}")
        try:
            return parse_prometheus_metrics(
                text=response.text,
                source=source,
                timestamp_unix_ms=timestamp_unix_ms,
                extra_metrics=self.extra_metrics,
            )
        except ValueError as exc:
            return self._failed(timestamp_unix_ms, source, f"unparseable metrics: {exc}")

    async def rows(self) -> list[dict[str, Any]]:
        async with self._lock:
            return list(self._rows)
