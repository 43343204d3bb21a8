from __future__ import annotations

import asyncio
import csv
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loadgen import LoadGenerator, websocket_connector
from metrics import DEFAULT_THRESHOLDS, MetricsAggregator, build_thresholds, evaluate_thresholds
from metrics_server import ServerMetricsScraper
from payloads import ChatPayloadFactory, MessageType, default_channels, default_messages
from report import (
    compute_run_summary,
    format_threshold_table,
    write_summary_json,
    write_summary_markdown,
)
from scenario import Scenario, preset
from session import Connector, Session, SessionSettings

logger = logging.getLogger(__name__)


@dataclass
class RunConfig:
    url: str = "ws://localhost:8081/ws"
    token: str = "test-token"
    scenario: Scenario = field(default_factory=lambda: preset("advanced"))
    routing: str = "topic"
    accept_version: str = "1.1"
    heart_beat: str = "0,0"
    settle_delay_s: float = 0.5
    echo_timeout_s: Optional[float] = None
    iteration_pause_s: float = 1.0
    tick_s: float = 0.5
    open_timeout_s: float = 10.0
    channels: list[str] = field(default_factory=lambda: default_channels(5))
    messages: list[str] = field(default_factory=lambda: default_messages(10))
    message_types: list[MessageType] = field(default_factory=lambda: [MessageType.TALK])
    unique_content: bool = False
    thresholds: dict[str, list[str]] = field(
        default_factory=lambda: {name: list(exprs) for name, exprs in DEFAULT_THRESHOLDS.items()}
    )
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None
    seed: int = 42
    metrics_url: Optional[str] = None
    poll_interval_s: float = 1.0
    extra_server_metrics: list[str] = field(default_factory=list)

    def session_settings(self) -> SessionSettings:
        return SessionSettings(
            url=self.url,
            token=self.token,
            accept_version=self.accept_version,
            heart_beat=self.heart_beat,
            routing=self.routing,
            settle_delay_s=self.settle_delay_s,
            echo_timeout_s=self.echo_timeout_s,
        )


@dataclass
class RunResult:
    output_dir: Path
    passed: bool
    summary: dict[str, Any]


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=False)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def _write_csv(path: Path, rows: list[dict[str, Any]]) -> None:
    if not rows:
        path.write_text("", encoding="utf-8")
        return
    fieldnames: list[str] = []
    for row in rows:
        for key in row.keys():
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _resolved_config_dict(config: RunConfig, output_dir: Path) -> dict[str, Any]:
    payload = asdict(config)
    payload["token"] = "***" if config.token else None
    payload["output_dir"] = str(config.output_dir)
    payload["message_types"] = [message_type.value for message_type in config.message_types]
    payload["scenario"] = {
        "name": config.scenario.name,
        "total_duration_s": config.scenario.total_duration_s,
        "phases": [asdict(phase) for phase in config.scenario.phases],
    }
    payload["resolved_run_dir"] = str(output_dir)
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


async def run_load_test(config: RunConfig, connector: Optional[Connector] = None) -> RunResult:
    output_dir = _ensure_output_dir(config.output_dir, config.run_name)

    sessions_path = output_dir / "sessions.jsonl"
    config_path = output_dir / "config.json"
    timeline_path = output_dir / "timeline.csv"
    server_metrics_path = output_dir / "server_metrics.csv"
    summary_json_path = output_dir / "summary.json"
    summary_md_path = output_dir / "summary.md"

    thresholds = build_thresholds(config.thresholds)
    resolved_config = _resolved_config_dict(config, output_dir)
    _write_json(config_path, resolved_config)

    metrics = MetricsAggregator()
    payload_factory = ChatPayloadFactory(
        channels=config.channels,
        messages=config.messages,
        message_types=config.message_types,
        unique_content=config.unique_content,
    )
    session_writer = AsyncJSONLWriter(sessions_path)
    finished_sessions: list[Session] = []

    async def on_session_done(session: Session) -> None:
        finished_sessions.append(session)
        await session_writer.write(session.to_dict())

    generator = LoadGenerator(
        scenario=config.scenario,
        settings=config.session_settings(),
        metrics=metrics,
        connector=connector or websocket_connector(config.open_timeout_s),
        payload_factory=payload_factory,
        seed=config.seed,
        tick_s=config.tick_s,
        iteration_pause_s=config.iteration_pause_s,
        on_session_done=on_session_done,
    )
    scraper = (
        ServerMetricsScraper(
            metrics_url=config.metrics_url,
            poll_interval_s=config.poll_interval_s,
            extra_metrics=config.extra_server_metrics,
        )
        if config.metrics_url
        else None
    )

    logger.info(
        "starting scenario %s against %s (%.0fs, peak %d users)",
        config.scenario.name,
        config.url,
        config.scenario.total_duration_s,
        config.scenario.peak_concurrency,
    )
    try:
        if scraper is not None:
            await scraper.start()
        timeline = await generator.run()
    finally:
        session_writer.close()
        if scraper is not None:
            await scraper.stop()

    server_rows = await scraper.rows() if scraper is not None else []
    _write_csv(timeline_path, [point.to_dict() for point in timeline])
    if scraper is not None:
        _write_csv(server_metrics_path, server_rows)

    passed, results = evaluate_thresholds(metrics, thresholds)
    summary = compute_run_summary(
        scenario=config.scenario,
        metrics=metrics,
        sessions=finished_sessions,
        threshold_results=results,
        passed=passed,
        timeline=timeline,
        server_rows=server_rows,
    )
    write_summary_json(summary_json_path, summary)
    write_summary_markdown(
        output_path=summary_md_path,
        run_name=config.run_name or "run",
        resolved_config=resolved_config,
        summary=summary,
    )
    print(format_threshold_table(results, passed))
    return RunResult(output_dir=output_dir, passed=passed, summary=summary)
