from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loadgen import TimelinePoint
from metrics import (
    CONNECTION_SUCCESS,
    MESSAGE_LATENCY,
    MESSAGE_SUCCESS,
    MetricsAggregator,
    ThresholdResult,
    percentile,
)
from scenario import Scenario
from session import Session, SessionOutcome


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _pct(value: Optional[float]) -> Optional[float]:
    return value * 100.0 if value is not None else None


def _outcome_counts(sessions: list[Session]) -> dict[str, int]:
    counts = {outcome.value: 0 for outcome in SessionOutcome}
    for session in sessions:
        counts[session.outcome.value] += 1
    return counts


def compute_phase_summaries(sessions: list[Session], scenario: Scenario) -> list[dict[str, Any]]:
    phase_names = [phase.name or f"phase_{index + 1}" for index, phase in enumerate(scenario.phases)]
    by_phase: dict[str, list[Session]] = {name: [] for name in phase_names}
    for session in sessions:
        by_phase.setdefault(session.phase or "unknown", []).append(session)

    summaries: list[dict[str, Any]] = []
    for name, phase_sessions in by_phase.items():
        counts = _outcome_counts(phase_sessions)
        attempted = counts[SessionOutcome.MESSAGE_SUCCEEDED.value] + counts[
            SessionOutcome.MESSAGE_FAILED.value
        ]
        latencies = [
            float(session.latency_ms)
            for session in phase_sessions
            if session.latency_ms is not None and session.latency_ms >= 0
        ]
        summaries.append(
            {
                "phase": name,
                "sessions": len(phase_sessions),
                "outcomes": counts,
                "message_success_rate": (
                    counts[SessionOutcome.MESSAGE_SUCCEEDED.value] / attempted
                    if attempted
                    else None
                ),
                "latency_ms_p50": percentile(latencies, 50.0),
                "latency_ms_p95": percentile(latencies, 95.0),
                "latency_ms_p99": percentile(latencies, 99.0),
            }
        )
    return summaries


def compute_run_summary(
    *,
    scenario: Scenario,
    metrics: MetricsAggregator,
    sessions: list[Session],
    threshold_results: list[ThresholdResult],
    passed: bool,
    timeline: list[TimelinePoint],
    server_rows: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    peak_active = max((point.active + point.retiring for point in timeline), default=0)
    websocket_sessions = [
        float(row["websocket_sessions"])
        for row in (server_rows or [])
        if row.get("scrape_ok") and row.get("websocket_sessions") is not None
    ]
    return {
        "scenario": scenario.name,
        "scenario_duration_s": scenario.total_duration_s,
        "scenario_peak_target": scenario.peak_concurrency,
        "peak_active_users": peak_active,
        "sessions": len(sessions),
        "outcomes": _outcome_counts(sessions),
        "timed_out_sessions": sum(1 for session in sessions if session.timed_out),
        "metrics": metrics.snapshot(),
        "thresholds": [result.to_dict() for result in threshold_results],
        "passed": passed,
        "phases": compute_phase_summaries(sessions, scenario),
        "server_peak_websocket_sessions": max(websocket_sessions) if websocket_sessions else None,
    }


def write_summary_json(output_path: Path, summary: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")


def format_threshold_table(results: list[ThresholdResult], passed: bool) -> str:
    lines: list[str] = []
    lines.append("Threshold Check")
    lines.append("-" * 72)
    lines.append(f"{'Series':<26}{'Expression':<18}{'Actual':>14}{'Status':>12}")
    lines.append("-" * 72)
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        lines.append(
            f"{result.threshold.series:<26}{result.threshold.expression:<18}"
            f"{_fmt(result.observed, 4):>14}{status:>12}"
        )
    lines.append("-" * 72)
    lines.append(f"Overall: {'PASS' if passed else 'FAIL'}")
    return "\n".join(lines)


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    summary: dict[str, Any],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    series = summary["metrics"]
    connection = series.get(CONNECTION_SUCCESS, {})
    message = series.get(MESSAGE_SUCCESS, {})
    latency = series.get(MESSAGE_LATENCY, {})

    lines: list[str] = []
    lines.append(f"# Chat WebSocket Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append(f"Result: **{'PASS' if summary['passed'] else 'FAIL'}**")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Overall")
    lines.append("")
    lines.append(
        "| Sessions | Connection success % | Message success % | "
        "Latency p50 ms | Latency p90 ms | Latency p95 ms | Latency p99 ms | Peak users |"
    )
    lines.append("|---:|---:|---:|---:|---:|---:|---:|---:|")
    lines.append(
        "| "
        f"{summary['sessions']} | "
        f"{_fmt(_pct(connection.get('rate')))} | "
        f"{_fmt(_pct(message.get('rate')))} | "
        f"{_fmt(latency.get('med'))} | "
        f"{_fmt(latency.get('p90'))} | "
        f"{_fmt(latency.get('p95'))} | "
        f"{_fmt(latency.get('p99'))} | "
        f"{summary['peak_active_users']} |"
    )
    lines.append("")
    lines.append("## Thresholds")
    lines.append("")
    lines.append("| Series | Expression | Observed | Status |")
    lines.append("|---|---|---:|---|")
    for item in summary["thresholds"]:
        lines.append(
            f"| {item['series']} | `{item['expression']}` | "
            f"{_fmt(item['observed'], 4)} | {'PASS' if item['passed'] else 'FAIL'} |"
        )
    lines.append("")
    lines.append("## Phases")
    lines.append("")
    lines.append(
        "| Phase | Sessions | Succeeded | Failed | Connection failed | Abandoned | "
        "Message success % | Latency p50 ms | Latency p95 ms |"
    )
    lines.append("|---|---:|---:|---:|---:|---:|---:|---:|---:|")
    for phase in summary["phases"]:
        outcomes = phase["outcomes"]
        lines.append(
            f"| {phase['phase']} | "
            f"{phase['sessions']} | "
            f"{outcomes[SessionOutcome.MESSAGE_SUCCEEDED.value]} | "
            f"{outcomes[SessionOutcome.MESSAGE_FAILED.value]} | "
            f"{outcomes[SessionOutcome.CONNECTION_FAILED.value]} | "
            f"{outcomes[SessionOutcome.ABANDONED.value]} | "
            f"{_fmt(_pct(phase['message_success_rate']))} | "
            f"{_fmt(phase['latency_ms_p50'])} | "
            f"{_fmt(phase['latency_ms_p95'])} |"
        )

    lines.append("")
    lines.append("## Counters")
    lines.append("")
    lines.append("| Series | Count |")
    lines.append("|---|---:|")
    for name, values in series.items():
        if values["type"] == "counter":
            lines.append(f"| {name} | {_fmt(values['count'], 0)} |")

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
