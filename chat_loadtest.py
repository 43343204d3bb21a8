from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml

from metrics import build_thresholds
from payloads import (
    default_channels,
    default_messages,
    load_messages_from_file,
    parse_message_types,
)
from runner import RunConfig, RunResult, run_load_test
from scenario import PRESETS, PresetDefaults, parse_phases, preset, preset_defaults
from session import ROUTING_TEMPLATES

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2


def _parse_threshold(value: str) -> tuple[str, str]:
    series, sep, expression = value.partition(":")
    if not sep or not series.strip() or not expression.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid threshold '{value}'. Expected series:expression, e.g. ws_message_success:rate>0.95"
        )
    try:
        build_thresholds({series.strip(): [expression.strip()]})
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return series.strip(), expression.strip()


def _parse_list(value: str) -> list[str]:
    items = [part.strip() for part in value.split(",") if part.strip()]
    if not items:
        raise argparse.ArgumentTypeError("list cannot be empty")
    return items


def load_thresholds_file(path: Path) -> dict[str, list[str]]:
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid thresholds file {path}: {exc}") from exc
    if isinstance(data, dict) and isinstance(data.get("thresholds"), dict):
        data = data["thresholds"]
    if not isinstance(data, dict):
        raise ValueError(f"Thresholds file {path} must map series names to expressions")
    thresholds: dict[str, list[str]] = {}
    for series, expressions in data.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, list):
            raise ValueError(f"Thresholds for {series} must be a string or a list of strings")
        thresholds[str(series)] = [str(expression) for expression in expressions]
    build_thresholds(thresholds)
    return thresholds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Phased load test for a chat server's STOMP-over-WebSocket endpoint."
    )

    parser.add_argument("--url", default="ws://localhost:8081/ws")
    parser.add_argument("--token", default="test-token", help="Bearer token sent on CONNECT and SEND")

    parser.add_argument(
        "--scenario",
        choices=sorted(PRESETS),
        default="advanced",
        help="Named load shape (ignored when --phases is given)",
    )
    parser.add_argument(
        "--phases",
        default=None,
        help="Custom shape: duration:start:end[:step],... e.g. 1m:0:10,2m:10:10,30s:30:30:step,1m:30:0",
    )

    parser.add_argument("--routing", choices=sorted(ROUTING_TEMPLATES), default="topic")
    parser.add_argument("--accept-version", default="1.1")
    parser.add_argument("--heart-beat", default="0,0")
    parser.add_argument("--settle-delay-s", type=float, default=0.5)
    parser.add_argument(
        "--echo-timeout-s",
        type=float,
        default=None,
        help="Fail a session whose echo has not arrived within this many seconds; "
        "by default a session waits until the scenario ends.",
    )
    parser.add_argument("--iteration-pause-s", type=float, default=1.0)
    parser.add_argument("--tick-s", type=float, default=0.5)
    parser.add_argument("--open-timeout-s", type=float, default=10.0)

    parser.add_argument("--channels", type=_parse_list, default=None, help="Comma-separated channel ids")
    parser.add_argument("--channel-count", type=int, default=None, help="Defaults to the preset's pool size")
    parser.add_argument("--message-file", type=Path, default=None)
    parser.add_argument("--message-count", type=int, default=None, help="Defaults to the preset's pool size")
    parser.add_argument(
        "--message-types",
        default="TALK",
        help="Comma-separated mix of TALK, IMAGE, FILE, SYSTEM",
    )
    parser.add_argument(
        "--unique-content",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Stamp every message with a random suffix so echoes are never ambiguous "
        "(on by default for the latency preset)",
    )

    parser.add_argument(
        "--threshold",
        dest="threshold_overrides",
        type=_parse_threshold,
        action="append",
        default=[],
        help="series:expression, repeatable; replaces the defaults for that series",
    )
    parser.add_argument("--thresholds", dest="thresholds_file", type=Path, default=None)

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--metrics-url", default=None, help="Prometheus text endpoint to poll")
    parser.add_argument("--poll-interval-s", type=float, default=1.0)
    parser.add_argument(
        "--server-metric",
        dest="extra_server_metrics",
        action="append",
        default=[],
        help="Additional Prometheus sample name to record, repeatable",
    )
    parser.add_argument("--log-level", default="INFO")

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.settle_delay_s < 0 or args.iteration_pause_s < 0:
        parser.error("--settle-delay-s and --iteration-pause-s must be >= 0")
    if args.echo_timeout_s is not None and args.echo_timeout_s <= 0:
        parser.error("--echo-timeout-s must be > 0 when set")
    if args.tick_s <= 0 or args.open_timeout_s <= 0 or args.poll_interval_s <= 0:
        parser.error("--tick-s, --open-timeout-s and --poll-interval-s must be > 0")
    if (args.channel_count is not None and args.channel_count <= 0) or (
        args.message_count is not None and args.message_count <= 0
    ):
        parser.error("--channel-count and --message-count must be > 0")
    if args.message_file is not None and not args.message_file.exists():
        parser.error(f"--message-file not found: {args.message_file}")
    if args.thresholds_file is not None and not args.thresholds_file.exists():
        parser.error(f"--thresholds not found: {args.thresholds_file}")
    try:
        parse_message_types(args.message_types)
        if args.phases:
            parse_phases(args.phases)
    except ValueError as exc:
        parser.error(str(exc))


def _resolve_thresholds(args: argparse.Namespace, defaults: PresetDefaults) -> dict[str, list[str]]:
    if args.thresholds_file is not None:
        thresholds = load_thresholds_file(args.thresholds_file)
    else:
        thresholds = defaults.threshold_map()
    overridden: set[str] = set()
    for series, expression in args.threshold_overrides:
        if series not in overridden:
            thresholds[series] = []
            overridden.add(series)
        thresholds[series].append(expression)
    return thresholds


def config_from_args(args: argparse.Namespace) -> RunConfig:
    scenario = parse_phases(args.phases) if args.phases else preset(args.scenario)
    defaults = preset_defaults(None if args.phases else args.scenario)
    messages = (
        load_messages_from_file(args.message_file)
        if args.message_file
        else default_messages(args.message_count or defaults.message_count)
    )
    unique_content = defaults.unique_content if args.unique_content is None else args.unique_content
    return RunConfig(
        url=args.url,
        token=args.token,
        scenario=scenario,
        routing=args.routing,
        accept_version=args.accept_version,
        heart_beat=args.heart_beat,
        settle_delay_s=args.settle_delay_s,
        echo_timeout_s=args.echo_timeout_s,
        iteration_pause_s=args.iteration_pause_s,
        tick_s=args.tick_s,
        open_timeout_s=args.open_timeout_s,
        channels=args.channels or default_channels(args.channel_count or defaults.channel_count),
        messages=messages,
        message_types=parse_message_types(args.message_types),
        unique_content=unique_content,
        thresholds=_resolve_thresholds(args, defaults),
        output_dir=args.output_dir,
        run_name=args.run_name or scenario.name,
        seed=args.seed,
        metrics_url=args.metrics_url,
        poll_interval_s=args.poll_interval_s,
        extra_server_metrics=args.extra_server_metrics,
    )


async def _run_from_args(args: argparse.Namespace) -> RunResult:
    return await run_load_test(config_from_args(args))


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        result = asyncio.run(_run_from_args(args))
    except KeyboardInterrupt:
        return 130
    except (OSError, ValueError) as exc:
        logging.error("fatal: %s", exc)
        return EXIT_SCRIPT_ERROR
    print(f"Run complete. Outputs written to: {result.output_dir}")
    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


if __name__ == "__main__":
    sys.exit(main())
