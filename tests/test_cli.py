from __future__ import annotations

from pathlib import Path

import pytest

import runner
from chat_loadtest import (
    EXIT_PASS,
    EXIT_SCRIPT_ERROR,
    EXIT_THRESHOLD_BREACH,
    build_parser,
    config_from_args,
    load_thresholds_file,
    main,
)
from conftest import ChatServerStub, refused
from payloads import MessageType


def _config(argv: list[str]):
    return config_from_args(build_parser().parse_args(argv))


def test_defaults_use_advanced_preset_and_k6_thresholds():
    config = _config([])
    assert config.scenario.name == "advanced"
    assert config.run_name == "advanced"
    assert config.channels == [f"channel-{i}" for i in range(1, 6)]
    assert len(config.messages) == 10
    assert config.thresholds == {
        "ws_connection_success": ["rate>0.95"],
        "ws_message_success": ["rate>0.95"],
        "ws_message_latency": ["p(95)<1000"],
    }
    assert config.echo_timeout_s is None


def test_custom_phases_and_payload_options(tmp_path: Path):
    message_file = tmp_path / "messages.jsonl"
    message_file.write_text('{"content": "안녕하세요"}\nplain line\n\n', encoding="utf-8")

    config = _config(
        [
            "--phases", "10s:0:5,20s:5:5,5s:15:15:step",
            "--channels", "1,2",
            "--message-file", str(message_file),
            "--message-types", "talk,image",
            "--routing", "exchange",
            "--unique-content",
        ]
    )

    assert config.scenario.total_duration_s == 35
    assert config.scenario.peak_concurrency == 15
    assert config.channels == ["1", "2"]
    assert config.messages == ["안녕하세요", "plain line"]
    assert config.message_types == [MessageType.TALK, MessageType.IMAGE]
    assert config.session_settings().routing == "exchange"
    assert config.unique_content


def test_threshold_flag_replaces_that_series_only():
    config = _config(
        [
            "--threshold", "ws_message_latency:p(99)<2000",
            "--threshold", "ws_message_latency:avg<500",
            "--threshold", "error_count:count<5",
        ]
    )
    assert config.thresholds["ws_message_latency"] == ["p(99)<2000", "avg<500"]
    assert config.thresholds["error_count"] == ["count<5"]
    assert config.thresholds["ws_connection_success"] == ["rate>0.95"]


def test_thresholds_file_accepts_top_level_key(tmp_path: Path):
    path = tmp_path / "thresholds.yaml"
    path.write_text(
        "thresholds:\n"
        "  ws_message_success: rate>0.99\n"
        "  ws_message_latency:\n"
        "    - p(95)<800\n"
        "    - max<5000\n",
        encoding="utf-8",
    )
    assert load_thresholds_file(path) == {
        "ws_message_success": ["rate>0.99"],
        "ws_message_latency": ["p(95)<800", "max<5000"],
    }
    config = _config(["--thresholds", str(path)])
    assert "ws_connection_success" not in config.thresholds


def test_thresholds_file_rejects_bad_expressions(tmp_path: Path):
    path = tmp_path / "thresholds.yaml"
    path.write_text("ws_message_success: very high\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_thresholds_file(path)


@pytest.mark.parametrize(
    "argv",
    [
        ["--phases", "1m:0"],
        ["--threshold", "ws_message_success"],
        ["--message-types", "VIDEO"],
        ["--tick-s", "0"],
        ["--echo-timeout-s", "-1"],
        ["--scenario", "nope"],
    ],
)
def test_invalid_arguments_exit_with_usage_error(argv: list[str]):
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    assert excinfo.value.code == 2


def _smoke_argv(tmp_path: Path) -> list[str]:
    return [
        "--phases", "0.4s:1:1",
        "--settle-delay-s", "0",
        "--iteration-pause-s", "0.05",
        "--tick-s", "0.05",
        "--output-dir", str(tmp_path),
        "--threshold", "ws_message_success:rate>0.5",
        "--log-level", "WARNING",
    ]


def test_main_exit_codes_follow_threshold_result(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(runner, "websocket_connector", lambda open_timeout_s: ChatServerStub().connect)
    assert main(_smoke_argv(tmp_path / "ok")) == EXIT_PASS

    monkeypatch.setattr(runner, "websocket_connector", lambda open_timeout_s: refused)
    assert main(_smoke_argv(tmp_path / "down")) == EXIT_THRESHOLD_BREACH


def test_malformed_thresholds_file_is_a_script_error(tmp_path: Path):
    path = tmp_path / "thresholds.yaml"
    path.write_text("ws_message_success: [rate>0.95\n  - :\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid thresholds file"):
        load_thresholds_file(path)
    assert main(["--thresholds", str(path), "--log-level", "CRITICAL"]) == EXIT_SCRIPT_ERROR


def test_latency_preset_brings_its_own_thresholds_and_pools():
    config = _config(["--scenario", "latency"])
    assert config.thresholds == {
        "ws_connection_success": ["rate>0.99"],
        "ws_message_success": ["rate>0.99"],
        "ws_message_latency": ["p(95)<1000"],
        "error_count": ["count<10"],
    }
    assert config.channels == ["channel-1", "channel-2", "channel-3"]
    assert config.unique_content


def test_heavy_preset_checks_error_count_and_uses_larger_pools():
    config = _config(["--scenario", "heavy"])
    assert config.thresholds["error_count"] == ["count<100"]
    assert config.thresholds["ws_message_success"] == ["rate>0.95"]
    assert len(config.channels) == 20
    assert len(config.messages) == 50


def test_flags_override_preset_defaults(tmp_path: Path):
    config = _config(
        [
            "--scenario", "latency",
            "--no-unique-content",
            "--channel-count", "2",
            "--threshold", "error_count:count<50",
        ]
    )
    assert not config.unique_content
    assert config.channels == ["channel-1", "channel-2"]
    assert config.thresholds["error_count"] == ["count<50"]
    assert config.thresholds["ws_message_success"] == ["rate>0.99"]

    path = tmp_path / "thresholds.yaml"
    path.write_text("ws_message_latency: p(95)<2000\n", encoding="utf-8")
    config = _config(["--scenario", "latency", "--thresholds", str(path)])
    assert config.thresholds == {"ws_message_latency": ["p(95)<2000"]}


def test_custom_phases_use_generic_defaults():
    config = _config(["--phases", "10s:1:1"])
    assert "error_count" not in config.thresholds
    assert len(config.channels) == 5
    assert not config.unique_content
