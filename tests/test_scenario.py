from __future__ import annotations

import pytest

from scenario import (
    PRESETS,
    PRESET_DEFAULTS,
    Phase,
    Scenario,
    parse_duration,
    parse_phases,
    preset,
    preset_defaults,
    ramp_up,
    recovery,
    spike,
    steady,
    target_concurrency,
)


def test_linear_phase_interpolates_between_start_and_end():
    scenario = Scenario("ramp", (Phase(duration_s=60, start=0, end=10),))
    assert target_concurrency(scenario, 0) == 0
    assert target_concurrency(scenario, 30) == 5
    assert target_concurrency(scenario, 60) == 10


def test_step_phase_holds_its_target_for_the_whole_phase():
    scenario = Scenario("spike", (Phase(duration_s=30, start=30, end=30, step=True),))
    for t in (0, 0.1, 7.5, 15, 29.9, 30):
        assert scenario.target(t) == 30


def test_step_phase_jumps_immediately_even_from_a_lower_level():
    scenario = Scenario("jump", (steady(10, 5), Phase(duration_s=10, start=5, end=40, step=True)))
    assert scenario.target(9.99) == 5
    assert scenario.target(10) == 40
    assert scenario.target(15) == 40


def test_phases_are_contiguous_by_cumulative_offset():
    scenario = Scenario("shape", (ramp_up(60, 10), steady(120, 10), spike(30, 30), recovery(60, 30)))
    assert scenario.offsets() == [0.0, 60.0, 180.0, 210.0]
    assert scenario.total_duration_s == 270.0
    assert scenario.phase_name(59.9) == "ramp_up"
    assert scenario.phase_name(60) == "steady"
    assert scenario.phase_name(200) == "spike"
    assert scenario.target(240) == pytest.approx(15)
    assert scenario.target(270) == 0
    assert scenario.peak_concurrency == 30


def test_time_outside_the_scenario():
    scenario = Scenario("s", (steady(10, 3),))
    assert scenario.target(10.5) == 0
    assert scenario.phase_name(11) == "done"
    with pytest.raises(ValueError):
        scenario.target(-1)


def test_presets_reproduce_observed_shapes():
    advanced = preset("advanced")
    assert [phase.name for phase in advanced.phases] == ["ramp_up", "steady", "spike", "recovery"]
    assert advanced.total_duration_s == 270
    heavy = preset("heavy")
    assert heavy.total_duration_s == 480
    assert heavy.peak_concurrency == 300
    assert preset("latency").target(30) == 100
    assert set(PRESETS) >= {"basic", "websocket", "v2", "stages", "latency", "advanced", "heavy"}
    with pytest.raises(ValueError):
        preset("nope")


@pytest.mark.parametrize(
    "value, seconds",
    [("90", 90.0), ("30s", 30.0), ("2m", 120.0), ("1m30s", 90.0), ("1h", 3600.0), ("500ms", 0.5)],
)
def test_parse_duration(value, seconds):
    assert parse_duration(value) == pytest.approx(seconds)


@pytest.mark.parametrize("value", ["", "abc", "1x", "m5"])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_parse_phases_builds_a_scenario():
    scenario = parse_phases("1m:0:10, 2m:10:10, 30s:30:30:step, 1m:30:0")
    assert [phase.duration_s for phase in scenario.phases] == [60, 120, 30, 60]
    assert [phase.step for phase in scenario.phases] == [False, False, True, False]
    assert scenario.target(30) == 5


@pytest.mark.parametrize("value", ["1m:0", "1m:0:10:ramp", "1m:a:10", "0s:0:10", "1m:-1:10"])
def test_parse_phases_rejects_bad_entries(value):
    with pytest.raises(ValueError):
        parse_phases(value)


def test_every_preset_has_defaults():
    assert set(PRESET_DEFAULTS) == set(PRESETS)
    assert PRESET_DEFAULTS["websocket"].thresholds["ws_message_latency"] == ["p(95)<500"]
    assert PRESET_DEFAULTS["basic"].channel_count == 1


def test_defaults_for_custom_shapes_are_generic():
    generic = {
        "ws_connection_success": ["rate>0.95"],
        "ws_message_success": ["rate>0.95"],
        "ws_message_latency": ["p(95)<1000"],
    }
    assert preset_defaults(None).thresholds == generic
    assert preset_defaults("custom").thresholds == generic
    assert preset_defaults("advanced").threshold_map() == generic

    copy = preset_defaults("latency").threshold_map()
    copy["error_count"].append("count<1")
    assert PRESET_DEFAULTS["latency"].thresholds["error_count"] == ["count<10"]
