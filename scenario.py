from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from metrics import (
    CONNECTION_SUCCESS,
    DEFAULT_THRESHOLDS,
    ERROR_COUNT,
    MESSAGE_LATENCY,
    MESSAGE_SUCCESS,
)

_DURATION_RE = re.compile(r"(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Parse ``90``, ``30s``, ``2m`` or ``1m30s`` into seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("duration cannot be empty")
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group("value")) * _UNIT_SECONDS[match.group("unit")]
        position = match.end()
    if position != len(text):
        raise ValueError(f"Invalid duration: {value!r}. Expected e.g. 30s, 2m, 1m30s.")
    return total


@dataclass(frozen=True)
class Phase:
    duration_s: float
    start: int
    end: int
    step: bool = False
    name: str = ""

    def __post_init__(self) -> None:
        if self.duration_s <= 0:
            raise ValueError(f"phase duration must be > 0, got {self.duration_s}")
        if self.start < 0 or self.end < 0:
            raise ValueError(f"phase concurrency must be >= 0, got {self.start}, {self.end}")

    def target_at(self, offset_s: float) -> float:
        if self.step:
            return float(self.end)
        fraction = min(max(offset_s / self.duration_s, 0.0), 1.0)
        return self.start + (self.end - self.start) * fraction


@dataclass(frozen=True)
class Scenario:
    name: str
    phases: tuple[Phase, ...]

    def __post_init__(self) -> None:
        if not self.phases:
            raise ValueError(f"scenario {self.name!r} has no phases")

    @property
    def total_duration_s(self) -> float:
        return float(sum(phase.duration_s for phase in self.phases))

    @property
    def peak_concurrency(self) -> int:
        return max(max(phase.start, phase.end) for phase in self.phases)

    def offsets(self) -> list[float]:
        offsets: list[float] = []
        elapsed = 0.0
        for phase in self.phases:
            offsets.append(elapsed)
            elapsed += phase.duration_s
        return offsets

    def locate(self, t: float) -> Optional[tuple[int, Phase, float]]:
        """Return ``(index, phase, phase_start)`` for elapsed time ``t``.

        The final instant of the scenario belongs to the last phase; anything
        later is outside the scenario.
        """
        if t < 0:
            raise ValueError(f"elapsed time must be >= 0, got {t}")
        offsets = self.offsets()
        for index, (phase, phase_start) in enumerate(zip(self.phases, offsets)):
            if phase_start <= t < phase_start + phase.duration_s:
                return index, phase, phase_start
        if t == self.total_duration_s:
            return len(self.phases) - 1, self.phases[-1], offsets[-1]
        return None

    def target(self, t: float) -> float:
        located = self.locate(t)
        if located is None:
            return 0.0
        _, phase, phase_start = located
        return phase.target_at(t - phase_start)

    def phase_name(self, t: float) -> str:
        located = self.locate(t)
        if located is None:
            return "done"
        index, phase, _ = located
        return phase.name or f"phase_{index + 1}"


def target_concurrency(scenario: Scenario, t: float) -> float:
    return scenario.target(t)


# ---- canonical shapes ----


def ramp_up(duration_s: float, target: int, start: int = 0) -> Phase:
    return Phase(duration_s=duration_s, start=start, end=target, name="ramp_up")


def steady(duration_s: float, users: int) -> Phase:
    return Phase(duration_s=duration_s, start=users, end=users, name="steady")


def spike(duration_s: float, users: int) -> Phase:
    return Phase(duration_s=duration_s, start=users, end=users, step=True, name="spike")


def recovery(duration_s: float, start: int, target: int = 0) -> Phase:
    return Phase(duration_s=duration_s, start=start, end=target, name="recovery")


PRESETS: dict[str, Callable[[], Scenario]] = {
    "basic": lambda: Scenario("basic", (steady(30, 1),)),
    "websocket": lambda: Scenario(
        "websocket", (ramp_up(60, 10), steady(120, 10), recovery(60, 10))
    ),
    "stages": lambda: Scenario("stages", (ramp_up(30, 50), steady(60, 50), recovery(30, 50))),
    "v2": lambda: Scenario("v2", (ramp_up(60, 50), steady(180, 50), recovery(60, 50))),
    "latency": lambda: Scenario("latency", (steady(60, 100),)),
    "advanced": lambda: Scenario(
        "advanced", (ramp_up(60, 10), steady(120, 10), spike(30, 30), recovery(60, 30))
    ),
    "heavy": lambda: Scenario(
        "heavy", (ramp_up(120, 200), steady(180, 200), spike(60, 300), recovery(120, 300))
    ),
}


def preset(name: str) -> Scenario:
    try:
        return PRESETS[name]()
    except KeyError as exc:
        raise ValueError(
            f"Unknown scenario preset: {name}. Expected one of {', '.join(PRESETS)}."
        ) from exc


@dataclass(frozen=True)
class PresetDefaults:
    """Thresholds and pool settings a preset is judged and fed with."""

    thresholds: dict[str, list[str]] = field(default_factory=dict)
    channel_count: int = 5
    message_count: int = 10
    unique_content: bool = False

    def threshold_map(self) -> dict[str, list[str]]:
        return {name: list(exprs) for name, exprs in self.thresholds.items()}


def _thresholds(**overrides: list[str]) -> dict[str, list[str]]:
    merged = {name: list(exprs) for name, exprs in DEFAULT_THRESHOLDS.items()}
    for name, exprs in overrides.items():
        merged[name] = list(exprs)
    return merged


PRESET_DEFAULTS: dict[str, PresetDefaults] = {
    "basic": PresetDefaults(_thresholds(), channel_count=1),
    "websocket": PresetDefaults(_thresholds(**{MESSAGE_LATENCY: ["p(95)<500"]})),
    "stages": PresetDefaults(_thresholds()),
    "v2": PresetDefaults(_thresholds()),
    "latency": PresetDefaults(
        _thresholds(
            **{
                CONNECTION_SUCCESS: ["rate>0.99"],
                MESSAGE_SUCCESS: ["rate>0.99"],
                ERROR_COUNT: ["count<10"],
            }
        ),
        channel_count=3,
        unique_content=True,
    ),
    "advanced": PresetDefaults(_thresholds()),
    "heavy": PresetDefaults(
        _thresholds(**{ERROR_COUNT: ["count<100"]}),
        channel_count=20,
        message_count=50,
    ),
}


def preset_defaults(name: Optional[str]) -> PresetDefaults:
    """Defaults for a named preset; custom phase shapes get the generic ones."""
    if name is None or name not in PRESET_DEFAULTS:
        return PresetDefaults(_thresholds())
    return PRESET_DEFAULTS[name]


def parse_phases(value: str, name: str = "custom") -> Scenario:
    """Parse ``duration:start:end[:step]`` entries separated by commas."""
    phases: list[Phase] = []
    for index, part in enumerate(p.strip() for p in value.split(",")):
        if not part:
            continue
        fields = [item.strip() for item in part.split(":")]
        if len(fields) not in (3, 4) or (len(fields) == 4 and fields[3] != "step"):
            raise ValueError(
                f"Invalid phase '{part}'. Expected duration:start:end or duration:start:end:step."
            )
        try:
            start = int(fields[1])
            end = int(fields[2])
        except ValueError as exc:
            raise ValueError(f"Invalid concurrency in phase '{part}'.") from exc
        phases.append(
            Phase(
                duration_s=parse_duration(fields[0]),
                start=start,
                end=end,
                step=len(fields) == 4,
                name=f"phase_{index + 1}",
            )
        )
    return Scenario(name, tuple(phases))
