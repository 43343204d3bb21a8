from __future__ import annotations

import math
import re
import statistics
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

CONNECTION_SUCCESS = "ws_connection_success"
MESSAGE_SUCCESS = "ws_message_success"
MESSAGE_LATENCY = "ws_message_latency"
CONNECTION_ATTEMPTS = "ws_connection_attempts"
MESSAGES_SENT = "ws_messages_sent"
ERROR_COUNT = "error_count"

RATE = "rate"
TREND = "trend"
COUNTER = "counter"


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


class SeriesTypeError(TypeError):
    pass


@dataclass
class _Series:
    kind: str
    passes: int = 0
    fails: int = 0
    total: float = 0.0
    values: list[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class MetricsAggregator:
    """Append-only named series shared by every session of a run.

    Each series carries its own lock, so appenders to different series never
    contend; the registry lock only guards series creation.
    """

    def __init__(self) -> None:
        self._series: dict[str, _Series] = {}
        self._registry_lock = threading.Lock()

    def _get(self, name: str, kind: str) -> _Series:
        series = self._series.get(name)
        if series is None:
            with self._registry_lock:
                series = self._series.get(name)
                if series is None:
                    series = _Series(kind=kind)
                    self._series[name] = series
        if series.kind != kind:
            raise SeriesTypeError(f"series {name!r} is a {series.kind}, not a {kind}")
        return series

    def record_boolean(self, name: str, outcome: bool) -> None:
        series = self._get(name, RATE)
        with series.lock:
            if outcome:
                series.passes += 1
            else:
                series.fails += 1

    def record_value(self, name: str, value: float) -> None:
        series = self._get(name, TREND)
        with series.lock:
            series.values.append(float(value))

    def add(self, name: str, value: float = 1) -> None:
        series = self._get(name, COUNTER)
        with series.lock:
            series.total += value

    def _lookup(self, name: str, kind: str) -> Optional[_Series]:
        series = self._series.get(name)
        if series is not None and series.kind != kind:
            raise SeriesTypeError(f"series {name!r} is a {series.kind}, not a {kind}")
        return series

    def kind(self, name: str) -> Optional[str]:
        series = self._series.get(name)
        return series.kind if series is not None else None

    def names(self) -> list[str]:
        with self._registry_lock:
            return list(self._series)

    def rate(self, name: str) -> Optional[float]:
        passes, fails = self.totals(name)
        if passes + fails == 0:
            return None
        return passes / (passes + fails)

    def totals(self, name: str) -> tuple[int, int]:
        series = self._lookup(name, RATE)
        if series is None:
            return 0, 0
        with series.lock:
            return series.passes, series.fails

    def values(self, name: str) -> list[float]:
        series = self._lookup(name, TREND)
        if series is None:
            return []
        with series.lock:
            return list(series.values)

    def percentile(self, name: str, pct: float) -> Optional[float]:
        return percentile(self.values(name), pct)

    def count(self, name: str) -> float:
        series = self._lookup(name, COUNTER)
        if series is None:
            return 0.0
        with series.lock:
            return series.total

    def snapshot(self) -> dict[str, dict[str, Any]]:
        result: dict[str, dict[str, Any]] = {}
        for name in sorted(self.names()):
            kind = self._series[name].kind
            if kind == RATE:
                passes, fails = self.totals(name)
                result[name] = {
                    "type": RATE,
                    "passes": passes,
                    "fails": fails,
                    "rate": self.rate(name),
                }
            elif kind == TREND:
                values = self.values(name)
                result[name] = {
                    "type": TREND,
                    "count": len(values),
                    "min": float(min(values)) if values else None,
                    "avg": float(statistics.fmean(values)) if values else None,
                    "med": percentile(values, 50.0),
                    "max": float(max(values)) if values else None,
                    "p90": percentile(values, 90.0),
                    "p95": percentile(values, 95.0),
                    "p99": percentile(values, 99.0),
                }
            else:
                result[name] = {"type": COUNTER, "count": self.count(name)}
        return result


# ---- thresholds ----

_THRESHOLD_RE = re.compile(
    r"^\s*(?P<agg>rate|count|avg|min|max|med|p\((?P<pct>\d+(?:\.\d+)?)\))\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*(?P<value>-?\d+(?:\.\d+)?)\s*$"
)

_OPERATORS = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
}


@dataclass(frozen=True)
class Threshold:
    series: str
    expression: str
    aggregation: str
    operator: str
    limit: float
    pct: Optional[float] = None

    @classmethod
    def parse(cls, series: str, expression: str) -> "Threshold":
        match = _THRESHOLD_RE.match(expression)
        if match is None:
            raise ValueError(
                f"Invalid threshold expression for {series}: {expression!r}. "
                "Expected e.g. rate>0.95, p(95)<1000, count<10."
            )
        pct = match.group("pct")
        aggregation = "p" if pct is not None else match.group("agg")
        return cls(
            series=series,
            expression=expression.strip(),
            aggregation=aggregation,
            operator=match.group("op"),
            limit=float(match.group("value")),
            pct=float(pct) if pct is not None else None,
        )

    def observe(self, metrics: MetricsAggregator) -> Optional[float]:
        kind = metrics.kind(self.series)
        if kind is None:
            return 0.0 if self.aggregation == "count" else None
        if self.aggregation == "rate":
            return metrics.rate(self.series) if kind == RATE else None
        if self.aggregation == "count":
            if kind == COUNTER:
                return metrics.count(self.series)
            if kind == RATE:
                return float(sum(metrics.totals(self.series)))
            return float(len(metrics.values(self.series)))
        if kind != TREND:
            return None
        values = metrics.values(self.series)
        if not values:
            return None
        if self.aggregation == "p":
            assert self.pct is not None
            return percentile(values, self.pct)
        if self.aggregation == "avg":
            return float(statistics.fmean(values))
        if self.aggregation == "min":
            return float(min(values))
        if self.aggregation == "max":
            return float(max(values))
        return percentile(values, 50.0)

    def evaluate(self, metrics: MetricsAggregator) -> "ThresholdResult":
        observed = self.observe(metrics)
        passed = observed is not None and _OPERATORS[self.operator](observed, self.limit)
        return ThresholdResult(threshold=self, observed=observed, passed=passed)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: Optional[float]
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "series": self.threshold.series,
            "expression": self.threshold.expression,
            "observed": self.observed,
            "passed": self.passed,
        }


DEFAULT_THRESHOLDS = {
    CONNECTION_SUCCESS: ["rate>0.95"],
    MESSAGE_SUCCESS: ["rate>0.95"],
    MESSAGE_LATENCY: ["p(95)<1000"],
}


def build_thresholds(expressions_by_series: dict[str, list[str]]) -> list[Threshold]:
    thresholds: list[Threshold] = []
    for series, expressions in expressions_by_series.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            thresholds.append(Threshold.parse(series, str(expression)))
    return thresholds


def evaluate_thresholds(
    metrics: MetricsAggregator, thresholds: list[Threshold]
) -> tuple[bool, list[ThresholdResult]]:
    results = [threshold.evaluate(metrics) for threshold in thresholds]
    return all(result.passed for result in results), results
