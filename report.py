from __future__ import annotations

import json
import math
import operator
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from config import ConfigurationError
from metrics_bridge import COUNTER_NAMES, MetricsSnapshot, percentile


DEFAULT_THRESHOLDS: dict[str, list[str]] = {
    "http_req_failed": ["rate<0.01"],
    "delivery_latency": ["p(95)<2000"],
    "sse_errors": ["count<10"],
    "json_parse_errors": ["count<5"],
    "missing_timestamps": ["count<100"],
    "sse_message_sent": ["count>5"],
    "sse_message_received": ["count>5"],
}

TREND_METRICS = {"delivery_latency"}
RATE_METRICS = {"http_req_failed"}

_EXPRESSION = re.compile(
    r"^\s*(count|rate|avg|min|max|med|p\((\d+(?:\.\d+)?)\))\s*"
    r"(<=|>=|==|!=|<|>)\s*(-?\d+(?:\.\d+)?)\s*$"
)
_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    aggregate: str
    op: str
    limit: float
    pct: Optional[float] = None


@dataclass
class ThresholdResult:
    metric: str
    expression: str
    observed: Optional[float]
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _allowed_aggregates(metric: str) -> set[str]:
    if metric in TREND_METRICS:
        return {"count", "avg", "min", "max", "med", "p"}
    if metric in RATE_METRICS:
        return {"rate", "count"}
    if metric in COUNTER_NAMES:
        return {"count", "rate"}
    raise ConfigurationError(f"Unknown metric in threshold: {metric}")


def parse_threshold(metric: str, expression: str) -> Threshold:
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(
            f"Invalid threshold {metric}: {expression!r}. Expected e.g. 'p(95)<2000' or 'count<10'."
        )
    aggregate = match.group(1)
    pct: Optional[float] = None
    if match.group(2) is not None:
        aggregate = "p"
        pct = float(match.group(2))
        if pct > 100:
            raise ConfigurationError(f"Percentile must be <= 100, got {pct}")
    if aggregate not in _allowed_aggregates(metric):
        raise ConfigurationError(
            f"Aggregate '{match.group(1)}' is not available for metric {metric}"
        )
    return Threshold(
        metric=metric,
        expression=expression.strip(),
        aggregate=aggregate,
        op=match.group(3),
        limit=float(match.group(4)),
        pct=pct,
    )


def parse_thresholds(definitions: Mapping[str, list[str]]) -> list[Threshold]:
    return [
        parse_threshold(metric, expression)
        for metric, expressions in definitions.items()
        for expression in expressions
    ]


def parse_threshold_option(value: str) -> tuple[str, str]:
    """Split a ``metric:expression`` command-line value."""
    metric, separator, expression = value.partition(":")
    if not separator or not metric.strip() or not expression.strip():
        raise ConfigurationError(
            f"Invalid threshold option {value!r}. Expected <metric>:<expression>."
        )
    parse_threshold(metric.strip(), expression.strip())
    return metric.strip(), expression.strip()


def observe(snapshot: MetricsSnapshot, threshold: Threshold) -> Optional[float]:
    if threshold.metric in TREND_METRICS:
        samples = snapshot.latency_samples_ms
        if threshold.aggregate == "p":
            if threshold.pct is None:
                raise ConfigurationError(
                    f"Percentile threshold {threshold.metric}: {threshold.expression} has no percentile"
                )
            return percentile(samples, threshold.pct)
        return snapshot.latency_summary()[threshold.aggregate]

    if threshold.metric in RATE_METRICS:
        if threshold.aggregate == "count":
            return float(snapshot.http_req_failures)
        return snapshot.http_req_failed_rate

    count = float(snapshot.counter(threshold.metric))
    if threshold.aggregate == "count":
        return count
    if snapshot.duration_s <= 0:
        return None
    return count / snapshot.duration_s


def evaluate_thresholds(
    snapshot: MetricsSnapshot, thresholds: list[Threshold]
) -> list[ThresholdResult]:
    results: list[ThresholdResult] = []
    for threshold in thresholds:
        observed = observe(snapshot, threshold)
        passed = True
        if observed is not None:
            passed = _OPERATORS[threshold.op](observed, threshold.limit)
        results.append(
            ThresholdResult(
                metric=threshold.metric,
                expression=threshold.expression,
                observed=observed,
                passed=passed,
            )
        )
    return results


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def build_summary(
    snapshot: MetricsSnapshot, results: list[ThresholdResult]
) -> dict[str, Any]:
    return {
        "passed": all(result.passed for result in results),
        "metrics": snapshot.to_dict(),
        "thresholds": [result.to_dict() for result in results],
    }


def write_summary_json(output_path: Path, summary: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    snapshot: MetricsSnapshot,
    results: list[ThresholdResult],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    passed = all(result.passed for result in results)
    lines: list[str] = []
    lines.append(f"# Bridge Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append(f"Result: **{'PASS' if passed else 'FAIL'}**")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Counters")
    lines.append("")
    lines.append("| Metric | Count | Per second |")
    lines.append("|---|---:|---:|")
    for name in COUNTER_NAMES:
        count = snapshot.counter(name)
        per_second = count / snapshot.duration_s if snapshot.duration_s > 0 else None
        lines.append(f"| {name} | {count} | {_fmt(per_second)} |")
    lines.append(
        f"| http_reqs | {snapshot.http_reqs} | "
        f"{_fmt(snapshot.http_reqs / snapshot.duration_s if snapshot.duration_s > 0 else None)} |"
    )
    failed_rate = snapshot.http_req_failed_rate
    lines.append("")
    lines.append(
        f"Failed publish rate: {_fmt(failed_rate * 100.0 if failed_rate is not None else None)} %"
    )
    lines.append("")
    lines.append("## Delivery Latency (ms)")
    lines.append("")
    latency = snapshot.latency_summary()
    lines.append("| Samples | Avg | Min | Med | p90 | p95 | p99 | Max |")
    lines.append("|---:|---:|---:|---:|---:|---:|---:|---:|")
    lines.append(
        "| "
        f"{int(latency['count'] or 0)} | "
        f"{_fmt(latency['avg'])} | "
        f"{_fmt(latency['min'])} | "
        f"{_fmt(latency['med'])} | "
        f"{_fmt(latency['p90'])} | "
        f"{_fmt(latency['p95'])} | "
        f"{_fmt(latency['p99'])} | "
        f"{_fmt(latency['max'])} |"
    )
    lines.append("")
    lines.append("## Thresholds")
    lines.append("")
    lines.append("| Metric | Threshold | Observed | Result |")
    lines.append("|---|---|---:|---|")
    for result in results:
        lines.append(
            f"| {result.metric} | `{result.expression}` | {_fmt(result.observed)} | "
            f"{'pass' if result.passed else 'FAIL'} |"
        )

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
