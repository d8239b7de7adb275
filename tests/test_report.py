from __future__ import annotations

import json
from pathlib import Path

import pytest

from config import ConfigurationError
from metrics_bridge import COUNTER_NAMES, BridgeMetrics, MetricsSnapshot
from report import (
    DEFAULT_THRESHOLDS,
    Threshold,
    build_summary,
    evaluate_thresholds,
    parse_threshold,
    parse_threshold_option,
    parse_thresholds,
    write_summary_json,
    write_summary_markdown,
)


def _snapshot(
    counters: dict[str, int],
    latencies: list[float],
    http_reqs: int = 0,
    http_req_failures: int = 0,
    duration_s: float = 10.0,
) -> MetricsSnapshot:
    return MetricsSnapshot(
        duration_s=duration_s,
        counters={name: counters.get(name, 0) for name in COUNTER_NAMES},
        http_reqs=http_reqs,
        http_req_failures=http_req_failures,
        latency_samples_ms=latencies,
    )


def _healthy_snapshot() -> MetricsSnapshot:
    return _snapshot(
        {"sse_message_sent": 100, "sse_message_received": 100, "sse_errors": 1},
        latencies=[float(value) for value in range(10, 110)],
        http_reqs=100,
        http_req_failures=0,
    )


def test_default_thresholds_parse() -> None:
    thresholds = parse_thresholds(DEFAULT_THRESHOLDS)

    assert len(thresholds) == 7
    latency = next(t for t in thresholds if t.metric == "delivery_latency")
    assert (latency.aggregate, latency.pct, latency.op, latency.limit) == ("p", 95.0, "<", 2000.0)


@pytest.mark.parametrize(
    "metric, expression",
    [
        ("delivery_latency", "p95<2000"),
        ("delivery_latency", "p(101)<5"),
        ("delivery_latency", "rate<1"),
        ("sse_errors", "p(95)<1"),
        ("sse_errors", "count<<1"),
        ("sse_errors", "count<"),
        ("unknown_metric", "count<1"),
    ],
)
def test_invalid_thresholds_are_configuration_errors(metric: str, expression: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_threshold(metric, expression)


def test_parse_threshold_option() -> None:
    assert parse_threshold_option("delivery_latency:p(99)<5000") == (
        "delivery_latency",
        "p(99)<5000",
    )
    with pytest.raises(ConfigurationError):
        parse_threshold_option("delivery_latency")


def test_healthy_run_passes_default_thresholds() -> None:
    results = evaluate_thresholds(_healthy_snapshot(), parse_thresholds(DEFAULT_THRESHOLDS))

    assert all(result.passed for result in results)
    observed = {result.metric: result.observed for result in results}
    assert observed["http_req_failed"] == 0.0
    assert observed["sse_message_sent"] == 100.0
    assert observed["delivery_latency"] == pytest.approx(104.05)


def test_failures_are_reported_per_threshold() -> None:
    snapshot = _snapshot(
        {"sse_message_sent": 3, "sse_errors": 12, "json_parse_errors": 1},
        latencies=[2500.0] * 20,
        http_reqs=10,
        http_req_failures=7,
    )

    results = evaluate_thresholds(snapshot, parse_thresholds(DEFAULT_THRESHOLDS))
    failed = {result.metric for result in results if not result.passed}

    assert failed == {
        "http_req_failed",
        "delivery_latency",
        "sse_errors",
        "sse_message_sent",
        "sse_message_received",
    }


def test_threshold_without_samples_does_not_fail() -> None:
    snapshot = _snapshot({}, latencies=[], http_reqs=0)
    thresholds = [
        parse_threshold("delivery_latency", "p(95)<2000"),
        parse_threshold("http_req_failed", "rate<0.01"),
    ]

    results = evaluate_thresholds(snapshot, thresholds)

    assert [result.observed for result in results] == [None, None]
    assert all(result.passed for result in results)


def test_counter_rate_is_per_second() -> None:
    snapshot = _snapshot({"sse_message_sent": 50}, latencies=[], duration_s=10.0)

    (result,) = evaluate_thresholds(snapshot, [parse_threshold("sse_message_sent", "rate>=5")])

    assert result.observed == 5.0
    assert result.passed


def test_trend_aggregates() -> None:
    snapshot = _snapshot({}, latencies=[10.0, 20.0, 30.0, 40.0])
    thresholds = [
        parse_threshold("delivery_latency", "avg==25"),
        parse_threshold("delivery_latency", "min==10"),
        parse_threshold("delivery_latency", "max==40"),
        parse_threshold("delivery_latency", "med==25"),
        parse_threshold("delivery_latency", "count==4"),
    ]

    assert all(result.passed for result in evaluate_thresholds(snapshot, thresholds))


def test_percentile_threshold_without_percentile_is_rejected() -> None:
    threshold = Threshold(
        metric="delivery_latency", expression="p()<5", aggregate="p", op="<", limit=5.0
    )

    with pytest.raises(ConfigurationError):
        evaluate_thresholds(_healthy_snapshot(), [threshold])


def test_latency_samples_are_capped_with_exact_totals() -> None:
    metrics = BridgeMetrics(max_latency_samples=10)
    for value in range(1, 1001):
        metrics.observe_latency(float(value))

    snapshot = metrics.snapshot(1.0)

    assert len(snapshot.latency_samples_ms) == 10
    assert set(snapshot.latency_samples_ms) <= {float(value) for value in range(1, 1001)}
    summary = snapshot.latency_summary()
    assert summary["count"] == 1000.0
    assert summary["avg"] == 500.5
    assert (summary["min"], summary["max"]) == (1.0, 1000.0)
    count = evaluate_thresholds(snapshot, [parse_threshold("delivery_latency", "count==1000")])
    assert count[0].passed
    assert "delivery_latency_ms_count 1000.0" in metrics.exposition()


def test_metrics_snapshot_from_bridge_metrics() -> None:
    metrics = BridgeMetrics()
    metrics.inc("sse_message_sent", 3)
    metrics.inc("sse_errors")
    metrics.record_http_request(True)
    metrics.record_http_request(False)
    metrics.observe_latency(12.0)

    snapshot = metrics.snapshot(2.0)

    assert snapshot.counter("sse_message_sent") == 3
    assert snapshot.counter("sse_errors") == 1
    assert snapshot.http_req_failed_rate == 0.5
    assert snapshot.latency_samples_ms == [12.0]
    exposition = metrics.exposition()
    assert "sse_message_sent_total 3.0" in exposition
    assert "delivery_latency_ms_count 1.0" in exposition


def test_summary_files(tmp_path: Path) -> None:
    snapshot = _healthy_snapshot()
    results = evaluate_thresholds(snapshot, parse_thresholds(DEFAULT_THRESHOLDS))

    summary = build_summary(snapshot, results)
    write_summary_json(tmp_path / "summary.json", summary)
    write_summary_markdown(
        tmp_path / "summary.md",
        run_name="smoke",
        resolved_config={"bridge_url": "http://bridge.test"},
        snapshot=snapshot,
        results=results,
    )

    loaded = json.loads((tmp_path / "summary.json").read_text(encoding="utf-8"))
    assert loaded["passed"] is True
    assert loaded["metrics"]["counters"]["sse_message_sent"] == 100
    assert loaded["metrics"]["delivery_latency_ms"]["count"] == 100.0
    markdown = (tmp_path / "summary.md").read_text(encoding="utf-8")
    assert "# Bridge Load Test Summary - smoke" in markdown
    assert "Result: **PASS**" in markdown
    assert "| delivery_latency | `p(95)<2000` |" in markdown
