from __future__ import annotations

import math
import random
import statistics
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


LATENCY_BUCKETS_MS = (
    5.0,
    10.0,
    25.0,
    50.0,
    100.0,
    250.0,
    500.0,
    1000.0,
    2000.0,
    5000.0,
    10000.0,
    30000.0,
)

COUNTER_NAMES = (
    "sse_message_sent",
    "sse_message_received",
    "sse_errors",
    "post_errors",
    "json_parse_errors",
    "missing_timestamps",
    "dropped_iterations",
)

# Raw latencies kept for percentiles; later samples replace earlier ones at random.
MAX_LATENCY_SAMPLES = 200_000


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


@dataclass(frozen=True)
class MetricsSnapshot:
    duration_s: float
    counters: dict[str, int]
    http_reqs: int
    http_req_failures: int
    latency_samples_ms: list[float] = field(default_factory=list)
    # Exact totals; None means the samples are the whole population.
    latency_count: Optional[int] = None
    latency_sum_ms: Optional[float] = None
    latency_min_ms: Optional[float] = None
    latency_max_ms: Optional[float] = None

    def counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    @property
    def http_req_failed_rate(self) -> Optional[float]:
        if not self.http_reqs:
            return None
        return float(self.http_req_failures / self.http_reqs)

    def latency_summary(self) -> dict[str, Optional[float]]:
        samples = self.latency_samples_ms
        count = self.latency_count if self.latency_count is not None else len(samples)
        if self.latency_sum_ms is not None and count:
            avg: Optional[float] = self.latency_sum_ms / count
        else:
            avg = float(statistics.fmean(samples)) if samples else None
        low = self.latency_min_ms
        if low is None and samples:
            low = float(min(samples))
        high = self.latency_max_ms
        if high is None and samples:
            high = float(max(samples))
        return {
            "count": float(count),
            "avg": avg,
            "min": low,
            "max": high,
            "med": percentile(samples, 50.0),
            "p90": percentile(samples, 90.0),
            "p95": percentile(samples, 95.0),
            "p99": percentile(samples, 99.0),
        }

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for name in (
            "latency_samples_ms",
            "latency_count",
            "latency_sum_ms",
            "latency_min_ms",
            "latency_max_ms",
        ):
            payload.pop(name)
        payload["http_req_failed_rate"] = self.http_req_failed_rate
        payload["delivery_latency_ms"] = self.latency_summary()
        return payload


class BridgeMetrics:
    """Run-scoped counters and the delivery latency distribution.

    Every metric lives in a private registry so several runs (or tests) can
    coexist in one process.

    Percentiles come from a uniform reservoir of at most
    ``max_latency_samples`` latencies; count, sum, min and max stay exact for
    any run length.
    """

    def __init__(
        self,
        max_latency_samples: int = MAX_LATENCY_SAMPLES,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_latency_samples < 1:
            raise ValueError("max_latency_samples must be >= 1")
        self.registry = CollectorRegistry()
        self._counters: dict[str, Counter] = {
            name: Counter(name, name.replace("_", " "), registry=self.registry)
            for name in COUNTER_NAMES
        }
        self._http_reqs = Counter(
            "http_reqs", "Publish requests issued", registry=self.registry
        )
        self._http_req_failures = Counter(
            "http_req_failures", "Publish requests without HTTP 200", registry=self.registry
        )
        # Fixed-size buckets; the raw samples below are capped separately.
        self._latency = Histogram(
            "delivery_latency_ms",
            "Publish-to-receive latency in milliseconds",
            buckets=LATENCY_BUCKETS_MS,
            registry=self.registry,
        )
        self._max_latency_samples = max_latency_samples
        self._rng = rng or random.Random(0)
        self._latency_samples: list[float] = []
        self._latency_seen = 0
        self._latency_min: Optional[float] = None
        self._latency_max: Optional[float] = None

    def inc(self, name: str, amount: int = 1) -> None:
        self._counters[name].inc(amount)

    def count(self, name: str) -> int:
        value = self.registry.get_sample_value(f"{name}_total")
        return int(value or 0)

    def observe_latency(self, latency_ms: float) -> None:
        value = float(latency_ms)
        self._latency.observe(value)
        self._latency_seen += 1
        if self._latency_min is None or value < self._latency_min:
            self._latency_min = value
        if self._latency_max is None or value > self._latency_max:
            self._latency_max = value
        if len(self._latency_samples) < self._max_latency_samples:
            self._latency_samples.append(value)
            return
        slot = self._rng.randrange(self._latency_seen)
        if slot < self._max_latency_samples:
            self._latency_samples[slot] = value

    def record_http_request(self, ok: bool) -> None:
        self._http_reqs.inc()
        if not ok:
            self._http_req_failures.inc()

    def snapshot(self, duration_s: float) -> MetricsSnapshot:
        return MetricsSnapshot(
            duration_s=float(duration_s),
            counters={name: self.count(name) for name in COUNTER_NAMES},
            http_reqs=int(self.registry.get_sample_value("http_reqs_total") or 0),
            http_req_failures=int(
                self.registry.get_sample_value("http_req_failures_total") or 0
            ),
            latency_samples_ms=list(self._latency_samples),
            latency_count=self._latency_seen,
            latency_sum_ms=float(self.registry.get_sample_value("delivery_latency_ms_sum") or 0.0),
            latency_min_ms=self._latency_min,
            latency_max_ms=self._latency_max,
        )

    def exposition(self) -> str:
        return generate_latest(self.registry).decode("utf-8")
