from __future__ import annotations

import asyncio
import heapq
import json
import logging
import math
import random
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import RunConfig, StageProfile, format_duration
from idspace import sharding_space_size
from loadgen import BridgeSettings, listener_worker, send_message
from metrics_bridge import BridgeMetrics, MetricsSnapshot
from report import (
    DEFAULT_THRESHOLDS,
    Threshold,
    ThresholdResult,
    build_summary,
    evaluate_thresholds,
    parse_thresholds,
    write_summary_json,
    write_summary_markdown,
)


logger = logging.getLogger(__name__)

SpawnFn = Callable[[int, asyncio.Event], Awaitable[None]]
IssueFn = Callable[[], Awaitable[Any]]


@dataclass
class RunOutcome:
    output_dir: Path
    passed: bool
    snapshot: MetricsSnapshot
    results: list[ThresholdResult]


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


async def _wait_for_workers(tasks: list[asyncio.Task[Any]], timeout_s: float) -> None:
    if not tasks:
        return
    done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    if done:
        await asyncio.gather(*done, return_exceptions=True)


async def run_ramping_workers(
    *,
    profile: StageProfile,
    start_delay_s: float,
    graceful_ramp_down_s: float,
    max_workers: int,
    spawn: SpawnFn,
    tick_s: float = 0.1,
) -> int:
    """Keep ``floor(profile.level_at(t))`` long-lived workers running.

    Workers receive the lowest free index in ``[0, max_workers)`` and a stop
    event. Retired workers (newest first) get ``graceful_ramp_down_s`` to exit
    before they are cancelled; an index is reused only once its worker is gone.
    Returns the number of workers started.
    """
    if start_delay_s > 0:
        await asyncio.sleep(start_delay_s)

    free_indices = list(range(max_workers))
    heapq.heapify(free_indices)
    active: list[tuple[int, asyncio.Event, asyncio.Task[None]]] = []
    retiring: list[asyncio.Task[None]] = []
    started_count = 0

    def _release(index: int) -> Callable[[asyncio.Task[None]], None]:
        def _callback(_task: asyncio.Task[None]) -> None:
            heapq.heappush(free_indices, index)

        return _callback

    def _retire(entry: tuple[int, asyncio.Event, asyncio.Task[None]]) -> None:
        _index, stop_event, task = entry
        stop_event.set()
        retiring.append(
            asyncio.create_task(_wait_for_workers([task], timeout_s=graceful_ramp_down_s))
        )

    started = time.monotonic()
    total_s = profile.total_duration_s
    while True:
        elapsed = time.monotonic() - started
        if elapsed >= total_s:
            break
        target = min(max_workers, int(math.floor(profile.level_at(elapsed))))
        while len(active) < target and free_indices:
            index = heapq.heappop(free_indices)
            stop_event = asyncio.Event()
            task = asyncio.create_task(spawn(index, stop_event))
            task.add_done_callback(_release(index))
            active.append((index, stop_event, task))
            started_count += 1
        while len(active) > target:
            _retire(active.pop())
        await asyncio.sleep(tick_s)

    while active:
        _retire(active.pop())
    if retiring:
        await asyncio.gather(*retiring)
    return started_count


async def run_ramping_arrivals(
    *,
    profile: StageProfile,
    start_delay_s: float,
    graceful_stop_s: float,
    max_inflight: int,
    issue: IssueFn,
    on_dropped: Optional[Callable[[], None]] = None,
    tick_s: float = 0.1,
) -> int:
    """Start iterations at the rate given by ``profile`` (iterations per second).

    At most ``max_inflight`` iterations run at once; arrivals beyond that are
    dropped. Returns the number of iterations started.
    """
    if start_delay_s > 0:
        await asyncio.sleep(start_delay_s)

    inflight: set[asyncio.Task[Any]] = set()
    issued = 0
    due = 0.0
    last_elapsed = 0.0
    started = time.monotonic()
    total_s = profile.total_duration_s

    while True:
        elapsed = min(time.monotonic() - started, total_s)
        due += profile.integral(last_elapsed, elapsed)
        last_elapsed = elapsed
        arrivals = int(due)
        due -= arrivals
        for _ in range(arrivals):
            if len(inflight) >= max_inflight:
                if on_dropped is not None:
                    on_dropped()
                continue
            task = asyncio.create_task(issue())
            inflight.add(task)
            task.add_done_callback(inflight.discard)
            issued += 1
        if elapsed >= total_s:
            break
        await asyncio.sleep(tick_s)

    await _wait_for_workers(list(inflight), timeout_s=graceful_stop_s)
    return issued


def _resolved_config_dict(config: RunConfig, output_dir: Path, space: int) -> dict[str, Any]:
    payload = asdict(config)
    payload["output_dir"] = str(config.output_dir)
    payload["auth_token"] = "***" if config.auth_token else None
    payload["listener_stages"] = [
        {"duration": format_duration(int(stage.duration_s)), "target": stage.target}
        for stage in config.listener_profile().stages
    ]
    payload["sender_stages"] = [
        {"duration": format_duration(int(stage.duration_s)), "target": stage.target}
        for stage in config.sender_profile().stages
    ]
    payload["addressable_space"] = space
    payload["resolved_run_dir"] = str(output_dir)
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


async def run_load_test(
    config: RunConfig,
    thresholds: Optional[list[Threshold]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RunOutcome:
    space = sharding_space_size(config.sharding)
    if thresholds is None:
        thresholds = parse_thresholds(DEFAULT_THRESHOLDS)

    output_dir = _ensure_output_dir(config.output_dir, config.run_name)
    config_path = output_dir / "config.json"
    summary_json_path = output_dir / "summary.json"
    summary_md_path = output_dir / "summary.md"
    metrics_path = output_dir / "metrics.prom"

    resolved_config = _resolved_config_dict(config, output_dir, space)
    _write_json(config_path, resolved_config)

    settings = BridgeSettings(
        base_url=config.bridge_url,
        auth_token=config.auth_token,
        request_timeout_s=float(config.request_timeout_s),
        message_ttl_s=config.message_ttl_s,
    )
    metrics = BridgeMetrics()
    rng = random.Random(config.seed + config.sharding.instance_index * 1009)

    max_connections = config.sharding.listener_workers + config.sender_max_inflight + 16
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(config.sender_max_inflight, 32),
    )

    async def spawn_listener(worker_index: int, stop_event: asyncio.Event) -> None:
        await listener_worker(
            worker_index=worker_index,
            client=client,
            settings=settings,
            sharding=config.sharding,
            metrics=metrics,
            stop_event=stop_event,
            reconnect_backoff_max_s=config.reconnect_backoff_max_s,
        )

    async def issue_publish() -> None:
        await send_message(
            client=client,
            settings=settings,
            space=space,
            metrics=metrics,
            rng=rng,
        )

    logger.info(
        "Starting run: %d listener workers x %d ids, %d msg/s, instance %d/%d, space %d",
        config.sharding.listener_workers,
        config.sharding.listeners_per_worker,
        config.send_rate,
        config.sharding.instance_index,
        config.sharding.total_instances,
        space,
    )
    run_started = time.monotonic()
    async with httpx.AsyncClient(limits=limits, transport=transport) as client:
        listeners_started, publishes_issued = await asyncio.gather(
            run_ramping_workers(
                profile=config.listener_profile(),
                start_delay_s=float(config.listener_timing.start_delay_s),
                graceful_ramp_down_s=float(config.graceful_ramp_down_s),
                max_workers=config.sharding.listener_workers,
                spawn=spawn_listener,
                tick_s=config.tick_s,
            ),
            run_ramping_arrivals(
                profile=config.sender_profile(),
                start_delay_s=float(config.sender_timing.start_delay_s),
                graceful_stop_s=float(config.graceful_stop_s),
                max_inflight=config.sender_max_inflight,
                issue=issue_publish,
                on_dropped=lambda: metrics.inc("dropped_iterations"),
                tick_s=config.tick_s,
            ),
        )
    duration_s = time.monotonic() - run_started
    logger.info(
        "Run finished in %.1fs: %d listener workers started, %d publishes issued",
        duration_s,
        listeners_started,
        publishes_issued,
    )

    snapshot = metrics.snapshot(duration_s)
    results = evaluate_thresholds(snapshot, thresholds)
    for result in results:
        if not result.passed:
            logger.warning(
                "Threshold failed: %s %s (observed %s)",
                result.metric,
                result.expression,
                result.observed,
            )

    write_summary_json(summary_json_path, build_summary(snapshot, results))
    write_summary_markdown(
        output_path=summary_md_path,
        run_name=config.run_name,
        resolved_config=resolved_config,
        snapshot=snapshot,
        results=results,
    )
    metrics_path.write_text(metrics.exposition(), encoding="utf-8")

    return RunOutcome(
        output_dir=output_dir,
        passed=all(result.passed for result in results),
        snapshot=snapshot,
        results=results,
    )
