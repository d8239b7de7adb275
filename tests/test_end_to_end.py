"""Both workloads against an in-memory bridge served through httpx.MockTransport.

The fake bridge routes each published message to the event stream currently
registered for its ``to`` identifier, buffering messages for identifiers whose
listener has not connected yet.
"""

from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path
from typing import AsyncIterator, Callable

import httpx
import pytest

from config import RunConfig, ShardingConfig, WorkloadTiming
from idspace import format_client_id, listener_identifiers, sharding_space_size, validate_client_id
from loadgen import BridgeSettings, listener_worker, send_message
from metrics_bridge import BridgeMetrics
from runner import run_load_test


BASE_URL = "http://bridge.test/bridge"


class FakeBridge:
    def __init__(self) -> None:
        self.routes: dict[str, asyncio.Queue[str]] = {}
        self.pending: dict[str, list[str]] = {}
        self.published: list[tuple[str, str, str]] = []
        self.connections = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/events"):
            client_ids = [
                validate_client_id(value) for value in request.url.params["client_id"].split(",")
            ]
            queue: asyncio.Queue[str] = asyncio.Queue()
            for client_id in client_ids:
                self.routes[client_id] = queue
                for message in self.pending.pop(client_id, []):
                    queue.put_nowait(message)
            self.connections += 1
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=self._stream(queue),
            )

        if request.url.path.endswith("/message"):
            params = request.url.params
            from_id = validate_client_id(params["client_id"])
            to_id = validate_client_id(params["to"])
            if not 0 < int(params["ttl"]) <= 300:
                return httpx.Response(400, json={"message": "invalid ttl"})
            envelope = json.dumps({"from": from_id, "message": request.content.decode("ascii")})
            self.published.append((from_id, to_id, params["topic"]))
            queue = self.routes.get(to_id)
            if queue is None:
                self.pending.setdefault(to_id, []).append(envelope)
            else:
                await queue.put(envelope)
            return httpx.Response(200, json={"message": "OK", "statusCode": 200})

        return httpx.Response(404)

    async def _stream(self, queue: asyncio.Queue[str]) -> AsyncIterator[bytes]:
        yield b"data: heartbeat\n\n"
        while True:
            envelope = await queue.get()
            yield f"data: {envelope}\n\n".encode("utf-8")


async def _wait_until(predicate: Callable[[], bool], timeout_s: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_hundred_sends_reach_the_owning_listener() -> None:
    sharding = ShardingConfig(
        total_instances=1, instance_index=0, listener_workers=2, listeners_per_worker=3
    )
    space = sharding_space_size(sharding)
    assert space == 5

    bridge = FakeBridge()
    settings = BridgeSettings(base_url=BASE_URL)
    worker_metrics = [BridgeMetrics(), BridgeMetrics()]
    sender_metrics = BridgeMetrics()
    stop_event = asyncio.Event()
    rng = random.Random(2024)

    async with httpx.AsyncClient(transport=httpx.MockTransport(bridge.handler)) as client:
        listeners = [
            asyncio.create_task(
                listener_worker(
                    worker_index=index,
                    client=client,
                    settings=settings,
                    sharding=sharding,
                    metrics=worker_metrics[index],
                    stop_event=stop_event,
                )
            )
            for index in range(2)
        ]
        await _wait_until(lambda: bridge.connections == 2)

        results = [
            await send_message(client, settings, space, sender_metrics, rng) for _ in range(100)
        ]
        sent = sender_metrics.count("sse_message_sent")
        await _wait_until(
            lambda: sum(m.count("sse_message_received") for m in worker_metrics) == sent
        )

        stop_event.set()
        for task in listeners:
            task.cancel()
        await asyncio.gather(*listeners, return_exceptions=True)

    assert sent <= 100
    assert sent == 100
    assert all(result.from_id != result.to_id for result in results)
    assert format_client_id(5) not in {result.to_id for result in results}

    for index, metrics in enumerate(worker_metrics):
        owned = set(listener_identifiers(sharding, index))
        addressed = sum(1 for result in results if result.to_id in owned)
        assert metrics.count("sse_message_received") == addressed
        samples = metrics.snapshot(1.0).latency_samples_ms
        assert len(samples) == addressed
        assert all(sample >= 0 for sample in samples)
        assert metrics.count("json_parse_errors") == 0
        assert metrics.count("missing_timestamps") == 0
        assert metrics.count("sse_errors") == 0


@pytest.mark.asyncio
async def test_run_load_test_against_fake_bridge(tmp_path: Path) -> None:
    bridge = FakeBridge()
    config = RunConfig(
        bridge_url=BASE_URL,
        listener_timing=WorkloadTiming(ramp_up_s=0.2, hold_s=0.6, ramp_down_s=0.1, start_delay_s=0),
        sender_timing=WorkloadTiming(ramp_up_s=0.1, hold_s=0.3, ramp_down_s=0.1, start_delay_s=0.2),
        sharding=ShardingConfig(
            total_instances=1, instance_index=0, listener_workers=2, listeners_per_worker=3
        ),
        send_rate=100,
        sender_max_inflight=10,
        graceful_ramp_down_s=0.3,
        graceful_stop_s=1,
        output_dir=tmp_path,
        run_name="e2e",
        tick_s=0.02,
    )

    outcome = await run_load_test(config, transport=httpx.MockTransport(bridge.handler))

    snapshot = outcome.snapshot
    sent = snapshot.counter("sse_message_sent")
    assert sent == len(bridge.published)
    assert sent > 5
    assert snapshot.counter("post_errors") == 0
    assert snapshot.counter("sse_message_received") == sent
    assert snapshot.counter("sse_errors") == 0
    assert outcome.passed, [result for result in outcome.results if not result.passed]
    assert all(from_id != to_id for from_id, to_id, _topic in bridge.published)

    for name in ("config.json", "summary.json", "summary.md", "metrics.prom"):
        assert (outcome.output_dir / name).exists()
    summary = json.loads((outcome.output_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["passed"] is True
    resolved = json.loads((outcome.output_dir / "config.json").read_text(encoding="utf-8"))
    assert resolved["addressable_space"] == 5
