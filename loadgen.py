from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import math
import random
import time
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from config import TOPICS, ShardingConfig
from idspace import listener_identifiers, pick_address_pair
from metrics_bridge import BridgeMetrics


logger = logging.getLogger(__name__)

HEARTBEAT = "heartbeat"
INITIAL_BACKOFF_S = 0.1
# A stream that stays open this long counts as healthy even without events.
HEALTHY_STREAM_S = 1.0
# 9999-12-31T23:59:59.999Z in epoch milliseconds.
MAX_TIMESTAMP_MS = 253_402_300_799_999


def now_unix_ms() -> int:
    return int(time.time() * 1000)


class StreamError(Exception):
    pass


class MalformedEnvelope(StreamError):
    """Event body is not a JSON object with a string ``message`` field."""


class MalformedPayload(StreamError):
    """The ``message`` field does not decode to a JSON object."""


class ConnectionClosed(StreamError):
    """The server ended the event stream."""


@dataclass
class BridgeSettings:
    base_url: str
    auth_token: Optional[str] = None
    request_timeout_s: float = 10.0
    message_ttl_s: int = 300


@dataclass(frozen=True)
class DeliveryEvent:
    ts: Optional[int]
    data: Any
    raw: str


@dataclass(frozen=True)
class OutboundMessage:
    ts: int
    data: str

    def encode(self) -> str:
        payload = json.dumps({"ts": self.ts, "data": self.data}, separators=(",", ":"))
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")


@dataclass
class PublishResult:
    from_id: str
    to_id: str
    topic: str
    ts: int
    http_status: Optional[int]
    status: str
    error: Optional[str]

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _headers(
    auth_token: Optional[str],
    *,
    accept: Optional[str] = None,
    content_type: Optional[str] = None,
) -> dict[str, str]:
    headers: dict[str, str] = {}
    if accept:
        headers["Accept"] = accept
    if content_type:
        headers["Content-Type"] = content_type
    if auth_token:
        headers["Authorization"] = f"Bearer {auth_token}"
    return headers


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the ``data`` of each event on an open stream.

    The sequence ends only by raising: ConnectionClosed when the server closes
    the stream, or an httpx error from the transport.
    """
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name != "data":
            continue
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    raise ConnectionClosed("event stream closed by server")


def decode_delivery_event(data: Optional[str]) -> Optional[DeliveryEvent]:
    """Decode one event body; None means the event carries no message."""
    if data is None:
        return None
    body = data.strip()
    if not body or body == HEARTBEAT:
        return None

    try:
        envelope = json.loads(body)
    except ValueError as exc:
        raise MalformedEnvelope(f"event body is not JSON: {exc}") from exc
    if not isinstance(envelope, dict) or not isinstance(envelope.get("message"), str):
        raise MalformedEnvelope("event body has no string 'message' field")

    try:
        decoded = base64.b64decode(envelope["message"], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MalformedPayload(f"message is not base64 text: {exc}") from exc
    try:
        message = json.loads(decoded)
    except ValueError as exc:
        raise MalformedPayload(f"decoded message is not JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise MalformedPayload("decoded message is not a JSON object")

    ts = message.get("ts")
    # Zero, non-finite and non-numeric timestamps cannot produce a latency sample.
    if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not ts:
        ts = None
    elif isinstance(ts, float) and not math.isfinite(ts):
        ts = None
    if ts is not None:
        ts = int(ts)
        if not 0 < ts <= MAX_TIMESTAMP_MS:
            raise MalformedPayload(f"timestamp out of range: {ts}")
    return DeliveryEvent(ts=ts, data=message.get("data"), raw=decoded)


def handle_event_data(
    data: Optional[str],
    metrics: BridgeMetrics,
    clock: Callable[[], int] = now_unix_ms,
) -> str:
    try:
        event = decode_delivery_event(data)
    except (MalformedEnvelope, MalformedPayload) as exc:
        metrics.inc("json_parse_errors")
        logger.warning("JSON parse error: %s data: %r", exc, data)
        return "parse_error"

    if event is None:
        return "skipped"
    if event.ts is None:
        metrics.inc("missing_timestamps")
        logger.warning("Message missing timestamp: %s", event.raw)
        return "missing_timestamp"

    metrics.observe_latency(float(clock() - event.ts))
    metrics.inc("sse_message_received")
    return "received"


def _next_backoff(previous_s: float, healthy: bool, max_backoff_s: float) -> float:
    if healthy or max_backoff_s <= 0:
        return 0.0
    if previous_s <= 0:
        return min(INITIAL_BACKOFF_S, max_backoff_s)
    return min(previous_s * 2.0, max_backoff_s)


async def listener_worker(
    worker_index: int,
    client: httpx.AsyncClient,
    settings: BridgeSettings,
    sharding: ShardingConfig,
    metrics: BridgeMetrics,
    stop_event: asyncio.Event,
    reconnect_backoff_max_s: float = 5.0,
    clock: Callable[[], int] = now_unix_ms,
) -> None:
    """Hold an event stream for this worker's identifiers until stopped.

    Connection problems are counted and followed by a reconnect; the worker
    only returns once ``stop_event`` is set (or it is cancelled).
    """
    client_ids = ",".join(listener_identifiers(sharding, worker_index))
    url = f"{settings.base_url.rstrip('/')}/events"
    headers = _headers(settings.auth_token, accept="text/event-stream")
    timeout = httpx.Timeout(settings.request_timeout_s, read=None)
    delay_s = 0.0
    attempt = 0

    while not stop_event.is_set():
        attempt += 1
        reached_streaming = False
        events_seen = 0
        opened_at = time.monotonic()
        try:
            async with client.stream(
                "GET",
                url,
                params={"client_id": client_ids},
                headers=headers,
                timeout=timeout,
            ) as response:
                if response.status_code != 200:
                    metrics.inc("sse_errors")
                    logger.warning(
                        "SSE worker %d: connect returned HTTP %d",
                        worker_index,
                        response.status_code,
                    )
                else:
                    reached_streaming = True
                    opened_at = time.monotonic()
                    async for data in iter_sse_data(response):
                        events_seen += 1
                        handle_event_data(data, metrics, clock)
        except ConnectionClosed:
            if events_seen or time.monotonic() - opened_at >= HEALTHY_STREAM_S:
                logger.debug("SSE worker %d: stream closed, reconnecting", worker_index)
            else:
                logger.warning(
                    "SSE worker %d: stream closed before any event (attempt %d)",
                    worker_index,
                    attempt,
                )
        except httpx.HTTPError as exc:
            metrics.inc("sse_errors")
            logger.warning("SSE worker %d: connection error: %s", worker_index, exc)
        except Exception as exc:  # noqa: BLE001
            metrics.inc("sse_errors")
            logger.exception("SSE worker %d: unexpected stream failure: %s", worker_index, exc)

        healthy = reached_streaming and (
            events_seen > 0 or time.monotonic() - opened_at >= HEALTHY_STREAM_S
        )
        delay_s = _next_backoff(delay_s, healthy, reconnect_backoff_max_s)
        if delay_s > 0:
            logger.debug(
                "SSE worker %d: reconnect attempt %d in %.2fs", worker_index, attempt + 1, delay_s
            )
        await asyncio.sleep(delay_s)


async def send_message(
    client: httpx.AsyncClient,
    settings: BridgeSettings,
    space: int,
    metrics: BridgeMetrics,
    rng: random.Random,
    clock: Callable[[], int] = now_unix_ms,
) -> PublishResult:
    """Publish one message to a random listener; failures are counted, not retried."""
    from_id, to_id = pick_address_pair(space, rng)
    topic = rng.choice(TOPICS)
    ts = clock()
    body = OutboundMessage(ts=ts, data=f"{from_id} {to_id}").encode()

    http_status: Optional[int] = None
    status = "ok"
    error_text: Optional[str] = None
    try:
        response = await client.post(
            f"{settings.base_url.rstrip('/')}/message",
            params={
                "client_id": from_id,
                "to": to_id,
                "ttl": str(settings.message_ttl_s),
                "topic": topic,
            },
            content=body,
            headers=_headers(settings.auth_token, content_type="text/plain"),
            timeout=settings.request_timeout_s,
        )
        http_status = int(response.status_code)
        if response.status_code != 200:
            status = "error"
            error_text = f"HTTP {response.status_code}"
    except httpx.TimeoutException as exc:
        status = "timeout"
        error_text = str(exc) or "request timed out"
    except httpx.HTTPError as exc:
        status = "error"
        error_text = str(exc)
    except Exception as exc:  # noqa: BLE001
        status = "error"
        error_text = str(exc)

    metrics.record_http_request(status == "ok")
    if status == "ok":
        metrics.inc("sse_message_sent")
    else:
        metrics.inc("post_errors")
        logger.debug("Publish %s -> %s failed: %s", from_id, to_id, error_text)

    return PublishResult(
        from_id=from_id,
        to_id=to_id,
        topic=topic,
        ts=ts,
        http_status=http_status,
        status=status,
        error=error_text,
    )
