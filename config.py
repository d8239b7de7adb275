from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional


DURATION_PATTERN = re.compile(r"^(\d+)([smh])$")
UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}

TOPICS = ("sendTransaction", "signData")


class ConfigurationError(ValueError):
    """Raised for settings that must abort the run before it starts."""


class InvalidDuration(ConfigurationError):
    pass


def parse_duration(value: str) -> int:
    """Parse ``<integer><unit>`` (unit one of s, m, h) into seconds."""
    match = DURATION_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise InvalidDuration(
            f"Invalid duration {value!r}. Expected <integer><s|m|h>, e.g. 30s, 5m, 1h."
        )
    return int(match.group(1)) * UNIT_SECONDS[match.group(2)]


def format_duration(seconds: int) -> str:
    if seconds < 0:
        raise InvalidDuration(f"Duration must be >= 0, got {seconds}")
    for unit in ("h", "m"):
        size = UNIT_SECONDS[unit]
        if seconds and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: int


@dataclass(frozen=True)
class StageProfile:
    """Piecewise-linear level over time, starting from ``start_level``.

    Each stage moves the level linearly from where the previous stage ended to
    its own target over its duration.
    """

    stages: tuple[Stage, ...]
    start_level: int = 0

    @property
    def total_duration_s(self) -> float:
        return float(sum(stage.duration_s for stage in self.stages))

    @property
    def peak(self) -> int:
        return max([self.start_level] + [stage.target for stage in self.stages])

    def level_at(self, elapsed_s: float) -> float:
        level = float(self.start_level)
        offset = 0.0
        for stage in self.stages:
            if elapsed_s < offset + stage.duration_s:
                fraction = (elapsed_s - offset) / stage.duration_s
                return level + (stage.target - level) * max(0.0, fraction)
            offset += stage.duration_s
            level = float(stage.target)
        return level

    def integral(self, start_s: float, end_s: float) -> float:
        """Area under the level curve between two elapsed times."""
        if end_s <= start_s:
            return 0.0
        area = 0.0
        level = float(self.start_level)
        offset = 0.0
        for stage in self.stages:
            stage_end = offset + stage.duration_s
            low = max(start_s, offset)
            high = min(end_s, stage_end)
            if high > low:
                slope = (stage.target - level) / stage.duration_s
                level_low = level + slope * (low - offset)
                level_high = level + slope * (high - offset)
                area += (level_low + level_high) * (high - low) / 2.0
            offset = stage_end
            level = float(stage.target)
        if end_s > offset:
            area += level * (end_s - max(start_s, offset))
        return area


@dataclass(frozen=True)
class WorkloadTiming:
    ramp_up_s: int
    hold_s: int
    ramp_down_s: int
    start_delay_s: int = 0

    def profile(self, target: int) -> StageProfile:
        return StageProfile(
            stages=(
                Stage(self.ramp_up_s, target),
                Stage(self.hold_s, target),
                Stage(self.ramp_down_s, 0),
            )
        )


@dataclass(frozen=True)
class ShardingConfig:
    total_instances: int = 1
    instance_index: int = 0
    listener_workers: int = 100
    listeners_per_worker: int = 3

    @property
    def ids_per_instance(self) -> int:
        return self.listener_workers * self.listeners_per_worker


@dataclass
class RunConfig:
    bridge_url: str = "http://localhost:8081/bridge"
    auth_token: Optional[str] = None
    listener_timing: WorkloadTiming = field(
        default_factory=lambda: WorkloadTiming(10, 20, 10, 0)
    )
    sender_timing: WorkloadTiming = field(
        default_factory=lambda: WorkloadTiming(10, 10, 10, 10)
    )
    sharding: ShardingConfig = field(default_factory=ShardingConfig)
    send_rate: int = 1000
    sender_max_inflight: int = 100
    graceful_ramp_down_s: int = 30
    graceful_stop_s: int = 30
    request_timeout_s: float = 10.0
    message_ttl_s: int = 300
    reconnect_backoff_max_s: float = 5.0
    seed: int = 42
    output_dir: Path = Path("runs")
    run_name: str = "bridge"
    tick_s: float = 0.1

    def listener_profile(self) -> StageProfile:
        return self.listener_timing.profile(self.sharding.listener_workers)

    def sender_profile(self) -> StageProfile:
        return self.sender_timing.profile(self.send_rate)


def _duration(env: Mapping[str, str], key: str, default: str) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return parse_duration(default)
    return parse_duration(raw)


def _optional_duration(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return None
    return parse_duration(raw)


def _int(env: Mapping[str, str], key: str, default: int, minimum: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    return value


def resolve_config(env: Mapping[str, str]) -> RunConfig:
    """Build a RunConfig from environment-style keys, applying defaults."""
    ramp_up = _duration(env, "RAMP_UP", "10s")
    hold = _duration(env, "HOLD", "10s")
    ramp_down = _duration(env, "RAMP_DOWN", "10s")

    sender_ramp_up = _optional_duration(env, "SEND_RAMP_UP")
    sender_hold = _optional_duration(env, "SEND_HOLD")
    sender_ramp_down = _optional_duration(env, "SEND_RAMP_DOWN")
    sender_ramp_up = ramp_up if sender_ramp_up is None else sender_ramp_up
    sender_hold = hold if sender_hold is None else sender_hold
    sender_ramp_down = ramp_down if sender_ramp_down is None else sender_ramp_down

    listener_ramp_up = _optional_duration(env, "SSE_RAMP_UP")
    listener_ramp_up = ramp_up if listener_ramp_up is None else listener_ramp_up
    listener_ramp_down = _optional_duration(env, "SSE_RAMP_DOWN")
    listener_ramp_down = ramp_down if listener_ramp_down is None else listener_ramp_down
    # Listener streams stay up for as long as senders are active against them.
    listener_hold = _optional_duration(env, "SSE_HOLD")
    if listener_hold is None:
        listener_hold = sender_ramp_up + sender_hold

    listener_delay = _optional_duration(env, "SSE_START_DELAY") or 0
    sender_delay = _optional_duration(env, "SEND_START_DELAY")
    if sender_delay is None:
        sender_delay = listener_delay + listener_ramp_up

    listener_workers = _int(env, "SSE_VUS", 100, minimum=1)
    total_instances = _int(env, "TOTAL_INSTANCES", 1, minimum=1)
    instance_index = _int(env, "INSTANCE_INDEX", 0, minimum=0)
    if instance_index >= total_instances:
        raise ConfigurationError(
            f"INSTANCE_INDEX must be < TOTAL_INSTANCES ({total_instances}), got {instance_index}"
        )
    sharding = ShardingConfig(
        total_instances=total_instances,
        instance_index=instance_index,
        listener_workers=listener_workers,
        listeners_per_worker=_int(env, "LISTENER_WRITERS_RATIO", 3, minimum=1),
    )

    backoff_raw = env.get("RECONNECT_BACKOFF_MAX")
    reconnect_backoff_max_s = (
        float(parse_duration(backoff_raw)) if backoff_raw and backoff_raw.strip() else 5.0
    )

    config = RunConfig(
        bridge_url=(env.get("BRIDGE_URL") or "http://localhost:8081/bridge").rstrip("/"),
        auth_token=env.get("BRIDGE_TOKEN") or None,
        listener_timing=WorkloadTiming(
            listener_ramp_up, listener_hold, listener_ramp_down, listener_delay
        ),
        sender_timing=WorkloadTiming(
            sender_ramp_up, sender_hold, sender_ramp_down, sender_delay
        ),
        sharding=sharding,
        send_rate=_int(env, "SEND_RATE", 1000, minimum=0),
        sender_max_inflight=_int(env, "SEND_MAX_VUS", listener_workers, minimum=1),
        graceful_ramp_down_s=_duration(env, "GRACEFUL_RAMP_DOWN", "30s"),
        graceful_stop_s=_duration(env, "GRACEFUL_STOP", "30s"),
        request_timeout_s=float(_duration(env, "REQUEST_TIMEOUT", "10s")),
        message_ttl_s=_int(env, "MESSAGE_TTL", 300, minimum=1),
        reconnect_backoff_max_s=reconnect_backoff_max_s,
        seed=_int(env, "SEED", 42, minimum=0),
        output_dir=Path(env.get("OUTPUT_DIR") or "runs"),
        run_name=(env.get("RUN_NAME") or "bridge").strip().replace(" ", "_"),
    )
    if config.request_timeout_s <= 0:
        raise ConfigurationError("REQUEST_TIMEOUT must be > 0")
    return config
