from __future__ import annotations

import random
import string

from config import ConfigurationError, ShardingConfig


CLIENT_ID_HEX_WIDTH = 64
MAX_CLIENT_INDEX = 16**CLIENT_ID_HEX_WIDTH - 1
# Highest identifier of the space is never addressed by senders.
RESERVED_TAIL = 1

_HEX_DIGITS = frozenset(string.hexdigits)


class InvalidClientId(ConfigurationError):
    pass


def format_client_id(index: int) -> str:
    if index < 0 or index > MAX_CLIENT_INDEX:
        raise InvalidClientId(f"Client index out of range: {index}")
    return f"{index:0{CLIENT_ID_HEX_WIDTH}x}"


def validate_client_id(value: str) -> str:
    """Return the trimmed identifier or raise InvalidClientId.

    Mirrors the checks the bridge applies to ``client_id`` and ``to``.
    """
    candidate = (value or "").strip()
    if not candidate:
        raise InvalidClientId("client id must be set")
    if len(candidate) != CLIENT_ID_HEX_WIDTH:
        raise InvalidClientId(
            f"client id must be {CLIENT_ID_HEX_WIDTH} characters long, got {len(candidate)}"
        )
    if not all(char in _HEX_DIGITS for char in candidate):
        raise InvalidClientId("client id must be a valid hex string")
    return candidate


def listener_indices(sharding: ShardingConfig, worker_index: int) -> range:
    if worker_index < 0 or worker_index >= sharding.listener_workers:
        raise ConfigurationError(
            f"Listener worker index must be in [0, {sharding.listener_workers}), got {worker_index}"
        )
    start = (
        sharding.instance_index * sharding.ids_per_instance
        + worker_index * sharding.listeners_per_worker
    )
    return range(start, start + sharding.listeners_per_worker)


def listener_identifiers(sharding: ShardingConfig, worker_index: int) -> list[str]:
    return [format_client_id(index) for index in listener_indices(sharding, worker_index)]


def total_space_size(
    total_instances: int, listeners_per_worker: int, listener_workers: int
) -> int:
    return total_instances * listener_workers * listeners_per_worker


def addressable_space_size(
    total_instances: int, listeners_per_worker: int, listener_workers: int
) -> int:
    """Number of receiver indices senders may target, ``[0, size)``.

    Every instance is assumed to have registered its whole block by the time
    senders start; only the reserved tail is excluded.
    """
    size = (
        total_space_size(total_instances, listeners_per_worker, listener_workers)
        - RESERVED_TAIL
    )
    if size <= 1:
        raise ConfigurationError(
            f"Addressable id space must hold at least 2 identifiers, got {size}. "
            "Increase SSE_VUS, LISTENER_WRITERS_RATIO or TOTAL_INSTANCES."
        )
    return size


def sharding_space_size(sharding: ShardingConfig) -> int:
    return addressable_space_size(
        sharding.total_instances,
        sharding.listeners_per_worker,
        sharding.listener_workers,
    )


def pick_address_pair(space: int, rng: random.Random) -> tuple[str, str]:
    """Draw ``(from_id, to_id)`` uniformly from ``[0, space)`` with from != to."""
    if space <= 1:
        raise ConfigurationError(f"Cannot pick distinct identifiers from a space of {space}")
    to_index = rng.randrange(space)
    from_index = rng.randrange(space)
    while from_index == to_index:
        from_index = rng.randrange(space)
    return format_client_id(from_index), format_client_id(to_index)
