from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Mapping, Optional, Sequence

from config import ConfigurationError, RunConfig, resolve_config
from idspace import sharding_space_size
from report import DEFAULT_THRESHOLDS, Threshold, parse_threshold_option, parse_thresholds
from runner import RunOutcome, run_load_test


THRESHOLD_FAILURE_EXIT_CODE = 99

# Command-line flag -> configuration key; flags override the environment.
FLAG_TO_ENV_KEY = {
    "bridge_url": "BRIDGE_URL",
    "token": "BRIDGE_TOKEN",
    "ramp_up": "RAMP_UP",
    "hold": "HOLD",
    "ramp_down": "RAMP_DOWN",
    "sse_ramp_up": "SSE_RAMP_UP",
    "sse_hold": "SSE_HOLD",
    "sse_ramp_down": "SSE_RAMP_DOWN",
    "sse_start_delay": "SSE_START_DELAY",
    "send_ramp_up": "SEND_RAMP_UP",
    "send_hold": "SEND_HOLD",
    "send_ramp_down": "SEND_RAMP_DOWN",
    "send_start_delay": "SEND_START_DELAY",
    "sse_vus": "SSE_VUS",
    "send_rate": "SEND_RATE",
    "send_max_vus": "SEND_MAX_VUS",
    "listener_writers_ratio": "LISTENER_WRITERS_RATIO",
    "total_instances": "TOTAL_INSTANCES",
    "instance_index": "INSTANCE_INDEX",
    "graceful_ramp_down": "GRACEFUL_RAMP_DOWN",
    "graceful_stop": "GRACEFUL_STOP",
    "request_timeout": "REQUEST_TIMEOUT",
    "ttl": "MESSAGE_TTL",
    "reconnect_backoff_max": "RECONNECT_BACKOFF_MAX",
    "seed": "SEED",
    "output_dir": "OUTPUT_DIR",
    "run_name": "RUN_NAME",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Dual-workload load test for the bridge: SSE listeners plus publish "
            "requests, with delivery latency thresholds. Every option can also "
            "be set through the environment variable shown in its help."
        )
    )

    def add(flag: str, help_text: str) -> None:
        dest = flag.lstrip("-").replace("-", "_")
        parser.add_argument(
            flag, dest=dest, default=None, help=f"{help_text} (env {FLAG_TO_ENV_KEY[dest]})"
        )

    add("--bridge-url", "Bridge base URL")
    add("--token", "Bearer token sent with every request")

    add("--ramp-up", "Default ramp-up duration, e.g. 30s")
    add("--hold", "Default hold duration")
    add("--ramp-down", "Default ramp-down duration")
    add("--sse-ramp-up", "Listener ramp-up duration")
    add("--sse-hold", "Listener hold duration (default: sender ramp-up + hold)")
    add("--sse-ramp-down", "Listener ramp-down duration")
    add("--sse-start-delay", "Listener start offset")
    add("--send-ramp-up", "Sender ramp-up duration")
    add("--send-hold", "Sender hold duration")
    add("--send-ramp-down", "Sender ramp-down duration")
    add("--send-start-delay", "Sender start offset (default: listener ramp-up)")

    add("--sse-vus", "Listener worker count")
    add("--send-rate", "Publish requests per second at full rate")
    add("--send-max-vus", "Maximum concurrent publish requests")
    add("--listener-writers-ratio", "Client ids per listener worker")
    add("--total-instances", "Number of generator instances sharing the id space")
    add("--instance-index", "Index of this generator instance")

    add("--graceful-ramp-down", "Drain window for retired listeners")
    add("--graceful-stop", "Drain window for in-flight publishes")
    add("--request-timeout", "Publish timeout and SSE connect timeout")
    add("--ttl", "Message ttl in seconds")
    add("--reconnect-backoff-max", "Listener reconnect backoff ceiling, 0s for immediate")

    add("--seed", "Random seed")
    add("--output-dir", "Directory for run results")
    add("--run-name", "Run name prefix for the result directory")

    parser.add_argument(
        "--threshold",
        action="append",
        default=[],
        metavar="METRIC:EXPR",
        help="Extra threshold, e.g. delivery_latency:p(99)<5000. Repeatable.",
    )
    parser.add_argument(
        "--no-default-thresholds",
        action="store_true",
        help="Only evaluate thresholds given with --threshold.",
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    return parser


def resolve_from_args(
    args: argparse.Namespace, environ: Mapping[str, str]
) -> tuple[RunConfig, list[Threshold]]:
    overrides = {
        env_key: str(getattr(args, dest))
        for dest, env_key in FLAG_TO_ENV_KEY.items()
        if getattr(args, dest) is not None
    }
    config = resolve_config({**environ, **overrides})
    sharding_space_size(config.sharding)

    definitions: dict[str, list[str]] = (
        {} if args.no_default_thresholds else {k: list(v) for k, v in DEFAULT_THRESHOLDS.items()}
    )
    for value in args.threshold:
        metric, expression = parse_threshold_option(value)
        definitions.setdefault(metric, []).append(expression)
    return config, parse_thresholds(definitions)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    try:
        config, thresholds = resolve_from_args(args, os.environ)
    except ConfigurationError as exc:
        parser.error(str(exc))
    outcome: RunOutcome = asyncio.run(run_load_test(config, thresholds))
    print(f"Run complete. Outputs written to: {outcome.output_dir}")
    if not outcome.passed:
        failed = [result for result in outcome.results if not result.passed]
        for result in failed:
            print(f"Threshold failed: {result.metric} {result.expression} (observed {result.observed})")
        sys.exit(THRESHOLD_FAILURE_EXIT_CODE)


if __name__ == "__main__":
    main()
