"""
Worker process entry point.

Usage:
    gps-worker                                # topology from APP_TOPOLOGY
    gps-worker --topology multi --stage position
    gps-worker --check                        # report broker/stream status and exit

SIGINT/SIGTERM request a graceful stop: the loop exits after the current
blocking read returns. A fatal configuration error exits with status 1.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

from config.settings import AppSettings, get_settings
from src.exceptions import FatalConfigurationError
from src.monitoring.health import run_health_checks
from src.monitoring.metrics import get_metrics
from src.storage.redis_client import create_redis
from src.streaming.topology import PipelineTopology, Stage, Topology, build_stage_spec, resolve_stages
from src.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gps-worker",
        description="Run GPS stream-processing workers",
    )
    parser.add_argument(
        "--topology",
        choices=[t.value for t in Topology],
        default=None,
        help="Pipeline wiring (default: APP_TOPOLOGY)",
    )
    parser.add_argument(
        "--stage",
        choices=[s.value for s in Stage],
        action="append",
        default=None,
        help="Stage to run in this process; repeatable (default: every stage of the topology)",
    )
    parser.add_argument(
        "--consumer-name",
        type=str,
        default=None,
        help="Consumer identity within the group (default: STREAM_CONSUMER_NAME or host-pid)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Prometheus exporter port, 0 to disable (default: APP_METRICS_PORT)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check Redis and stream/group status, print a JSON report and exit",
    )
    return parser


def _resolve(args: argparse.Namespace, settings: AppSettings) -> tuple[Topology, tuple[Stage, ...]]:
    topology = Topology(args.topology or settings.topology)
    # "all" selects every stage of the chosen topology
    if not args.stage or Stage.ALL.value in args.stage:
        return topology, resolve_stages(topology)
    return topology, resolve_stages(topology, [Stage(s) for s in args.stage])


async def check(settings: AppSettings, topology: Topology, stages: tuple[Stage, ...]) -> dict[str, Any]:
    """Health report for the streams and groups this process would consume."""
    redis = create_redis(settings.redis)
    try:
        pairs = []
        for stage in stages:
            spec = build_stage_spec(stage, redis, settings)
            pairs.append((spec.input_stream, spec.group))
        report = await run_health_checks(redis, pairs)
        report["topology"] = topology.value
        return report
    finally:
        await redis.aclose()


async def run(
    settings: AppSettings,
    topology: Topology,
    stages: tuple[Stage, ...],
    consumer_name: str | None = None,
    metrics_port: int = 0,
) -> None:
    """Run the selected workers until a stop signal arrives."""
    metrics = get_metrics()
    if metrics_port:
        metrics.serve(metrics_port)

    redis = create_redis(settings.redis)
    pipeline = PipelineTopology.from_settings(
        redis,
        settings,
        topology=topology,
        stages=stages,
        consumer_name=consumer_name,
        metrics=metrics,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pipeline.request_stop)

    logger.info(
        "Starting workers",
        topology=topology.value,
        stages=[s.value for s in stages],
        consumer=consumer_name or settings.streams.consumer_name,
        env=settings.env,
    )

    try:
        await pipeline.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await redis.aclose()
        logger.info("Workers shut down", stats=pipeline.get_stats())


def main(argv: list[str] | None = None) -> int:
    """Console entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    try:
        topology, stages = _resolve(args, settings)
    except ValueError as e:
        logger.error("Invalid stage selection", error=str(e))
        return 2

    if args.check:
        report = asyncio.run(check(settings, topology, stages))
        print(json.dumps(report, indent=2))
        return 0 if report["status"] != "unhealthy" else 1

    metrics_port = settings.metrics_port if args.metrics_port is None else args.metrics_port
    try:
        asyncio.run(run(settings, topology, stages, args.consumer_name, metrics_port))
    except FatalConfigurationError as e:
        logger.error("Worker aborted on fatal configuration error", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
