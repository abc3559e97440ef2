"""
Pipeline topology: which steps run in which consumer worker.

Single-stage:
    gps:raw --[gps-workers: position, velocity, smoothing]--> PUBLISH gps:processed

Multi-stage:
    gps:raw --[position-smoothers]--> gps:position-smoothed
            --[velocity-calculators]--> gps:velocity-calculated
            --[velocity-smoothers]--> PUBLISH gps:processed

Both wirings run the same step classes; topology is decided here only.
Every stage keeps its own SensorState under its own key prefix, so each
stage's elapsed-time bookkeeping matches the single-stage form exactly.
"""

import asyncio
from collections.abc import Sequence
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from config.settings import AppSettings
from src.dsp import DSPEngineAdapter
from src.monitoring.metrics import PipelineMetrics, get_metrics
from src.storage import SensorLease, SensorStateStore
from src.streaming.consumer import StageSpec, StreamConsumerWorker
from src.streaming.processors import (
    PositionSmoother,
    SensorPipeline,
    StageProcessor,
    VelocityCalculator,
    VelocitySmoother,
)
from src.streaming.producer import Emitter, ResultPublisher, StreamProducer
from src.streaming.records import PositionFix, RawFix, VelocityFix
from src.utils.logging import get_logger

logger = get_logger(__name__)


class Topology(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class Stage(str, Enum):
    ALL = "all"
    POSITION = "position"
    VELOCITY = "velocity"
    SMOOTHING = "smoothing"


STAGES_BY_TOPOLOGY: dict[Topology, tuple[Stage, ...]] = {
    Topology.SINGLE: (Stage.ALL,),
    Topology.MULTI: (Stage.POSITION, Stage.VELOCITY, Stage.SMOOTHING),
}


def state_prefix(settings: AppSettings, stage: Stage) -> str:
    """Key prefix for a stage's sensor state and leases."""
    if stage is Stage.ALL:
        return settings.state.key_prefix
    return f"{settings.state.key_prefix}:{stage.value}"


def build_stage_spec(
    stage: Stage,
    redis: Redis,
    settings: AppSettings,
    consumer_name: str | None = None,
    metrics: PipelineMetrics | None = None,
) -> StageSpec:
    """
    Wire one stage.

    Args:
        stage: Which stage to build
        redis: Async Redis client shared by the stage's store, lease and emitter
        settings: Application settings
        consumer_name: Lease owner (defaults to settings.streams.consumer_name)
        metrics: Metrics sink

    Returns:
        The stage's StageSpec
    """
    streams = settings.streams
    dsp = settings.dsp
    adapter = DSPEngineAdapter(dsp)

    position = PositionSmoother(adapter)
    velocity = VelocityCalculator()
    smoothing = VelocitySmoother(adapter, movement_threshold=dsp.movement_threshold)

    steps: list[StageProcessor]
    emitter: Emitter
    if stage is Stage.ALL:
        input_stream, group, decode = streams.raw_stream, streams.monolithic_group, RawFix.from_fields
        steps = [position, velocity, smoothing]
        emitter = ResultPublisher(redis, streams.result_channel)
    elif stage is Stage.POSITION:
        input_stream, group, decode = streams.raw_stream, streams.position_group, RawFix.from_fields
        steps = [position]
        emitter = StreamProducer(redis, streams.position_stream, streams.max_length)
    elif stage is Stage.VELOCITY:
        input_stream, group, decode = (
            streams.position_stream,
            streams.velocity_group,
            PositionFix.from_fields,
        )
        steps = [velocity]
        emitter = StreamProducer(redis, streams.velocity_stream, streams.max_length)
    else:
        input_stream, group, decode = (
            streams.velocity_stream,
            streams.smoothing_group,
            VelocityFix.from_fields,
        )
        steps = [smoothing]
        emitter = ResultPublisher(redis, streams.result_channel)

    prefix = state_prefix(settings, stage)
    store = SensorStateStore(
        redis,
        key_prefix=prefix,
        ttl_seconds=settings.state.ttl_seconds,
        window_size=dsp.velocity_window_size,
    )
    lease = None
    if settings.state.lease_enabled:
        lease = SensorLease(
            redis,
            scope=prefix,
            owner=consumer_name or streams.consumer_name,
            ttl_ms=settings.state.lease_ttl_ms,
            wait_ms=settings.state.lease_wait_ms,
            retry_ms=settings.state.lease_retry_ms,
        )

    pipeline = SensorPipeline(
        steps,
        store,
        lease=lease,
        stage_name=stage.value,
        metrics=metrics,
        default_first_delta_seconds=dsp.default_first_delta_seconds,
    )
    return StageSpec(
        name=stage.value,
        input_stream=input_stream,
        group=group,
        decode=decode,
        pipeline=pipeline,
        emitter=emitter,
    )


def resolve_stages(topology: Topology, stages: Sequence[Stage] | None = None) -> tuple[Stage, ...]:
    """
    Stages to run in this process.

    Raises:
        ValueError: A requested stage does not belong to the topology
    """
    allowed = STAGES_BY_TOPOLOGY[topology]
    if not stages:
        return allowed
    invalid = [s.value for s in stages if s not in allowed]
    if invalid:
        raise ValueError(
            f"Stage(s) {invalid} not part of the {topology.value} topology "
            f"(expected {[s.value for s in allowed]})"
        )
    return tuple(stages)


def build_workers(
    redis: Redis,
    settings: AppSettings,
    topology: Topology | None = None,
    stages: Sequence[Stage] | None = None,
    consumer_name: str | None = None,
    metrics: PipelineMetrics | None = None,
) -> list[StreamConsumerWorker]:
    """Build one consumer worker per stage to run in this process."""
    topology = topology or Topology(settings.topology)
    consumer_name = consumer_name or settings.streams.consumer_name
    metrics = metrics or get_metrics()

    workers = []
    for stage in resolve_stages(topology, stages):
        spec = build_stage_spec(stage, redis, settings, consumer_name, metrics)
        workers.append(
            StreamConsumerWorker(
                redis,
                spec,
                consumer_name=consumer_name,
                settings=settings.consumer,
                dead_letter_stream=settings.streams.dead_letter_stream,
                metrics=metrics,
            )
        )
    return workers


class PipelineTopology:
    """
    Runs a set of stage workers in one process.

    A fatal error in any worker stops the others and is re-raised.
    """

    def __init__(self, workers: Sequence[StreamConsumerWorker]) -> None:
        if not workers:
            raise ValueError("A topology needs at least one worker")
        self.workers = list(workers)

    @classmethod
    def from_settings(
        cls,
        redis: Redis,
        settings: AppSettings,
        topology: Topology | None = None,
        stages: Sequence[Stage] | None = None,
        consumer_name: str | None = None,
        metrics: PipelineMetrics | None = None,
    ) -> "PipelineTopology":
        return cls(build_workers(redis, settings, topology, stages, consumer_name, metrics))

    async def ensure_groups(self) -> None:
        for worker in self.workers:
            await worker.ensure_group()

    async def run(self) -> None:
        """Run every worker until all have stopped."""
        tasks = [
            asyncio.create_task(worker.run(), name=f"worker-{worker.stage}")
            for worker in self.workers
        ]
        logger.info("Topology started", stages=[w.stage for w in self.workers])

        try:
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = [t for t in done if not t.cancelled() and t.exception() is not None]
            if failed:
                self.request_stop()
            await asyncio.gather(*tasks, return_exceptions=True)
            if failed:
                raise failed[0].exception()
        except asyncio.CancelledError:
            self.request_stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        logger.info("Topology stopped")

    def request_stop(self) -> None:
        for worker in self.workers:
            worker.request_stop()

    def get_stats(self) -> dict[str, Any]:
        return {"workers": [worker.get_stats() for worker in self.workers]}
