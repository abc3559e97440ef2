"""
Pipeline steps and the per-sensor pipeline that runs them.

Processors:
- PositionSmoother: RawFix -> PositionFix (2-D Kalman step)
- VelocityCalculator: PositionFix -> VelocityFix (haversine / dt)
- VelocitySmoother: VelocityFix -> ProcessedResult (moving average + movement flag)

Each step consumes one typed record and produces the next, mutating the
sensor's state in place. Where stage boundaries fall is decided by the
topology, not here.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from src.dsp import DSPEngineAdapter, ElapsedSeconds
from src.geo import instantaneous_velocity
from src.monitoring.metrics import PipelineMetrics, get_metrics
from src.storage import SensorLease, SensorState, SensorStateStore
from src.streaming.records import PositionFix, ProcessedResult, RawFix, VelocityFix
from src.utils.logging import get_logger

logger = get_logger(__name__)


class StageProcessor(ABC):
    """
    One step of the per-message pipeline.

    Provides:
    - A uniform record-in, record-out interface
    - Statistics tracking
    """

    def __init__(self, name: str) -> None:
        """
        Initialize the processor.

        Args:
            name: Step name for logging and metrics
        """
        self.name = name
        self._processed_count = 0

    @abstractmethod
    def process(self, record: Any, state: SensorState, dt: ElapsedSeconds) -> Any:
        """
        Process one record.

        Args:
            record: Output of the previous step (or the decoded input)
            state: The sensor's state, mutated in place
            dt: Elapsed time since the sensor's previous fix

        Returns:
            The record for the next step
        """

    def apply(self, record: Any, state: SensorState, dt: ElapsedSeconds) -> Any:
        output = self.process(record, state, dt)
        self._processed_count += 1
        return output

    def get_stats(self) -> dict[str, Any]:
        """Get processor statistics."""
        return {"name": self.name, "processed_count": self._processed_count}


class PositionSmoother(StageProcessor):
    """Smooths the raw position with the engine's position unit."""

    def __init__(self, adapter: DSPEngineAdapter) -> None:
        super().__init__(name="position-smoothing")
        self.adapter = adapter

    def process(self, record: RawFix, state: SensorState, dt: ElapsedSeconds) -> PositionFix:
        (smoothed_lat, smoothed_lon), state.filter_blob = self.adapter.smooth_position(
            state.filter_blob, record.lat, record.lon, dt
        )
        return PositionFix(
            sensor_id=record.sensor_id,
            lat=record.lat,
            lon=record.lon,
            timestamp_ms=record.timestamp_ms,
            source_message_id=record.source_message_id,
            smoothed_lat=smoothed_lat,
            smoothed_lon=smoothed_lon,
        )


class VelocityCalculator(StageProcessor):
    """Instantaneous speed between the previous and current smoothed position."""

    def __init__(self) -> None:
        super().__init__(name="velocity-calculation")

    def process(self, record: PositionFix, state: SensorState, dt: ElapsedSeconds) -> VelocityFix:
        velocity = instantaneous_velocity(
            state.prev_lat,
            state.prev_lon,
            record.smoothed_lat,
            record.smoothed_lon,
            dt.seconds,
        )
        state.prev_lat = record.smoothed_lat
        state.prev_lon = record.smoothed_lon
        return VelocityFix(
            sensor_id=record.sensor_id,
            lat=record.lat,
            lon=record.lon,
            timestamp_ms=record.timestamp_ms,
            source_message_id=record.source_message_id,
            smoothed_lat=record.smoothed_lat,
            smoothed_lon=record.smoothed_lon,
            velocity=velocity,
        )


class VelocitySmoother(StageProcessor):
    """Moving average over the sensor's velocity window, plus the movement flag."""

    def __init__(self, adapter: DSPEngineAdapter, movement_threshold: float = 0.5) -> None:
        super().__init__(name="velocity-smoothing")
        self.adapter = adapter
        self.movement_threshold = movement_threshold

    def process(
        self,
        record: VelocityFix,
        state: SensorState,
        dt: ElapsedSeconds,
    ) -> ProcessedResult:
        state.push_velocity(record.velocity)
        smoothed, state.filter_blob = self.adapter.smooth_velocity(
            state.filter_blob, state.velocity_window(), dt
        )
        return ProcessedResult(
            sensor_id=record.sensor_id,
            lat=record.lat,
            lon=record.lon,
            timestamp_ms=record.timestamp_ms,
            smoothed_lat=record.smoothed_lat,
            smoothed_lon=record.smoothed_lon,
            instant_velocity=record.velocity,
            smoothed_velocity=smoothed,
            # Strictly greater: exactly at the threshold is stationary
            is_moving=smoothed > self.movement_threshold,
            source_message_id=record.source_message_id,
        )


class SensorPipeline:
    """
    Runs a chain of steps for one message against one sensor's state.

    Cycle per message: acquire lease, load (or create) state, compute dt,
    run every step, advance the last timestamp, save, release lease.
    """

    def __init__(
        self,
        stages: Sequence[StageProcessor],
        store: SensorStateStore,
        lease: SensorLease | None = None,
        stage_name: str = "all",
        metrics: PipelineMetrics | None = None,
        default_first_delta_seconds: float = 1.0,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            stages: Steps in execution order
            store: State store scoped to this pipeline
            lease: Per-sensor lease (None disables sensor affinity)
            stage_name: Label for logs and metrics
            metrics: Metrics sink (defaults to the global instance)
            default_first_delta_seconds: dt used for a sensor's first fix
        """
        if not stages:
            raise ValueError("A pipeline needs at least one step")
        self.stages = list(stages)
        self.store = store
        self.lease = lease
        self.stage_name = stage_name
        self.metrics = metrics or get_metrics()
        self.default_first_delta_seconds = default_first_delta_seconds

        self._handled_count = 0
        self._new_sensor_count = 0
        self._last_handled: datetime | None = None

    def _hold(self, sensor_id: str) -> AbstractAsyncContextManager[Any]:
        if self.lease is None:
            return nullcontext()
        return self.lease.hold(sensor_id)

    async def handle(self, record: RawFix) -> Any:
        """
        Process one decoded record.

        Returns:
            The last step's output (a ProcessedResult for a final stage)

        Raises:
            SensorLeaseUnavailableError: Another worker holds the sensor
            FatalConfigurationError: Engine misconfiguration
        """
        started = time.perf_counter()

        async with self._hold(record.sensor_id):
            state = await self.store.load(record.sensor_id)
            if state is None:
                state = self.store.create_initial(record.lat, record.lon, record.timestamp_ms)
                self._new_sensor_count += 1
                logger.debug("New sensor state", sensor_id=record.sensor_id)

            dt = ElapsedSeconds.between(
                state.last_timestamp_ms,
                record.timestamp_ms,
                self.default_first_delta_seconds,
            )

            output: Any = record
            for stage in self.stages:
                step_started = time.perf_counter()
                output = stage.apply(output, state, dt)
                self.metrics.record_step(
                    self.stage_name, stage.name, time.perf_counter() - step_started
                )

            # Out-of-order fixes never move the clock backwards
            state.last_timestamp_ms = max(state.last_timestamp_ms, float(record.timestamp_ms))
            await self.store.save(record.sensor_id, state)

        self._handled_count += 1
        self._last_handled = datetime.now(timezone.utc)

        if isinstance(output, ProcessedResult):
            output = replace(
                output,
                processing_latency_ms=(time.perf_counter() - started) * 1000.0,
            )
        return output

    def get_stats(self) -> dict[str, Any]:
        return {
            "stage": self.stage_name,
            "handled_count": self._handled_count,
            "new_sensor_count": self._new_sensor_count,
            "last_handled": self._last_handled.isoformat() if self._last_handled else None,
            "steps": [stage.get_stats() for stage in self.stages],
        }
