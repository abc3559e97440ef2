"""
Redis stream consumer worker.

Features:
- Idempotent consumer-group creation at the stream origin
- Blocking batch reads of never-delivered entries (XREADGROUP >)
- Ack only after the pipeline's state save and emit have completed
- Malformed entries acked and counted without processing
- Startup and periodic reclaim of idle pending entries (XPENDING / XCLAIM)
- Dead-lettering of entries that exceeded the delivery limit
- Exponential backoff on loop-level errors, fail fast on configuration errors

Lifecycle:
    STARTING -> RECOVERING -> RUNNING <-> (transient error) -> STOPPING -> STOPPED
"""

import asyncio
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config.settings import ConsumerSettings
from src.exceptions import (
    FatalConfigurationError,
    MalformedRecordError,
    SensorLeaseUnavailableError,
)
from src.monitoring.metrics import PipelineMetrics, get_metrics
from src.streaming.processors import SensorPipeline
from src.streaming.producer import DeadLetterWriter, Emitter
from src.streaming.records import FieldMap, RawFix
from src.utils.logging import get_logger, log_context

logger = get_logger(__name__)

# Decodes a stream entry into the record the pipeline expects
RecordDecoder = Callable[[FieldMap, str], RawFix]


class WorkerState(str, Enum):
    """Consumer worker lifecycle states."""

    STARTING = "starting"
    RECOVERING = "recovering"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class StageSpec:
    """Wiring for one consumer worker: where it reads, what it runs, where it writes."""

    name: str
    input_stream: str
    group: str
    decode: RecordDecoder
    pipeline: SensorPipeline
    emitter: Emitter


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


@dataclass(frozen=True)
class PendingEntry:
    """One row of a consumer group's pending-entries list."""

    message_id: str
    consumer: str
    idle_ms: int
    delivery_count: int

    @classmethod
    def from_redis(cls, row: dict[str, Any]) -> "PendingEntry":
        return cls(
            message_id=_text(row["message_id"]),
            consumer=_text(row["consumer"]),
            idle_ms=int(row["time_since_delivered"]),
            delivery_count=int(row["times_delivered"]),
        )


@dataclass
class RecoveryReport:
    """Outcome of one recovery pass."""

    scanned: int = 0
    reclaimed: int = 0
    processed: int = 0
    dead_lettered: int = 0
    trimmed: int = 0
    message_ids: list[str] = field(default_factory=list)


def _iter_entries(response: Any) -> Iterator[tuple[str, FieldMap | None]]:
    """Flatten an XREADGROUP reply (RESP2 list or RESP3 dict form)."""
    if not response:
        return
    streams = response.items() if isinstance(response, dict) else response
    for _stream, entries in streams:
        for message_id, fields in entries:
            yield _text(message_id), fields


class StreamConsumerWorker:
    """
    One consumer in a consumer group, running one stage's pipeline.

    Handles:
    - Consumer group coordination
    - Per-message decode, process, emit, ack
    - Pending-entry recovery and dead-lettering
    - Graceful shutdown
    """

    def __init__(
        self,
        redis: Redis,
        spec: StageSpec,
        consumer_name: str,
        settings: ConsumerSettings | None = None,
        dead_letter_stream: str = "gps:dead-letter",
        metrics: PipelineMetrics | None = None,
    ) -> None:
        """
        Initialize the worker.

        Args:
            redis: Async Redis client (decode_responses=False)
            spec: Stage wiring
            consumer_name: This worker's identity within the group
            settings: Loop tuning (defaults to ConsumerSettings())
            dead_letter_stream: Stream receiving poison messages
            metrics: Metrics sink (defaults to the global instance)
        """
        self._redis = redis
        self.spec = spec
        self.consumer_name = consumer_name
        self.settings = settings or ConsumerSettings()
        self.metrics = metrics or get_metrics()
        self._dead_letters = DeadLetterWriter(redis, dead_letter_stream)

        self._state = WorkerState.STOPPED
        self._stop_event = asyncio.Event()
        self._group_ready = False
        self._next_recovery = 0.0

        # Statistics
        self._messages_processed = 0
        self._messages_malformed = 0
        self._messages_failed = 0
        self._messages_reclaimed = 0
        self._messages_dead_lettered = 0
        self._lease_conflicts = 0
        self._loop_errors = 0
        self._last_message_time: datetime | None = None

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def stage(self) -> str:
        return self.spec.name

    def _set_state(self, state: WorkerState) -> None:
        if state is self._state:
            return
        logger.info(
            "Worker state changed",
            stage=self.stage,
            consumer=self.consumer_name,
            previous=self._state.value,
            state=state.value,
        )
        self._state = state
        self.metrics.set_worker_state(self.stage, state.value)

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def ensure_group(self) -> None:
        """Create the consumer group at the stream origin if it does not exist."""
        try:
            await self._redis.xgroup_create(
                self.spec.input_stream, self.spec.group, id="0", mkstream=True
            )
            logger.info(
                "Consumer group created",
                stream=self.spec.input_stream,
                group=self.spec.group,
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def run(self) -> None:
        """
        Run until request_stop() is called.

        Raises:
            FatalConfigurationError: Engine misconfiguration; the worker stops
        """
        self._set_state(WorkerState.STARTING)
        backoff = self.settings.error_backoff_seconds

        try:
            while not self._stop_event.is_set():
                try:
                    if not self._group_ready:
                        await self.ensure_group()

                    if time.monotonic() >= self._next_recovery:
                        self._set_state(WorkerState.RECOVERING)
                        await self.recover_pending()
                        self._next_recovery = (
                            time.monotonic() + self.settings.recovery_interval_seconds
                        )

                    self._set_state(WorkerState.RUNNING)
                    await self.poll_once()
                    backoff = self.settings.error_backoff_seconds

                except FatalConfigurationError as e:
                    logger.error(
                        "Fatal configuration error, stopping worker",
                        stage=self.stage,
                        error=str(e),
                    )
                    raise

                except Exception as e:
                    if isinstance(e, ResponseError) and str(e).startswith("NOGROUP"):
                        # Stream or group lost on the broker; recreate before the next read
                        self._group_ready = False
                    self._loop_errors += 1
                    self.metrics.record_transient_error(self.stage, type(e).__name__)
                    logger.error(
                        "Error in consume loop, backing off",
                        stage=self.stage,
                        error=str(e),
                        error_type=type(e).__name__,
                        backoff_seconds=backoff,
                    )
                    await self._sleep(backoff)
                    backoff = min(backoff * 2, self.settings.max_backoff_seconds)
        finally:
            self._set_state(WorkerState.STOPPING)
            self._set_state(WorkerState.STOPPED)
            logger.info(
                "Worker stopped",
                stage=self.stage,
                consumer=self.consumer_name,
                messages_processed=self._messages_processed,
                messages_failed=self._messages_failed,
            )

    def request_stop(self) -> None:
        """Ask the loop to exit after the current read returns."""
        self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early if a stop is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ==========================================================================
    # Reading and processing
    # ==========================================================================

    async def poll_once(self) -> int:
        """
        Read one batch of new entries and process them in order.

        Returns:
            Number of entries read
        """
        response = await self._redis.xreadgroup(
            self.spec.group,
            self.consumer_name,
            {self.spec.input_stream: ">"},
            count=self.settings.batch_size,
            block=self.settings.block_ms,
        )

        count = 0
        for message_id, fields in _iter_entries(response):
            if count == 0:
                self.metrics.record_batch(self.stage)
            count += 1
            await self._handle_message(message_id, fields or {})

        return count

    async def _handle_message(self, message_id: str, fields: FieldMap) -> bool:
        """
        Decode, process, emit and ack one entry.

        Returns:
            True if the entry was processed and acked
        """
        with log_context(stage=self.stage, consumer=self.consumer_name, message_id=message_id):
            try:
                record = self.spec.decode(fields, message_id)
            except MalformedRecordError as e:
                self._messages_malformed += 1
                self.metrics.record_malformed(self.stage, e.field)
                logger.warning("Malformed message acknowledged", field=e.field, error=str(e))
                await self._ack(message_id)
                return False

            started = time.perf_counter()
            try:
                output = await self.spec.pipeline.handle(record)
                await self.spec.emitter.emit(output)

            except SensorLeaseUnavailableError as e:
                self._lease_conflicts += 1
                self.metrics.record_lease_conflict(self.stage)
                logger.warning(
                    "Sensor busy, leaving message pending",
                    sensor_id=e.sensor_id,
                    waited_ms=e.waited_ms,
                )
                return False

            except (FatalConfigurationError, RedisConnectionError, RedisTimeoutError):
                raise

            except Exception as e:
                self._messages_failed += 1
                self.metrics.record_failed(self.stage, type(e).__name__)
                logger.error(
                    "Message processing failed, leaving message pending",
                    sensor_id=record.sensor_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return False

            await self._ack(message_id)
            self._messages_processed += 1
            self._last_message_time = datetime.now(timezone.utc)
            self.metrics.record_processed(self.stage, time.perf_counter() - started)
            logger.debug("Message processed", sensor_id=record.sensor_id)
            return True

    async def _ack(self, *message_ids: str) -> None:
        if not message_ids:
            return
        await self._redis.xack(self.spec.input_stream, self.spec.group, *message_ids)
        self.metrics.record_acked(self.stage, len(message_ids))

    # ==========================================================================
    # Recovery
    # ==========================================================================

    async def pending_entries(self, start: str = "-", count: int | None = None) -> list[PendingEntry]:
        """List pending entries idle for at least the claim threshold."""
        rows = await self._redis.xpending_range(
            self.spec.input_stream,
            self.spec.group,
            min=start,
            max="+",
            count=count or self.settings.recovery_batch_size,
            idle=self.settings.claim_idle_ms,
        )
        return [PendingEntry.from_redis(row) for row in rows]

    async def recover_pending(self) -> RecoveryReport:
        """
        Reclaim idle pending entries and run them through the normal path.

        Entries idle for less than claim_idle_ms are left to their current
        consumer. Entries already delivered max_delivery_attempts times are
        moved to the dead-letter stream instead of being processed again.
        """
        report = RecoveryReport()
        start = "-"
        page_size = self.settings.recovery_batch_size

        while not self._stop_event.is_set():
            entries = await self.pending_entries(start=start, count=page_size)
            if not entries:
                break
            report.scanned += len(entries)
            await self._recover_page(entries, report)
            if len(entries) < page_size:
                break
            # Exclusive range start
            start = f"({entries[-1].message_id}"

        self.metrics.record_recovery(self.stage, report.reclaimed, report.dead_lettered)
        if report.scanned:
            logger.info(
                "Pending recovery finished",
                stage=self.stage,
                scanned=report.scanned,
                reclaimed=report.reclaimed,
                processed=report.processed,
                dead_lettered=report.dead_lettered,
                trimmed=report.trimmed,
            )
        return report

    async def _recover_page(self, entries: list[PendingEntry], report: RecoveryReport) -> None:
        exhausted = {
            entry.message_id: entry
            for entry in entries
            if entry.delivery_count >= self.settings.max_delivery_attempts
        }

        claimed = await self._redis.xclaim(
            self.spec.input_stream,
            self.spec.group,
            self.consumer_name,
            min_idle_time=self.settings.claim_idle_ms,
            message_ids=[entry.message_id for entry in entries],
        )

        for message_id, fields in claimed or []:
            if message_id is None:
                continue
            message_id = _text(message_id)
            report.reclaimed += 1
            self._messages_reclaimed += 1

            if fields is None:
                # Entry body trimmed from the stream
                report.trimmed += 1
                logger.warning("Reclaimed entry has no body, acknowledging", message_id=message_id)
                await self._ack(message_id)
                continue

            if message_id in exhausted:
                await self._dead_letters.write(
                    fields,
                    source_stream=self.spec.input_stream,
                    source_message_id=message_id,
                    group=self.spec.group,
                    delivery_count=exhausted[message_id].delivery_count,
                )
                await self._ack(message_id)
                report.dead_lettered += 1
                self._messages_dead_lettered += 1
                continue

            if await self._handle_message(message_id, fields):
                report.processed += 1
                report.message_ids.append(message_id)

    # ==========================================================================
    # Statistics
    # ==========================================================================

    def get_stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            "stage": self.stage,
            "state": self._state.value,
            "consumer": self.consumer_name,
            "stream": self.spec.input_stream,
            "group": self.spec.group,
            "messages_processed": self._messages_processed,
            "messages_malformed": self._messages_malformed,
            "messages_failed": self._messages_failed,
            "messages_reclaimed": self._messages_reclaimed,
            "messages_dead_lettered": self._messages_dead_lettered,
            "lease_conflicts": self._lease_conflicts,
            "loop_errors": self._loop_errors,
            "last_message_time": (
                self._last_message_time.isoformat() if self._last_message_time else None
            ),
            "pipeline": self.spec.pipeline.get_stats(),
            "emitter": self.spec.emitter.get_stats(),
        }
