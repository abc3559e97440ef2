"""
Stream-processing engine on Redis streams.

Components:
- Records: typed fixes and their stream/JSON encodings
- Processors: position smoothing, velocity calculation, velocity smoothing
- Consumer: consumer-group worker with recovery and dead-lettering
- Producer: stream and pub/sub emitters
- Topology: single-stage and multi-stage wiring

Data Flow:
    Ingestion → gps:raw → Workers → (intermediate streams) → gps:processed
"""

from .consumer import PendingEntry, RecoveryReport, StageSpec, StreamConsumerWorker, WorkerState
from .processors import (
    PositionSmoother,
    SensorPipeline,
    StageProcessor,
    VelocityCalculator,
    VelocitySmoother,
)
from .producer import DeadLetterWriter, Emitter, ResultPublisher, StreamProducer
from .records import PositionFix, ProcessedResult, RawFix, VelocityFix
from .topology import (
    PipelineTopology,
    Stage,
    Topology,
    build_stage_spec,
    build_workers,
    resolve_stages,
)

__all__ = [
    # Records
    "RawFix",
    "PositionFix",
    "VelocityFix",
    "ProcessedResult",
    # Processors
    "StageProcessor",
    "PositionSmoother",
    "VelocityCalculator",
    "VelocitySmoother",
    "SensorPipeline",
    # Producer
    "Emitter",
    "StreamProducer",
    "ResultPublisher",
    "DeadLetterWriter",
    # Consumer
    "StageSpec",
    "PendingEntry",
    "RecoveryReport",
    "StreamConsumerWorker",
    "WorkerState",
    # Topology
    "Topology",
    "Stage",
    "PipelineTopology",
    "build_stage_spec",
    "build_workers",
    "resolve_stages",
]
