"""
Smoothing engine and its pipeline adapter.

Components:
- Engine: stateful Kalman and moving-average units with opaque state blobs
- Adapter: per-sensor routing of unit state around each process step
- ElapsedSeconds: the delta type the adapter accepts
"""

from .adapter import POSITION_UNIT, VELOCITY_UNIT, DSPEngineAdapter
from .engine import (
    BLOB_MAGIC,
    BLOB_VERSION,
    FilterUnit,
    KalmanFilterUnit,
    MovingAverageUnit,
    pack_sections,
    unpack_sections,
)
from .timebase import ElapsedSeconds

__all__ = [
    # Adapter
    "DSPEngineAdapter",
    "POSITION_UNIT",
    "VELOCITY_UNIT",
    # Engine
    "BLOB_MAGIC",
    "BLOB_VERSION",
    "FilterUnit",
    "KalmanFilterUnit",
    "MovingAverageUnit",
    "pack_sections",
    "unpack_sections",
    # Time
    "ElapsedSeconds",
]
