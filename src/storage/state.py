"""
Per-sensor processing state and its fixed-size binary layout.

Layout (little-endian), for a velocity window of N:
    N x float64   velocity buffer
    1 x uint32    next-write index
    1 x float64   last timestamp (ms)
    2 x float64   previous smoothed lat, lon

N = 5 gives 68 bytes. The engine's filter blob is not part of this record.
"""

import struct
from dataclasses import dataclass, field
from functools import lru_cache

DEFAULT_WINDOW_SIZE = 5


@lru_cache(maxsize=16)
def _layout(window_size: int) -> struct.Struct:
    return struct.Struct(f"<{window_size}dIddd")


def app_state_size(window_size: int = DEFAULT_WINDOW_SIZE) -> int:
    """Byte length of the application-owned record for a window size."""
    return _layout(window_size).size


@dataclass
class SensorState:
    """
    Mutable processing state for one sensor.

    last_timestamp_ms == 0 means no fix has been processed yet.
    filter_blob is owned by the smoothing engine and never inspected here.
    """

    velocity_buffer: list[float] = field(default_factory=lambda: [0.0] * DEFAULT_WINDOW_SIZE)
    velocity_index: int = 0
    last_timestamp_ms: float = 0.0
    prev_lat: float = 0.0
    prev_lon: float = 0.0
    filter_blob: bytes | None = None

    def __post_init__(self) -> None:
        if not self.velocity_buffer:
            raise ValueError("velocity_buffer must not be empty")
        if not 0 <= self.velocity_index < len(self.velocity_buffer):
            raise ValueError(
                f"velocity_index {self.velocity_index} out of range "
                f"for window of {len(self.velocity_buffer)}"
            )

    @property
    def window_size(self) -> int:
        return len(self.velocity_buffer)

    @property
    def has_prior_fix(self) -> bool:
        return self.last_timestamp_ms > 0

    def push_velocity(self, velocity: float) -> None:
        """Write a velocity into the next slot of the circular buffer."""
        self.velocity_buffer[self.velocity_index] = velocity
        self.velocity_index = (self.velocity_index + 1) % self.window_size

    def velocity_window(self) -> list[float]:
        """Buffer contents ordered oldest to newest."""
        i = self.velocity_index
        return self.velocity_buffer[i:] + self.velocity_buffer[:i]


def serialize_app_state(state: SensorState) -> bytes:
    """Encode the application-owned fields of a state."""
    return _layout(state.window_size).pack(
        *state.velocity_buffer,
        state.velocity_index,
        float(state.last_timestamp_ms),
        state.prev_lat,
        state.prev_lon,
    )


def deserialize_app_state(
    data: bytes,
    window_size: int = DEFAULT_WINDOW_SIZE,
) -> SensorState | None:
    """
    Decode an application record.

    Returns None for any buffer whose length is not exactly the layout size,
    or whose index is out of range; partial records are never decoded.
    """
    layout = _layout(window_size)
    if data is None or len(data) != layout.size:
        return None

    values = layout.unpack(data)
    velocity_index = values[window_size]
    if velocity_index >= window_size:
        return None

    return SensorState(
        velocity_buffer=list(values[:window_size]),
        velocity_index=velocity_index,
        last_timestamp_ms=values[window_size + 1],
        prev_lat=values[window_size + 2],
        prev_lon=values[window_size + 3],
    )
