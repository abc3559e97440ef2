"""
Elapsed-time value type for the smoothing engine.

The engine's motion model consumes seconds elapsed since the previous sample,
never absolute timestamps. ElapsedSeconds is the only type the engine adapter
accepts for deltas, so a raw epoch value cannot reach it by accident.
"""

import math
from dataclasses import dataclass

from src.exceptions import InvalidTimeDeltaError


@dataclass(frozen=True, slots=True)
class ElapsedSeconds:
    """Non-negative, finite number of seconds since the previous sample."""

    seconds: float

    def __post_init__(self) -> None:
        if isinstance(self.seconds, bool) or not isinstance(self.seconds, (int, float)):
            raise InvalidTimeDeltaError(f"Elapsed time must be a number, got {self.seconds!r}")
        if not math.isfinite(self.seconds):
            raise InvalidTimeDeltaError(f"Elapsed time must be finite, got {self.seconds}")
        if self.seconds < 0:
            raise InvalidTimeDeltaError(f"Elapsed time must be >= 0, got {self.seconds}")
        object.__setattr__(self, "seconds", float(self.seconds))

    @classmethod
    def between(
        cls,
        previous_ms: float,
        current_ms: float,
        default_seconds: float,
    ) -> "ElapsedSeconds":
        """
        Elapsed time between two millisecond timestamps.

        A previous timestamp of 0 means the sensor has no prior fix and the
        default is used. Fixes older than the previous one clamp to 0.

        Args:
            previous_ms: Timestamp of the last processed fix (0 if none)
            current_ms: Timestamp of the fix being processed
            default_seconds: Delta used for a sensor's first fix
        """
        if previous_ms <= 0:
            return cls(default_seconds)
        return cls(max(0.0, (current_ms - previous_ms) / 1000.0))

    def __float__(self) -> float:
        return self.seconds
