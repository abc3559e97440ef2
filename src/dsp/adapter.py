"""
Adapter between the stream pipeline and the filtering engine.

Owns no algorithmic logic. For every call it:
- restores the calling sensor's unit state from the sensor's filter blob
- runs one process step with validated inputs
- saves the unit state back into a new blob for the caller to persist
"""

from collections.abc import Sequence

import numpy as np

from config.settings import DSPSettings
from src.dsp.engine import (
    FilterUnit,
    KalmanFilterUnit,
    MovingAverageUnit,
    pack_sections,
    unpack_sections,
)
from src.dsp.timebase import ElapsedSeconds
from src.exceptions import ChannelCountMismatchError, FilterStateFormatError, InvalidTimeDeltaError
from src.utils.logging import get_logger

logger = get_logger(__name__)

POSITION_UNIT = "position"
VELOCITY_UNIT = "velocity"


class DSPEngineAdapter:
    """
    Per-pipeline wrapper around the position and velocity filtering units.

    The units are shared across sensors; sensor isolation comes from loading
    each sensor's state into the unit immediately before processing and
    saving it immediately after. Calls are not reentrant.
    """

    def __init__(self, settings: DSPSettings | None = None) -> None:
        """
        Initialize the adapter.

        Args:
            settings: Engine tuning (defaults to DSPSettings())
        """
        self.settings = settings or DSPSettings()
        self._units: dict[str, FilterUnit] = {
            POSITION_UNIT: KalmanFilterUnit(
                dimensions=2,
                process_noise=self.settings.process_noise,
                measurement_noise=self.settings.measurement_noise,
                initial_error=self.settings.initial_error,
            ),
            VELOCITY_UNIT: MovingAverageUnit(window_size=self.settings.velocity_window_size),
        }

    @property
    def velocity_window_size(self) -> int:
        return self.settings.velocity_window_size

    def process(
        self,
        unit_name: str,
        blob: bytes | None,
        samples: Sequence[float],
        deltas: Sequence[ElapsedSeconds],
    ) -> tuple[np.ndarray, bytes]:
        """
        Run one step of a unit against a sensor's filter state.

        Args:
            unit_name: POSITION_UNIT or VELOCITY_UNIT
            blob: The sensor's filter blob, or None for a first-seen sensor
            samples: One value per channel
            deltas: Elapsed time per channel

        Returns:
            Tuple of (smoothed samples, updated blob)

        Raises:
            ChannelCountMismatchError: Sample or delta width does not match the unit
            InvalidTimeDeltaError: A delta is not an ElapsedSeconds
        """
        unit = self._units[unit_name]

        if len(samples) != unit.width:
            raise ChannelCountMismatchError(unit_name, unit.width, len(samples))
        if len(deltas) != len(samples):
            raise ChannelCountMismatchError(f"{unit_name} deltas", len(samples), len(deltas))
        for delta in deltas:
            if not isinstance(delta, ElapsedSeconds):
                raise InvalidTimeDeltaError(
                    f"Deltas must be ElapsedSeconds, got {type(delta).__name__}"
                )

        sections = self._open(blob)
        if unit_name in sections:
            try:
                unit.load_state(sections[unit_name])
            except FilterStateFormatError as e:
                logger.warning("Discarding incompatible unit state", unit=unit_name, error=str(e))
                unit.reset()
        else:
            unit.reset()

        smoothed = unit.process(
            np.asarray(samples, dtype=np.float64),
            np.array([d.seconds for d in deltas], dtype=np.float64),
        )

        sections[unit_name] = unit.save_state()
        return smoothed, pack_sections(sections)

    def smooth_position(
        self,
        blob: bytes | None,
        lat: float,
        lon: float,
        dt: ElapsedSeconds,
    ) -> tuple[tuple[float, float], bytes]:
        """Smooth one (lat, lon) fix."""
        smoothed, blob = self.process(POSITION_UNIT, blob, [lat, lon], [dt, dt])
        return (float(smoothed[0]), float(smoothed[1])), blob

    def smooth_velocity(
        self,
        blob: bytes | None,
        window: Sequence[float],
        dt: ElapsedSeconds,
    ) -> tuple[float, bytes]:
        """Smooth a velocity window (oldest first) and return the newest output."""
        smoothed, blob = self.process(VELOCITY_UNIT, blob, window, [dt] * len(window))
        return float(smoothed[-1]), blob

    @staticmethod
    def _open(blob: bytes | None) -> dict[str, bytes]:
        if not blob:
            return {}
        try:
            return unpack_sections(blob)
        except FilterStateFormatError as e:
            logger.warning("Discarding unreadable filter state", error=str(e))
            return {}
