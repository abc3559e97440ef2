"""
Stateful filtering units for GPS smoothing.

Units:
- KalmanFilterUnit: constant-velocity Kalman filter over N position channels
- MovingAverageUnit: running mean over the last N samples

Each unit processes one step at a time and can save/restore its complete
internal state as bytes. The container format for those bytes is owned by
this module (pack_sections/unpack_sections); callers treat it as opaque.
"""

import struct
from abc import ABC, abstractmethod

import numpy as np

from src.exceptions import ChannelCountMismatchError, FilterStateFormatError

BLOB_MAGIC = b"DSPX"
BLOB_VERSION = 1

# magic, version, section count
_BLOB_HEADER = struct.Struct("<4sBH")
# name length, payload length
_SECTION_HEADER = struct.Struct("<HI")

_KALMAN_TAG = b"KF"
_KALMAN_HEADER = struct.Struct("<2sB?")  # tag, dimensions, initialized
_AVERAGE_TAG = b"MA"
_AVERAGE_HEADER = struct.Struct("<2sII")  # tag, window size, filled count


def pack_sections(sections: dict[str, bytes]) -> bytes:
    """Pack named unit states into one tagged, versioned blob."""
    parts = [_BLOB_HEADER.pack(BLOB_MAGIC, BLOB_VERSION, len(sections))]
    for name in sorted(sections):
        encoded_name = name.encode("utf-8")
        payload = sections[name]
        parts.append(_SECTION_HEADER.pack(len(encoded_name), len(payload)))
        parts.append(encoded_name)
        parts.append(payload)
    return b"".join(parts)


def unpack_sections(blob: bytes) -> dict[str, bytes]:
    """
    Split a blob produced by pack_sections back into named unit states.

    Raises:
        FilterStateFormatError: Unknown magic/version or truncated content
    """
    if len(blob) < _BLOB_HEADER.size:
        raise FilterStateFormatError("Filter state blob is truncated")

    magic, version, count = _BLOB_HEADER.unpack_from(blob, 0)
    if magic != BLOB_MAGIC:
        raise FilterStateFormatError(f"Unknown filter state tag {magic!r}")
    if version != BLOB_VERSION:
        raise FilterStateFormatError(f"Unsupported filter state version {version}")

    sections: dict[str, bytes] = {}
    offset = _BLOB_HEADER.size
    for _ in range(count):
        if offset + _SECTION_HEADER.size > len(blob):
            raise FilterStateFormatError("Filter state section header is truncated")
        name_len, payload_len = _SECTION_HEADER.unpack_from(blob, offset)
        offset += _SECTION_HEADER.size
        end = offset + name_len + payload_len
        if end > len(blob):
            raise FilterStateFormatError("Filter state section is truncated")
        name = blob[offset : offset + name_len].decode("utf-8")
        sections[name] = bytes(blob[offset + name_len : end])
        offset = end

    if offset != len(blob):
        raise FilterStateFormatError("Trailing bytes after filter state sections")

    return sections


class FilterUnit(ABC):
    """
    Abstract stateful filtering unit.

    process() consumes one step of samples plus the elapsed seconds for each
    sample and returns an output vector of the same width.
    """

    name: str = "unit"

    @property
    @abstractmethod
    def width(self) -> int:
        """Number of samples accepted per process() call."""

    @abstractmethod
    def process(self, samples: np.ndarray, deltas: np.ndarray) -> np.ndarray:
        """Run one step."""

    @abstractmethod
    def reset(self) -> None:
        """Discard internal state."""

    @abstractmethod
    def save_state(self) -> bytes:
        """Serialize internal state."""

    @abstractmethod
    def load_state(self, data: bytes) -> None:
        """Restore internal state produced by save_state()."""

    def _check_width(self, samples: np.ndarray, deltas: np.ndarray) -> None:
        if samples.ndim != 1 or samples.shape[0] != self.width:
            raise ChannelCountMismatchError(self.name, self.width, int(samples.size))
        if deltas.shape != samples.shape:
            raise ChannelCountMismatchError(f"{self.name} deltas", self.width, int(deltas.size))


class KalmanFilterUnit(FilterUnit):
    """
    Constant-velocity Kalman filter.

    State vector is [p_1..p_d, v_1..v_d]; each position channel advances by
    its own elapsed time. The filter initializes from the first measurement
    so the first output equals the first input.
    """

    name = "kalman"

    def __init__(
        self,
        dimensions: int = 2,
        process_noise: float = 1e-5,
        measurement_noise: float = 1e-2,
        initial_error: float = 1.0,
    ) -> None:
        """
        Initialize the filter.

        Args:
            dimensions: Number of measured position channels
            process_noise: Q diagonal
            measurement_noise: R diagonal
            initial_error: P diagonal after initialization
        """
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self.dimensions = dimensions
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.initial_error = initial_error

        n = 2 * dimensions
        self._H = np.hstack([np.eye(dimensions), np.zeros((dimensions, dimensions))])
        self._Q = np.eye(n) * process_noise
        self._R = np.eye(dimensions) * measurement_noise
        self._I = np.eye(n)

        self.reset()

    @property
    def width(self) -> int:
        return self.dimensions

    def reset(self) -> None:
        n = 2 * self.dimensions
        self._x = np.zeros(n)
        self._P = np.eye(n) * self.initial_error
        self._initialized = False

    def process(self, samples: np.ndarray, deltas: np.ndarray) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float64)
        deltas = np.asarray(deltas, dtype=np.float64)
        self._check_width(samples, deltas)

        d = self.dimensions
        if not self._initialized:
            self._x = np.concatenate([samples, np.zeros(d)])
            self._P = self._I * self.initial_error
            self._initialized = True
            return samples.copy()

        # Predict
        F = self._I.copy()
        F[np.arange(d), d + np.arange(d)] = deltas
        x_pred = F @ self._x
        P_pred = F @ self._P @ F.T + self._Q

        # Update
        innovation = samples - self._H @ x_pred
        S = self._H @ P_pred @ self._H.T + self._R
        K = P_pred @ self._H.T @ np.linalg.inv(S)
        self._x = x_pred + K @ innovation
        self._P = (self._I - K @ self._H) @ P_pred

        return self._x[:d].copy()

    def save_state(self) -> bytes:
        header = _KALMAN_HEADER.pack(_KALMAN_TAG, self.dimensions, self._initialized)
        return (
            header
            + self._x.astype("<f8").tobytes()
            + self._P.astype("<f8").tobytes()
        )

    def load_state(self, data: bytes) -> None:
        n = 2 * self.dimensions
        expected = _KALMAN_HEADER.size + 8 * (n + n * n)
        if len(data) != expected:
            raise FilterStateFormatError(
                f"Kalman state is {len(data)} bytes, expected {expected}"
            )
        tag, dimensions, initialized = _KALMAN_HEADER.unpack_from(data, 0)
        if tag != _KALMAN_TAG or dimensions != self.dimensions:
            raise FilterStateFormatError("Kalman state does not match filter configuration")

        values = np.frombuffer(data, dtype="<f8", offset=_KALMAN_HEADER.size)
        self._x = values[:n].astype(np.float64)
        self._P = values[n:].reshape(n, n).astype(np.float64)
        self._initialized = bool(initialized)


class MovingAverageUnit(FilterUnit):
    """
    Running mean over the most recent window_size samples.

    Every input sample is pushed through the window in order and produces
    one output. Deltas are validated for width but the mean is sample-count
    based, not time weighted.
    """

    name = "moving_average"

    def __init__(self, window_size: int = 5, width: int | None = None) -> None:
        """
        Initialize the moving average.

        Args:
            window_size: Number of samples averaged
            width: Samples accepted per call (defaults to window_size)
        """
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self._width = width if width is not None else window_size
        self.reset()

    @property
    def width(self) -> int:
        return self._width

    def reset(self) -> None:
        self._window = np.zeros(self.window_size)
        self._filled = 0
        self._index = 0

    def process(self, samples: np.ndarray, deltas: np.ndarray) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float64)
        deltas = np.asarray(deltas, dtype=np.float64)
        self._check_width(samples, deltas)

        output = np.empty_like(samples)
        for i, sample in enumerate(samples):
            self._window[self._index] = sample
            self._index = (self._index + 1) % self.window_size
            self._filled = min(self._filled + 1, self.window_size)
            # Slots fill from 0, so the first _filled slots are the live ones
            output[i] = self._window[: self._filled].mean()
        return output

    def save_state(self) -> bytes:
        header = _AVERAGE_HEADER.pack(_AVERAGE_TAG, self.window_size, self._filled)
        return header + struct.pack("<I", self._index) + self._window.astype("<f8").tobytes()

    def load_state(self, data: bytes) -> None:
        expected = _AVERAGE_HEADER.size + 4 + 8 * self.window_size
        if len(data) != expected:
            raise FilterStateFormatError(
                f"Moving average state is {len(data)} bytes, expected {expected}"
            )
        tag, window_size, filled = _AVERAGE_HEADER.unpack_from(data, 0)
        if tag != _AVERAGE_TAG or window_size != self.window_size:
            raise FilterStateFormatError("Moving average state does not match configuration")
        (index,) = struct.unpack_from("<I", data, _AVERAGE_HEADER.size)
        if index >= window_size or filled > window_size:
            raise FilterStateFormatError("Moving average state is inconsistent")

        self._window = np.frombuffer(
            data, dtype="<f8", offset=_AVERAGE_HEADER.size + 4
        ).astype(np.float64)
        self._filled = filled
        self._index = index
