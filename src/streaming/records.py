"""
Typed records flowing through the pipeline and their stream encodings.

Records:
- RawFix: input stream entry (sensorId, lat, lon, timestampMs)
- PositionFix: RawFix + smoothedLat/smoothedLon
- VelocityFix: PositionFix + velocity
- ProcessedResult: final record published to the result channel

Stream fields are flat string maps. Floats are written with repr() so a
value survives an intermediate stream hop bit-for-bit.
"""

import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from src.exceptions import MalformedRecordError

FieldMap = Mapping[bytes | str, bytes | str]


def _lookup(fields: FieldMap, name: str) -> str | None:
    value = fields.get(name)
    if value is None:
        value = fields.get(name.encode())
    if value is None:
        return None
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedRecordError(f"Field '{name}' is not valid UTF-8", field=name) from e
    return str(value)


def _require_text(fields: FieldMap, name: str) -> str:
    value = _lookup(fields, name)
    if value is None or not value.strip():
        raise MalformedRecordError(f"Missing field '{name}'", field=name)
    return value.strip()


def _require_float(fields: FieldMap, name: str) -> float:
    raw = _require_text(fields, name)
    try:
        value = float(raw)
    except ValueError as e:
        raise MalformedRecordError(f"Field '{name}' is not a number: {raw!r}", field=name) from e
    if not math.isfinite(value):
        raise MalformedRecordError(f"Field '{name}' is not finite: {raw!r}", field=name)
    return value


def _require_timestamp(fields: FieldMap) -> int:
    name = "timestampMs"
    # Older producers wrote "timestamp"
    if _lookup(fields, name) is None and _lookup(fields, "timestamp") is not None:
        name = "timestamp"
    raw = _require_text(fields, name)
    try:
        value = int(raw)
    except ValueError:
        value_f = _require_float(fields, name)
        if not value_f.is_integer():
            raise MalformedRecordError(f"Field '{name}' is not an integer: {raw!r}", field=name)
        value = int(value_f)
    if value <= 0:
        raise MalformedRecordError(f"Field '{name}' must be positive: {raw!r}", field=name)
    return value


def _format_float(value: float) -> str:
    return repr(float(value))


@dataclass(frozen=True, kw_only=True)
class RawFix:
    """A raw GPS fix from the input stream."""

    sensor_id: str
    lat: float
    lon: float
    timestamp_ms: int
    source_message_id: str = ""

    @classmethod
    def from_fields(cls, fields: FieldMap, message_id: str) -> "RawFix":
        """
        Decode a raw-stream entry.

        Raises:
            MalformedRecordError: A field is missing, unparseable or out of range
        """
        return cls(**cls._decode_common(fields, message_id))

    @staticmethod
    def _decode_common(fields: FieldMap, message_id: str) -> dict[str, Any]:
        sensor_id = _require_text(fields, "sensorId")
        lat = _require_float(fields, "lat")
        lon = _require_float(fields, "lon")
        if not -90.0 <= lat <= 90.0:
            raise MalformedRecordError(f"Latitude out of range: {lat}", field="lat")
        if not -180.0 <= lon <= 180.0:
            raise MalformedRecordError(f"Longitude out of range: {lon}", field="lon")
        return {
            "sensor_id": sensor_id,
            "lat": lat,
            "lon": lon,
            "timestamp_ms": _require_timestamp(fields),
            "source_message_id": _lookup(fields, "sourceMessageId") or message_id,
        }

    def to_fields(self) -> dict[str, str]:
        """Encode as a stream entry."""
        fields = {
            "sensorId": self.sensor_id,
            "lat": _format_float(self.lat),
            "lon": _format_float(self.lon),
            "timestampMs": str(int(self.timestamp_ms)),
        }
        if self.source_message_id:
            fields["sourceMessageId"] = self.source_message_id
        return fields


@dataclass(frozen=True, kw_only=True)
class PositionFix(RawFix):
    """A fix with its smoothed position."""

    smoothed_lat: float
    smoothed_lon: float

    @classmethod
    def from_fields(cls, fields: FieldMap, message_id: str) -> "PositionFix":
        return cls(
            **cls._decode_common(fields, message_id),
            smoothed_lat=_require_float(fields, "smoothedLat"),
            smoothed_lon=_require_float(fields, "smoothedLon"),
        )

    def to_fields(self) -> dict[str, str]:
        fields = super().to_fields()
        fields["smoothedLat"] = _format_float(self.smoothed_lat)
        fields["smoothedLon"] = _format_float(self.smoothed_lon)
        return fields


@dataclass(frozen=True, kw_only=True)
class VelocityFix(PositionFix):
    """A smoothed fix with its instantaneous velocity (m/s)."""

    velocity: float

    @classmethod
    def from_fields(cls, fields: FieldMap, message_id: str) -> "VelocityFix":
        velocity = _require_float(fields, "velocity")
        if velocity < 0:
            raise MalformedRecordError(f"Velocity must be >= 0: {velocity}", field="velocity")
        return cls(
            **cls._decode_common(fields, message_id),
            smoothed_lat=_require_float(fields, "smoothedLat"),
            smoothed_lon=_require_float(fields, "smoothedLon"),
            velocity=velocity,
        )

    def to_fields(self) -> dict[str, str]:
        fields = super().to_fields()
        fields["velocity"] = _format_float(self.velocity)
        return fields


@dataclass(frozen=True, kw_only=True)
class ProcessedResult:
    """Final smoothed record, published once per input fix."""

    sensor_id: str
    lat: float
    lon: float
    timestamp_ms: int
    smoothed_lat: float
    smoothed_lon: float
    instant_velocity: float
    smoothed_velocity: float
    is_moving: bool
    source_message_id: str
    processing_latency_ms: float | None = None

    _KEYS = {
        "sensor_id": "sensorId",
        "lat": "lat",
        "lon": "lon",
        "timestamp_ms": "timestampMs",
        "smoothed_lat": "smoothedLat",
        "smoothed_lon": "smoothedLon",
        "instant_velocity": "instantVelocity",
        "smoothed_velocity": "smoothedVelocity",
        "is_moving": "isMoving",
        "source_message_id": "sourceMessageId",
        "processing_latency_ms": "processingLatencyMs",
    }

    def to_dict(self) -> dict[str, Any]:
        """Wire representation (camelCase keys)."""
        return {self._KEYS[key]: value for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProcessedResult":
        """Inverse of to_dict()."""
        return cls(**{attr: data[key] for attr, key in cls._KEYS.items() if key in data})

    def without_latency(self) -> "ProcessedResult":
        """Copy with latency metadata cleared, for comparing runs."""
        return ProcessedResult(**{**asdict(self), "processing_latency_ms": None})
