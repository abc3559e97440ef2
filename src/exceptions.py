"""
Exception hierarchy for the GPS stream engine.

Three families, handled differently by the consumer loop:
- Data faults (MalformedRecordError): acknowledged and counted, never retried
- Fatal configuration faults (FatalConfigurationError): abort the worker
- Transient faults (TransientStreamError): message stays pending for recovery
"""


class GPSStreamError(Exception):
    """Base exception for the stream engine."""


class MalformedRecordError(GPSStreamError):
    """A stream record is missing a field or a field cannot be parsed."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class FatalConfigurationError(GPSStreamError):
    """Deployment misconfiguration; retrying cannot succeed."""


class ChannelCountMismatchError(FatalConfigurationError):
    """Samples passed to a filtering unit do not match its configured width."""

    def __init__(self, unit: str, expected: int, actual: int) -> None:
        super().__init__(f"{unit}: expected {expected} channel(s), got {actual}")
        self.unit = unit
        self.expected = expected
        self.actual = actual


class InvalidTimeDeltaError(FatalConfigurationError):
    """An elapsed-time value is negative, non-finite, or an absolute timestamp."""


class FilterStateFormatError(GPSStreamError):
    """A persisted engine blob carries an unknown tag or version."""


class TransientStreamError(GPSStreamError):
    """Recoverable failure; the in-flight message is left unacknowledged."""


class SensorLeaseUnavailableError(TransientStreamError):
    """Another worker holds the per-sensor lease."""

    def __init__(self, sensor_id: str, waited_ms: int) -> None:
        super().__init__(f"Lease for sensor '{sensor_id}' unavailable after {waited_ms}ms")
        self.sensor_id = sensor_id
        self.waited_ms = waited_ms
