"""
Redis-backed per-sensor state store.

Keys:
- {prefix}:app:{sensorId}     fixed-size application record
- {prefix}:filter:{sensorId}  opaque engine blob

Both keys are written in one MULTI/EXEC transaction with the same sliding
TTL, so a load never observes one half of a save.
"""

from redis.asyncio import Redis

from src.storage.state import (
    DEFAULT_WINDOW_SIZE,
    SensorState,
    app_state_size,
    deserialize_app_state,
    serialize_app_state,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)


class SensorStateStore:
    """
    Load, save and expire SensorState records.

    A missing record, an expired record and a corrupt record all load as
    None; callers treat that as a first-seen sensor.
    """

    def __init__(
        self,
        redis: Redis,
        key_prefix: str = "state",
        ttl_seconds: int = 3600,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> None:
        """
        Initialize the store.

        Args:
            redis: Async Redis client (decode_responses=False)
            key_prefix: Namespace for this store's keys
            ttl_seconds: Expiry refreshed on every save
            window_size: Velocity window length of stored records
        """
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        self._redis = redis
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.window_size = window_size
        self._record_size = app_state_size(window_size)

    def app_key(self, sensor_id: str) -> str:
        return f"{self.key_prefix}:app:{sensor_id}"

    def filter_key(self, sensor_id: str) -> str:
        return f"{self.key_prefix}:filter:{sensor_id}"

    def create_initial(self, lat: float, lon: float, _timestamp_ms: float) -> SensorState:
        """
        Build the zero state for a first-seen sensor.

        The fix's position seeds prev_lat/prev_lon. Its timestamp is not
        recorded: last_timestamp_ms stays 0 until the fix has been processed,
        which is what selects the default first delta.
        """
        return SensorState(
            velocity_buffer=[0.0] * self.window_size,
            velocity_index=0,
            last_timestamp_ms=0.0,
            prev_lat=lat,
            prev_lon=lon,
        )

    async def load(self, sensor_id: str) -> SensorState | None:
        """Load a sensor's state, or None if absent, expired or corrupt."""
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.get(self.app_key(sensor_id))
            pipe.get(self.filter_key(sensor_id))
            app_data, filter_blob = await pipe.execute()

        if app_data is None:
            return None

        state = deserialize_app_state(app_data, self.window_size)
        if state is None:
            logger.warning(
                "Discarding corrupt sensor state",
                sensor_id=sensor_id,
                size=len(app_data),
                expected_size=self._record_size,
            )
            return None

        state.filter_blob = filter_blob
        return state

    async def save(self, sensor_id: str, state: SensorState) -> None:
        """Persist a sensor's state and refresh its TTL."""
        if state.window_size != self.window_size:
            raise ValueError(
                f"State window {state.window_size} does not match store window {self.window_size}"
            )

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self.app_key(sensor_id), serialize_app_state(state), ex=self.ttl_seconds)
            if state.filter_blob:
                pipe.set(self.filter_key(sensor_id), state.filter_blob, ex=self.ttl_seconds)
            else:
                pipe.delete(self.filter_key(sensor_id))
            await pipe.execute()

    async def delete(self, sensor_id: str) -> None:
        """Remove a sensor's state immediately."""
        await self._redis.delete(self.app_key(sensor_id), self.filter_key(sensor_id))

    async def exists(self, sensor_id: str) -> bool:
        return bool(await self._redis.exists(self.app_key(sensor_id)))
