"""
Per-sensor lease.

Serializes the load-mutate-save cycle for one sensor across workers that
share a consumer group. The lease is a Redis key set with NX and a PX expiry;
the value is a random token so release only deletes a lease its holder
still owns.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

from redis.asyncio import Redis

from src.exceptions import SensorLeaseUnavailableError
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Delete KEYS[1] only if it still holds ARGV[1]
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class SensorLease:
    """Redis lease keyed by sensor id."""

    def __init__(
        self,
        redis: Redis,
        scope: str,
        owner: str,
        ttl_ms: int = 5000,
        wait_ms: int = 2000,
        retry_ms: int = 25,
    ) -> None:
        """
        Initialize the lease helper.

        Args:
            redis: Async Redis client
            scope: Key namespace (one per pipeline stage)
            owner: Consumer name recorded in the token
            ttl_ms: Lease expiry; bounds how long a dead holder blocks a sensor
            wait_ms: How long acquire() keeps retrying
            retry_ms: Delay between attempts
        """
        self._redis = redis
        self.scope = scope
        self.owner = owner
        self.ttl_ms = ttl_ms
        self.wait_ms = wait_ms
        self.retry_ms = retry_ms

    def key(self, sensor_id: str) -> str:
        return f"lease:{self.scope}:{sensor_id}"

    async def acquire(self, sensor_id: str) -> str:
        """
        Acquire the lease, retrying until wait_ms elapses.

        Returns:
            The token to pass to release()

        Raises:
            SensorLeaseUnavailableError: Another holder kept the lease
        """
        token = f"{self.owner}:{uuid4().hex}"
        key = self.key(sensor_id)
        deadline = time.monotonic() + self.wait_ms / 1000.0

        while True:
            if await self._redis.set(key, token, nx=True, px=self.ttl_ms):
                return token
            if time.monotonic() >= deadline:
                raise SensorLeaseUnavailableError(sensor_id, self.wait_ms)
            await asyncio.sleep(self.retry_ms / 1000.0)

    async def release(self, sensor_id: str, token: str) -> bool:
        """Release the lease if this token still holds it."""
        released = await self._redis.eval(RELEASE_SCRIPT, 1, self.key(sensor_id), token)
        if not released:
            logger.warning("Sensor lease expired before release", sensor_id=sensor_id)
        return bool(released)

    @asynccontextmanager
    async def hold(self, sensor_id: str) -> AsyncIterator[str]:
        """Hold the lease for the duration of the block."""
        token = await self.acquire(sensor_id)
        try:
            yield token
        finally:
            await self.release(sensor_id, token)
