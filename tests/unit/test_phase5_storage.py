"""
Phase 5 Tests: Sensor State Storage

Tests for:
- SensorState ring buffer and binary layout
- Redis-backed state store (TTL, corruption, atomic save)
- Per-sensor lease
"""

import pytest

from src.exceptions import SensorLeaseUnavailableError
from src.storage import (
    SensorLease,
    SensorState,
    SensorStateStore,
    app_state_size,
    deserialize_app_state,
    serialize_app_state,
)


class TestSensorState:
    """Test the state record."""

    def test_record_is_68_bytes(self):
        """Test the fixed layout size for a window of 5."""
        assert app_state_size(5) == 68
        assert len(serialize_app_state(SensorState())) == 68

    def test_initial_state_round_trip(self):
        """Test the all-zero state survives serialization."""
        state = SensorState()
        assert deserialize_app_state(serialize_app_state(state)) == state

    def test_full_buffer_round_trip(self):
        """Test a wrapped buffer with a mid index survives serialization."""
        state = SensorState(
            velocity_buffer=[1.5, 2.25, 0.0, 7.125, 3.0],
            velocity_index=3,
            last_timestamp_ms=1_700_000_002_000.0,
            prev_lat=39.9843,
            prev_lon=116.3183,
        )
        assert deserialize_app_state(serialize_app_state(state)) == state

    @pytest.mark.parametrize("size", [0, 67, 69, 136])
    def test_wrong_length_is_not_found(self, size):
        """Test partial or oversized buffers are never decoded."""
        assert deserialize_app_state(b"\x00" * size) is None

    def test_out_of_range_index_is_not_found(self):
        """Test a corrupt index is rejected."""
        data = bytearray(serialize_app_state(SensorState()))
        data[40:44] = (9).to_bytes(4, "little")
        assert deserialize_app_state(bytes(data)) is None

    def test_index_must_address_buffer(self):
        """Test the index must address the buffer."""
        with pytest.raises(ValueError):
            SensorState(velocity_index=5)

    def test_push_and_window_order(self):
        """Test the ring buffer and oldest-first window."""
        state = SensorState()
        for v in (1.0, 2.0, 3.0, 4.0, 5.0, 6.0):
            state.push_velocity(v)
        assert state.velocity_index == 1
        assert state.velocity_buffer == [6.0, 2.0, 3.0, 4.0, 5.0]
        assert state.velocity_window() == [2.0, 3.0, 4.0, 5.0, 6.0]


class TestSensorStateStore:
    """Test the Redis-backed store."""

    def test_create_initial(self, fake_redis):
        """Test first-seen state does not record the fix timestamp."""
        store = SensorStateStore(fake_redis)
        state = store.create_initial(39.984, 116.318, 1_700_000_000_000)

        assert state.velocity_buffer == [0.0] * 5
        assert state.velocity_index == 0
        assert state.last_timestamp_ms == 0
        assert (state.prev_lat, state.prev_lon) == (39.984, 116.318)
        assert state.filter_blob is None

    @pytest.mark.asyncio
    async def test_missing_is_none(self, fake_redis):
        """Test an unknown sensor loads as None."""
        assert await SensorStateStore(fake_redis).load("nobody") is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, fake_redis):
        """Test both keys are written and read back."""
        store = SensorStateStore(fake_redis)
        state = SensorState(
            velocity_buffer=[1.0, 0.0, 0.0, 0.0, 0.0],
            velocity_index=1,
            last_timestamp_ms=1_700_000_000_000.0,
            prev_lat=1.0,
            prev_lon=2.0,
            filter_blob=b"DSPX-opaque",
        )
        await store.save("S1", state)

        assert await fake_redis.get("state:app:S1") is not None
        assert await fake_redis.get("state:filter:S1") == b"DSPX-opaque"
        assert await store.load("S1") == state

    @pytest.mark.asyncio
    async def test_save_refreshes_ttl(self, fake_redis):
        """Test the sliding TTL on both keys."""
        store = SensorStateStore(fake_redis, ttl_seconds=3600)
        await store.save("S1", SensorState(filter_blob=b"x"))

        fake_redis.advance(3_000_000)
        await store.save("S1", SensorState(filter_blob=b"y"))

        assert await fake_redis.ttl_ms("state:app:S1") == 3_600_000
        assert await fake_redis.ttl_ms("state:filter:S1") == 3_600_000

    @pytest.mark.asyncio
    async def test_expired_is_none(self, fake_redis):
        """Test a record idle past its TTL loads as None."""
        store = SensorStateStore(fake_redis, ttl_seconds=3600)
        await store.save("S1", SensorState())

        fake_redis.advance(3_600_001)

        assert await store.load("S1") is None

    @pytest.mark.asyncio
    async def test_corrupt_is_none(self, fake_redis):
        """Test a wrong-length record loads as None."""
        await fake_redis.set("state:app:S1", b"\x00" * 10)
        assert await SensorStateStore(fake_redis).load("S1") is None

    @pytest.mark.asyncio
    async def test_save_without_blob_clears_filter_key(self, fake_redis):
        """Test a state with no blob removes a stale one."""
        store = SensorStateStore(fake_redis)
        await store.save("S1", SensorState(filter_blob=b"old"))
        await store.save("S1", SensorState())

        assert await fake_redis.get("state:filter:S1") is None

    @pytest.mark.asyncio
    async def test_delete(self, fake_redis):
        """Test explicit delete behaves like expiry."""
        store = SensorStateStore(fake_redis)
        await store.save("S1", SensorState(filter_blob=b"x"))
        await store.delete("S1")

        assert await store.load("S1") is None
        assert not await store.exists("S1")

    @pytest.mark.asyncio
    async def test_prefix_scoping(self, fake_redis):
        """Test stores with different prefixes do not collide."""
        a = SensorStateStore(fake_redis, key_prefix="state:position")
        b = SensorStateStore(fake_redis, key_prefix="state:velocity")
        await a.save("S1", SensorState(prev_lat=1.0))

        assert await b.load("S1") is None
        assert (await a.load("S1")).prev_lat == 1.0


class TestSensorLease:
    """Test the per-sensor lease."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, fake_redis):
        """Test a free lease is taken and released."""
        lease = SensorLease(fake_redis, scope="state", owner="w1")
        token = await lease.acquire("S1")

        assert await fake_redis.get("lease:state:S1") == token.encode()
        assert await lease.release("S1", token)
        assert await fake_redis.get("lease:state:S1") is None

    @pytest.mark.asyncio
    async def test_held_lease_times_out(self, fake_redis):
        """Test a held lease raises after the wait."""
        holder = SensorLease(fake_redis, scope="state", owner="w1")
        waiter = SensorLease(fake_redis, scope="state", owner="w2", wait_ms=20, retry_ms=5)
        await holder.acquire("S1")

        with pytest.raises(SensorLeaseUnavailableError):
            await waiter.acquire("S1")

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, fake_redis):
        """Test a crashed holder blocks only until the lease TTL."""
        holder = SensorLease(fake_redis, scope="state", owner="w1", ttl_ms=5000)
        stale = await holder.acquire("S1")
        fake_redis.advance(5001)

        waiter = SensorLease(fake_redis, scope="state", owner="w2", wait_ms=0)
        token = await waiter.acquire("S1")

        # The old holder cannot free the new holder's lease
        assert not await holder.release("S1", stale)
        assert await fake_redis.get("lease:state:S1") == token.encode()

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, fake_redis):
        """Test the context manager releases after an exception."""
        lease = SensorLease(fake_redis, scope="state", owner="w1")

        with pytest.raises(RuntimeError):
            async with lease.hold("S1"):
                raise RuntimeError("boom")

        assert await fake_redis.get("lease:state:S1") is None
