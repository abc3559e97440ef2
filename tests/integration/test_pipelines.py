"""
Integration tests for the GPS stream pipeline.

Tests cover:
- End-to-end single-stage processing (raw stream -> result channel)
- Multi-stage processing through intermediate streams
- Single/multi topology equivalence
- Crash recovery through pending-entry reclaim
- Consumer-group delivery semantics
"""

import asyncio
from typing import Any

import pytest

from src.streaming import PipelineTopology, StreamConsumerWorker, Topology
from tests.conftest import raw_fields
from tests.fakes import FakeRedis

pytestmark = pytest.mark.integration


async def drain(*workers: StreamConsumerWorker) -> None:
    """Poll each worker in order until its input is exhausted."""
    for worker in workers:
        while await worker.poll_once():
            pass


def without_latency(results: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{k: v for k, v in r.items() if k != "processingLatencyMs"} for r in results]


async def topology_for(redis: FakeRedis, settings, kind: Topology, metrics) -> PipelineTopology:
    topology = PipelineTopology.from_settings(redis, settings, kind, metrics=metrics)
    await topology.ensure_groups()
    return topology


# =============================================================================
# Single-Stage Pipeline
# =============================================================================


class TestSingleStagePipeline:
    """Integration tests for the monolithic worker."""

    @pytest.mark.asyncio
    async def test_three_fix_scenario(self, fake_redis, app_settings, metrics, s1_fixes):
        """Test three fixes one second apart produce three ordered results."""
        topology = await topology_for(fake_redis, app_settings, Topology.SINGLE, metrics)
        message_ids = [
            (await fake_redis.xadd("gps:raw", raw_fields("S1", *fix))).decode() for fix in s1_fixes
        ]

        await drain(*topology.workers)

        results = fake_redis.published_results("gps:processed")
        assert [r["sourceMessageId"] for r in results] == message_ids
        assert [r["timestampMs"] for r in results] == [fix[2] for fix in s1_fixes]

        first = results[0]
        assert (first["smoothedLat"], first["smoothedLon"]) == (39.984, 116.318)
        assert first["instantVelocity"] == 0.0
        assert first["isMoving"] is False
        assert all(r["instantVelocity"] >= 0 for r in results)
        assert all(r["processingLatencyMs"] >= 0 for r in results)

        assert fake_redis.pending_ids("gps:raw", "gps-workers") == []
        state = await topology.workers[0].spec.pipeline.store.load("S1")
        assert state.last_timestamp_ms == s1_fixes[-1][2]
        assert state.velocity_index == 3

    @pytest.mark.asyncio
    async def test_malformed_entry_is_skipped(self, fake_redis, app_settings, metrics, s1_fixes):
        """Test a bad entry between good ones is acked without a result."""
        topology = await topology_for(fake_redis, app_settings, Topology.SINGLE, metrics)
        await fake_redis.xadd("gps:raw", raw_fields("S1", *s1_fixes[0]))
        await fake_redis.xadd("gps:raw", {"sensorId": "S1", "lat": "39.98"})
        await fake_redis.xadd("gps:raw", raw_fields("S1", *s1_fixes[1]))

        await drain(*topology.workers)

        assert len(fake_redis.published_results("gps:processed")) == 2
        assert fake_redis.pending_ids("gps:raw", "gps-workers") == []
        assert topology.workers[0].get_stats()["messages_malformed"] == 1

    @pytest.mark.asyncio
    async def test_run_loop_processes_and_stops(self, fake_redis, app_settings, metrics, s1_fixes):
        """Test the long-running loop end to end."""
        topology = await topology_for(fake_redis, app_settings, Topology.SINGLE, metrics)
        task = asyncio.create_task(topology.run())

        for fix in s1_fixes:
            await fake_redis.xadd("gps:raw", raw_fields("S1", *fix))
        for _ in range(200):
            if len(fake_redis.published_results("gps:processed")) == len(s1_fixes):
                break
            await asyncio.sleep(0.01)

        topology.request_stop()
        await asyncio.wait_for(task, timeout=2)

        assert len(fake_redis.published_results("gps:processed")) == len(s1_fixes)
        assert topology.workers[0].state.value == "stopped"


# =============================================================================
# Multi-Stage Pipeline
# =============================================================================


class TestMultiStagePipeline:
    """Integration tests for the three-stage wiring."""

    @pytest.mark.asyncio
    async def test_intermediate_streams(self, fake_redis, app_settings, metrics, s1_fixes):
        """Test each stage writes its record to the next stream."""
        topology = await topology_for(fake_redis, app_settings, Topology.MULTI, metrics)
        for fix in s1_fixes:
            await fake_redis.xadd("gps:raw", raw_fields("S1", *fix))

        await drain(*topology.workers)

        position_entries = await fake_redis.xrange("gps:position-smoothed")
        velocity_entries = await fake_redis.xrange("gps:velocity-calculated")
        assert len(position_entries) == len(velocity_entries) == 3
        assert b"smoothedLat" in position_entries[0][1]
        assert b"velocity" in velocity_entries[0][1]
        assert len(fake_redis.published_results("gps:processed")) == 3

        for stream, group in (
            ("gps:raw", "position-smoothers"),
            ("gps:position-smoothed", "velocity-calculators"),
            ("gps:velocity-calculated", "velocity-smoothers"),
        ):
            assert fake_redis.pending_ids(stream, group) == []

    @pytest.mark.asyncio
    async def test_results_match_single_stage(self, app_settings, metrics, walk_fixes):
        """Test both topologies publish identical results for the same input."""
        published = {}
        for kind in (Topology.SINGLE, Topology.MULTI):
            redis = FakeRedis()
            topology = await topology_for(redis, app_settings, kind, metrics)
            for fix in walk_fixes:
                await redis.xadd(
                    "gps:raw",
                    raw_fields(fix["sensor_id"], fix["lat"], fix["lon"], fix["timestamp_ms"]),
                )
            await drain(*topology.workers)
            published[kind] = without_latency(redis.published_results("gps:processed"))

        assert len(published[Topology.SINGLE]) == len(walk_fixes)
        assert published[Topology.MULTI] == published[Topology.SINGLE]

    @pytest.mark.asyncio
    async def test_stage_state_is_separate(self, fake_redis, app_settings, metrics, s1_fixes):
        """Test each stage keeps its own state keys."""
        topology = await topology_for(fake_redis, app_settings, Topology.MULTI, metrics)
        await fake_redis.xadd("gps:raw", raw_fields("S1", *s1_fixes[0]))

        await drain(*topology.workers)

        for stage in ("position", "velocity", "smoothing"):
            assert await fake_redis.exists(f"state:{stage}:app:S1")
        assert not await fake_redis.exists("state:app:S1")


# =============================================================================
# Recovery and Delivery Semantics
# =============================================================================


class TestRecovery:
    """Integration tests for crash recovery."""

    @pytest.mark.asyncio
    async def test_crashed_consumer_entries_are_reprocessed(
        self, fake_redis, app_settings, metrics, s1_fixes
    ):
        """Test a peer reclaims a dead consumer's entries after the idle threshold."""
        topology = await topology_for(fake_redis, app_settings, Topology.SINGLE, metrics)
        survivor = topology.workers[0]
        for fix in s1_fixes:
            await fake_redis.xadd("gps:raw", raw_fields("S1", *fix))

        # Read but never acknowledged
        await fake_redis.xreadgroup("gps-workers", "crashed", {"gps:raw": ">"}, count=10)

        fake_redis.advance(20_000)
        early = await survivor.recover_pending()
        assert early.reclaimed == 0
        assert len(fake_redis.pending_ids("gps:raw", "gps-workers")) == 3

        fake_redis.advance(10_001)
        report = await survivor.recover_pending()

        assert report.processed == 3
        assert fake_redis.pending_ids("gps:raw", "gps-workers") == []
        results = fake_redis.published_results("gps:processed")
        assert [r["timestampMs"] for r in results] == [fix[2] for fix in s1_fixes]

    @pytest.mark.asyncio
    async def test_acked_entries_are_never_redelivered(
        self, fake_redis, app_settings, metrics, s1_fixes
    ):
        """Test processed entries are neither read again nor reclaimed."""
        topology = await topology_for(fake_redis, app_settings, Topology.SINGLE, metrics)
        worker = topology.workers[0]
        for fix in s1_fixes:
            await fake_redis.xadd("gps:raw", raw_fields("S1", *fix))
        await drain(worker)

        fake_redis.advance(120_000)
        report = await worker.recover_pending()

        assert report.scanned == 0
        assert await worker.poll_once() == 0
        assert len(fake_redis.published_results("gps:processed")) == 3

    @pytest.mark.asyncio
    async def test_group_members_split_entries(self, fake_redis, app_settings, metrics, walk_fixes):
        """Test two consumers in one group each get disjoint entries."""
        first = (await topology_for(fake_redis, app_settings, Topology.SINGLE, metrics)).workers[0]
        second = (await topology_for(fake_redis, app_settings, Topology.SINGLE, metrics)).workers[0]
        second.consumer_name = "second-consumer"
        for fix in walk_fixes:
            await fake_redis.xadd(
                "gps:raw",
                raw_fields(fix["sensor_id"], fix["lat"], fix["lon"], fix["timestamp_ms"]),
            )

        while await first.poll_once() + await second.poll_once():
            pass

        processed = [w.get_stats()["messages_processed"] for w in (first, second)]
        assert sum(processed) == len(walk_fixes)
        assert all(count > 0 for count in processed)
        ids = [r["sourceMessageId"] for r in fake_redis.published_results("gps:processed")]
        assert len(ids) == len(set(ids))
