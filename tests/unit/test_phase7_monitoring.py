"""
Unit tests for Phase 7: Monitoring.

Tests cover:
- Prometheus metrics recording and export
- Redis and stream health checks
"""

from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry
from redis.exceptions import ConnectionError as RedisConnectionError

from src.monitoring import (
    WORKER_STATES,
    HealthStatus,
    PipelineMetrics,
    check_redis,
    check_stream,
    get_metrics,
    init_metrics,
    run_health_checks,
)


# =============================================================================
# Prometheus Metrics Tests
# =============================================================================


class TestPipelineMetrics:
    """Tests for PipelineMetrics."""

    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    @pytest.fixture
    def metrics(self, registry):
        return PipelineMetrics(registry=registry, prefix="test")

    def test_record_processed(self, metrics, registry):
        """Test processed counter and latency histogram."""
        metrics.record_processed("all", 0.002)
        metrics.record_processed("all", 0.004)

        assert registry.get_sample_value("test_messages_processed_total", {"stage": "all"}) == 2
        assert registry.get_sample_value("test_message_latency_seconds_count", {"stage": "all"}) == 2

    def test_record_malformed_without_field(self, metrics, registry):
        """Test a missing field label falls back to 'unknown'."""
        metrics.record_malformed("position", None)
        assert registry.get_sample_value(
            "test_messages_malformed_total", {"stage": "position", "field": "unknown"}
        ) == 1

    def test_record_acked_counts(self, metrics, registry):
        """Test ack counts accumulate."""
        metrics.record_acked("velocity", 3)
        metrics.record_acked("velocity")
        assert registry.get_sample_value("test_messages_acked_total", {"stage": "velocity"}) == 4

    def test_record_recovery(self, metrics, registry):
        """Test recovery counters skip zero increments."""
        metrics.record_recovery("all", reclaimed=4, dead_lettered=1)
        metrics.record_recovery("all", reclaimed=0, dead_lettered=0)

        assert registry.get_sample_value("test_recovery_runs_total", {"stage": "all"}) == 2
        assert registry.get_sample_value("test_messages_reclaimed_total", {"stage": "all"}) == 4
        assert registry.get_sample_value("test_messages_dead_lettered_total", {"stage": "all"}) == 1

    def test_worker_state_is_one_hot(self, metrics, registry):
        """Test exactly one lifecycle state is set per stage."""
        metrics.set_worker_state("smoothing", "running")
        metrics.set_worker_state("smoothing", "stopping")

        values = {
            state: registry.get_sample_value(
                "test_worker_state", {"stage": "smoothing", "state": state}
            )
            for state in WORKER_STATES
        }
        assert values.pop("stopping") == 1
        assert set(values.values()) == {0}

    def test_generate_metrics(self, metrics):
        """Test exposition output."""
        metrics.record_lease_conflict("all")
        output = metrics.generate_metrics()

        assert b"test_lease_conflicts_total" in output
        assert "text/plain" in metrics.get_content_type()

    def test_global_metrics(self):
        """Test init_metrics replaces the global instance."""
        fresh = init_metrics(registry=CollectorRegistry())
        assert get_metrics() is fresh


# =============================================================================
# Health Check Tests
# =============================================================================


class TestHealthChecks:
    """Tests for Redis and stream health checks."""

    @pytest.mark.asyncio
    async def test_redis_healthy(self, fake_redis):
        """Test a reachable broker."""
        result = await check_redis(fake_redis)

        assert result.is_healthy
        assert result.latency_ms is not None

    @pytest.mark.asyncio
    async def test_redis_unreachable(self):
        """Test a failed ping is unhealthy."""
        redis = AsyncMock()
        redis.ping.side_effect = RedisConnectionError("refused")

        result = await check_redis(redis)

        assert result.status == HealthStatus.UNHEALTHY
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_missing_stream_is_degraded(self, fake_redis):
        """Test a stream and group not created yet."""
        result = await check_stream(fake_redis, "gps:raw", "gps-workers")

        assert result.status == HealthStatus.DEGRADED
        assert result.details["length"] == 0

    @pytest.mark.asyncio
    async def test_stream_with_group(self, fake_redis):
        """Test group details are reported."""
        await fake_redis.xgroup_create("gps:raw", "gps-workers", id="0", mkstream=True)
        await fake_redis.xadd("gps:raw", {"sensorId": "S1"})
        await fake_redis.xreadgroup("gps-workers", "w1", {"gps:raw": ">"}, count=1)

        result = await check_stream(fake_redis, "gps:raw", "gps-workers")

        assert result.is_healthy
        assert result.details["length"] == 1
        assert result.details["pending"] == 1
        assert result.details["consumers"] == 1

    @pytest.mark.asyncio
    async def test_run_health_checks_summary(self, fake_redis):
        """Test overall status is the worst component status."""
        await fake_redis.xgroup_create("gps:raw", "gps-workers", id="0", mkstream=True)

        report = await run_health_checks(
            fake_redis,
            [("gps:raw", "gps-workers"), ("gps:position-smoothed", "position-smoothers")],
        )

        assert report["status"] == "degraded"
        assert [c["status"] for c in report["components"]] == ["healthy", "healthy", "degraded"]

    @pytest.mark.asyncio
    async def test_unreachable_broker_skips_stream_checks(self):
        """Test only the broker is reported when it is down."""
        redis = AsyncMock()
        redis.ping.side_effect = RedisConnectionError("refused")

        report = await run_health_checks(redis, [("gps:raw", "gps-workers")])

        assert report["status"] == "unhealthy"
        assert len(report["components"]) == 1
        redis.xlen.assert_not_awaited()
