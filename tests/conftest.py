"""
Shared test fixtures and configuration.
"""

from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from config.settings import (
    AppSettings,
    ConsumerSettings,
    DSPSettings,
    StateSettings,
    StreamSettings,
)
from src.monitoring.metrics import PipelineMetrics
from tests.fakes import FakeRedis

# ============================================================================
# Data Fixtures
# ============================================================================

# Three fixes one second apart, moving north-east
S1_FIXES = [
    (39.9840, 116.3180, 1_700_000_000_000),
    (39.9841, 116.3181, 1_700_000_001_000),
    (39.9843, 116.3183, 1_700_000_002_000),
]


def raw_fields(sensor_id: str, lat: float, lon: float, timestamp_ms: int) -> dict[str, str]:
    """Fields of a raw-stream entry as an ingestion source writes them."""
    return {
        "sensorId": sensor_id,
        "lat": str(lat),
        "lon": str(lon),
        "timestampMs": str(timestamp_ms),
    }


@pytest.fixture
def s1_fixes() -> list[tuple[float, float, int]]:
    return list(S1_FIXES)


@pytest.fixture
def walk_fixes() -> list[dict[str, Any]]:
    """Two sensors interleaved, twelve fixes each, with an out-of-order fix."""
    fixes = []
    for i in range(12):
        for n, sensor_id in enumerate(("walker-a", "walker-b")):
            fixes.append(
                {
                    "sensor_id": sensor_id,
                    "lat": 39.9 + n * 0.01 + i * 0.00005 * (n + 1),
                    "lon": 116.3 + i * 0.00007,
                    "timestamp_ms": 1_700_000_000_000 + i * 1000 + n * 10,
                }
            )
    # Late fix for walker-a, older than its previous one
    fixes.insert(
        9,
        {
            "sensor_id": "walker-a",
            "lat": 39.90001,
            "lon": 116.30001,
            "timestamp_ms": 1_700_000_001_500,
        },
    )
    return fixes


# ============================================================================
# Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def fake_redis() -> FakeRedis:
    """In-memory Redis double."""
    return FakeRedis()


@pytest.fixture
def metrics() -> PipelineMetrics:
    """Metrics on a private registry."""
    return PipelineMetrics(registry=CollectorRegistry())


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def consumer_settings() -> ConsumerSettings:
    """Fast loop settings for tests."""
    return ConsumerSettings(
        batch_size=10,
        block_ms=5,
        claim_idle_ms=30000,
        recovery_interval_seconds=300.0,
        recovery_batch_size=100,
        error_backoff_seconds=0.01,
        max_backoff_seconds=0.05,
        max_delivery_attempts=3,
    )


@pytest.fixture
def app_settings(consumer_settings: ConsumerSettings) -> AppSettings:
    """Application settings independent of the environment."""
    return AppSettings(
        env="development",
        topology="single",
        metrics_port=0,
        streams=StreamSettings(consumer_name="test-consumer"),
        consumer=consumer_settings,
        state=StateSettings(lease_wait_ms=200, lease_retry_ms=5),
        dsp=DSPSettings(),
    )
