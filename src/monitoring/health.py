"""
Health checks for the stream engine's Redis dependencies.

Responsibilities:
- Check broker connectivity (PING)
- Report stream length and consumer-group status per stage
- Summarize overall health for the worker's --check mode
"""

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.utils.logging import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a single health check."""

    component_name: str
    status: HealthStatus
    message: str
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "component_name": self.component_name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
            "error": self.error,
        }


def _text(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


async def check_redis(redis: Redis) -> HealthCheckResult:
    """Ping the broker."""
    started = time.perf_counter()
    try:
        await redis.ping()
    except RedisError as e:
        return HealthCheckResult(
            component_name="redis",
            status=HealthStatus.UNHEALTHY,
            message="Redis unreachable",
            error=str(e),
        )
    return HealthCheckResult(
        component_name="redis",
        status=HealthStatus.HEALTHY,
        message="OK",
        latency_ms=(time.perf_counter() - started) * 1000,
    )


async def check_stream(redis: Redis, stream: str, group: str) -> HealthCheckResult:
    """
    Report a stream's length and its consumer group.

    A missing group is DEGRADED: workers create it on startup.
    """
    name = f"{stream}/{group}"
    try:
        length = await redis.xlen(stream)
        groups = await redis.xinfo_groups(stream) if await redis.exists(stream) else []
    except RedisError as e:
        return HealthCheckResult(
            component_name=name,
            status=HealthStatus.UNHEALTHY,
            message="Stream check failed",
            error=str(e),
        )

    details: dict[str, Any] = {"stream": stream, "group": group, "length": int(length)}
    for info in groups:
        info = {_text(k): _text(v) for k, v in info.items()}
        if info.get("name") == group:
            details.update(
                consumers=int(info.get("consumers", 0)),
                pending=int(info.get("pending", 0)),
                last_delivered_id=info.get("last-delivered-id"),
            )
            return HealthCheckResult(
                component_name=name,
                status=HealthStatus.HEALTHY,
                message="OK",
                details=details,
            )

    return HealthCheckResult(
        component_name=name,
        status=HealthStatus.DEGRADED,
        message="Consumer group not created yet",
        details=details,
    )


async def run_health_checks(
    redis: Redis,
    stages: Sequence[tuple[str, str]],
) -> dict[str, Any]:
    """
    Run the broker check and one stream check per (stream, group).

    Returns:
        Report with overall status and per-component results
    """
    results = [await check_redis(redis)]
    if results[0].is_healthy:
        for stream, group in stages:
            results.append(await check_stream(redis, stream, group))

    if any(r.status == HealthStatus.UNHEALTHY for r in results):
        overall = HealthStatus.UNHEALTHY
    elif any(r.status == HealthStatus.DEGRADED for r in results):
        overall = HealthStatus.DEGRADED
    else:
        overall = HealthStatus.HEALTHY

    logger.info("Health check completed", status=overall.value, components=len(results))
    return {
        "status": overall.value,
        "checked_at": datetime.now(UTC).isoformat(),
        "components": [r.to_dict() for r in results],
    }
