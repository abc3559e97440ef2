"""
Configuration management using pydantic-settings.

Hierarchical configuration with environment variable support.
"""

import os
import socket
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    url: str = Field(default="redis://localhost:6379/0")
    max_connections: int = Field(default=10, ge=1)
    socket_timeout: float | None = Field(
        default=None,
        description="Socket read timeout in seconds; must exceed the stream block timeout",
    )
    health_check_interval: int = Field(default=30, ge=0)


class StreamSettings(BaseSettings):
    """Stream, channel and consumer-group names."""

    model_config = SettingsConfigDict(env_prefix="STREAM_")

    raw_stream: str = Field(default="gps:raw")
    position_stream: str = Field(default="gps:position-smoothed")
    velocity_stream: str = Field(default="gps:velocity-calculated")
    result_channel: str = Field(default="gps:processed")
    dead_letter_stream: str = Field(default="gps:dead-letter")

    # Consumer groups
    monolithic_group: str = Field(default="gps-workers")
    position_group: str = Field(default="position-smoothers")
    velocity_group: str = Field(default="velocity-calculators")
    smoothing_group: str = Field(default="velocity-smoothers")

    consumer_name: str = Field(default_factory=_default_consumer_name)
    max_length: int | None = Field(
        default=None, ge=1, description="Approximate MAXLEN for XADD on intermediate streams"
    )


class ConsumerSettings(BaseSettings):
    """Stream consumer loop settings."""

    model_config = SettingsConfigDict(env_prefix="CONSUMER_")

    batch_size: int = Field(default=10, ge=1, le=10000, description="Messages per read")
    block_ms: int = Field(default=5000, ge=1, description="Blocking read timeout (ms)")
    claim_idle_ms: int = Field(
        default=30000, ge=1, description="Idle time before a pending entry may be reclaimed"
    )
    recovery_interval_seconds: float = Field(default=300.0, gt=0)
    recovery_batch_size: int = Field(default=100, ge=1)
    error_backoff_seconds: float = Field(default=1.0, gt=0)
    max_backoff_seconds: float = Field(default=30.0, gt=0)
    max_delivery_attempts: int = Field(
        default=10, ge=1, description="Deliveries before a pending entry is dead-lettered"
    )

    @model_validator(mode="after")
    def validate_backoff(self) -> "ConsumerSettings":
        if self.max_backoff_seconds < self.error_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= error_backoff_seconds")
        return self


class StateSettings(BaseSettings):
    """Per-sensor state store settings."""

    model_config = SettingsConfigDict(env_prefix="STATE_")

    key_prefix: str = Field(default="state", min_length=1)
    ttl_seconds: int = Field(default=3600, ge=1, description="Sliding TTL refreshed on save")

    # Per-sensor lease (sensor affinity)
    lease_enabled: bool = Field(default=True)
    lease_ttl_ms: int = Field(default=5000, ge=1)
    lease_wait_ms: int = Field(default=2000, ge=0)
    lease_retry_ms: int = Field(default=25, ge=1)


class DSPSettings(BaseSettings):
    """Smoothing engine tuning."""

    model_config = SettingsConfigDict(env_prefix="DSP_")

    process_noise: float = Field(default=1e-5, ge=0.0)
    measurement_noise: float = Field(default=1e-2, gt=0.0)
    initial_error: float = Field(default=1.0, gt=0.0)
    default_first_delta_seconds: float = Field(
        default=1.0, gt=0.0, description="Elapsed time assumed for a sensor's first fix"
    )
    velocity_window_size: int = Field(default=5, ge=1, le=1024)
    movement_threshold: float = Field(default=0.5, ge=0.0, description="m/s")


class AppSettings(BaseSettings):
    """Application-level settings."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    topology: Literal["single", "multi"] = Field(default="single")
    metrics_port: int = Field(default=0, ge=0, le=65535, description="0 disables the exporter")

    # Nested settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    streams: StreamSettings = Field(default_factory=StreamSettings)
    consumer: ConsumerSettings = Field(default_factory=ConsumerSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    dsp: DSPSettings = Field(default_factory=DSPSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def is_development(self) -> bool:
        return self.env == "development"


@lru_cache
def get_settings() -> AppSettings:
    """Get cached application settings."""
    return AppSettings()
