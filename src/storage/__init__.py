"""
Storage module for per-sensor processing state.

Provides the state record and its binary layout, the Redis-backed store,
and the per-sensor lease used to serialize state updates across workers.
"""

from src.storage.lease import RELEASE_SCRIPT, SensorLease
from src.storage.redis_client import create_redis
from src.storage.state import (
    DEFAULT_WINDOW_SIZE,
    SensorState,
    app_state_size,
    deserialize_app_state,
    serialize_app_state,
)
from src.storage.state_store import SensorStateStore

__all__ = [
    # Client
    "create_redis",
    # State
    "DEFAULT_WINDOW_SIZE",
    "SensorState",
    "app_state_size",
    "deserialize_app_state",
    "serialize_app_state",
    # Store
    "SensorStateStore",
    # Lease
    "RELEASE_SCRIPT",
    "SensorLease",
]
