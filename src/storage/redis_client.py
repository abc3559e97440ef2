"""
Redis client factory.

One client (and connection pool) per worker process, shared by the
consumer loop, the state store, the lease and the emitters.
"""

from redis.asyncio import Redis

from config.settings import RedisSettings, get_settings
from src.utils.logging import get_logger

logger = get_logger(__name__)


def create_redis(settings: RedisSettings | None = None) -> Redis:
    """
    Create an async Redis client.

    Responses are left as bytes: state records are binary and every codec
    decodes text fields explicitly.

    Args:
        settings: Connection settings (defaults to the application's)
    """
    settings = settings or get_settings().redis
    client = Redis.from_url(
        settings.url,
        decode_responses=False,
        max_connections=settings.max_connections,
        socket_timeout=settings.socket_timeout,
        health_check_interval=settings.health_check_interval,
    )
    logger.debug("Redis client created", url=settings.url)
    return client
