"""
Redis connection helpers.

Clients are created by the process entry points (worker start-up, web app
lifespan) and passed to the services that need them.
"""
import logging
from typing import Optional

import redis
import redis.asyncio as aioredis
from redis.exceptions import ConnectionError, TimeoutError, RedisError

logger = logging.getLogger(__name__)


def create_redis_client(url: str) -> redis.Redis:
    """Synchronous client used by workers to publish events."""
    return redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        retry_on_timeout=True,
        health_check_interval=30,
    )


def create_async_redis_client(url: str) -> aioredis.Redis:
    """Asyncio client used by the web process to relay events."""
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        health_check_interval=30,
    )


def ping_redis(client: Optional[redis.Redis]) -> bool:
    """Health probe. Returns False instead of raising."""
    if client is None:
        return False
    try:
        return bool(client.ping())
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}")
        return False
