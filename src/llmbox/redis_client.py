# src/llmbox/redis_client.py
"""
Redis connection helper for the shared registry, pool and port allocator.

The three Redis-backed stores share one client created here. Unlike a
module-level pool, the client is owned by whoever builds the manager and
closed with it.
"""

import logging
from urllib.parse import urlparse

import redis

from .exceptions import SandboxConnectionError

logger = logging.getLogger(__name__)


def redact_url(url: str) -> str:
    """Hide the password part of a Redis URL for logging."""
    parsed = urlparse(url)
    if parsed.password:
        netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
        return parsed._replace(netloc=netloc).geturl()
    return url


def create_redis_client(url: str, socket_timeout: float = 5.0) -> redis.Redis:
    """
    Create a Redis client and verify the server answers.

    Args:
        url: Redis URL (redis://host:port/db)
        socket_timeout: Connect and read timeout in seconds

    Returns:
        Connected redis.Redis client with decoded responses

    Raises:
        SandboxConnectionError: If the server cannot be reached
    """
    safe_url = redact_url(url)
    try:
        logger.info(f"Connecting to Redis at {safe_url}...")
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        client.ping()
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis at {safe_url}: {e}")
        raise SandboxConnectionError(
            f"Could not connect to Redis: {e}", host=safe_url, connection_type="redis"
        ) from e

    logger.info("Redis connection established")
    return client
