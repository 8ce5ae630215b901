"""
Redis client manager for the site chatbot cache.

Provides:
- Async Redis client with connection pooling
- Singleton pattern shared by every cache user in the process
- Graceful degradation: callers get ``None`` and run uncached
"""

from typing import Optional

import redis.asyncio as redis
import structlog

from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
_connection_failed = False  # Circuit breaker for repeated failures


def _redact(redis_url: str) -> str:
    return redis_url.split("@")[-1] if "@" in redis_url else redis_url.split("//")[-1]


async def get_redis_client(redis_url: Optional[str] = None) -> Optional[redis.Redis]:
    """
    Get or create the async Redis client.

    Args:
        redis_url: Overrides ``SITECHAT_REDIS_URL`` from settings.

    Returns:
        Redis client instance, or None when Redis is not configured or unreachable.
    """
    global _redis_client, _connection_failed

    # If previous connection attempt failed, don't retry immediately
    if _connection_failed:
        logger.warning("Redis connection previously failed, skipping reconnect attempt")
        return None

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            return _redis_client
        except redis.RedisError as e:
            logger.warning("Existing Redis connection failed, reconnecting", error=str(e))
            _redis_client = None

    redis_url = redis_url or get_settings().redis_url
    if not redis_url:
        logger.warning(
            "Redis URL not configured, caching will be disabled",
            hint="Set SITECHAT_REDIS_URL to enable caching",
        )
        _connection_failed = True
        return None

    try:
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        await client.ping()
    except (redis.RedisError, OSError) as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redact(redis_url),
            hint="Check SITECHAT_REDIS_URL and ensure Redis server is running",
        )
        _connection_failed = True
        return None

    _redis_client = client
    logger.info("Redis client initialized successfully", url=_redact(redis_url), max_connections=20)
    return _redis_client


async def close_redis_client() -> None:
    """Close Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except redis.RedisError as e:
            logger.warning("Error closing Redis client", error=str(e))
        finally:
            _redis_client = None


async def reset_redis_client() -> None:
    """Forget the client and the failure flag (tests, or after Redis comes back)."""
    global _connection_failed

    await close_redis_client()
    _connection_failed = False
    logger.info("Redis client reset")
