"""
Tests for the Redis client manager.

Tests verify:
- Client is created from the configured URL and pinged
- Singleton: the same client is handed to every caller
- Missing URL or unreachable server degrades to None
- The failure flag short-circuits later attempts until reset
"""

from unittest.mock import AsyncMock, patch

import fakeredis
import pytest
import redis.asyncio as redis

from libs.caching import redis_client as redis_module
from libs.caching.redis_client import close_redis_client, get_redis_client, reset_redis_client


@pytest.fixture(autouse=True)
async def reset_redis(clean_redis_singleton):
    """Reset Redis client before each test."""
    yield


@pytest.fixture
def fake_from_url():
    """Route ``redis.from_url`` to an in-process fakeredis server."""
    server = fakeredis.FakeServer()

    def _from_url(url, **kwargs):
        return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)

    with patch.object(redis_module.redis, "from_url", side_effect=_from_url) as mocked:
        yield mocked


@pytest.mark.asyncio
async def test_redis_connection(fake_from_url):
    """Client is created from the explicit URL and answers ping."""
    client = await get_redis_client("redis://localhost:6379/0")

    assert client is not None
    assert await client.ping() is True
    assert fake_from_url.call_args.args[0] == "redis://localhost:6379/0"
    assert fake_from_url.call_args.kwargs["decode_responses"] is True


@pytest.mark.asyncio
async def test_redis_url_from_settings(fake_from_url, monkeypatch):
    """Falls back to SITECHAT_REDIS_URL when no URL is passed."""
    from libs.common.settings import get_settings

    monkeypatch.setenv("SITECHAT_REDIS_URL", "redis://cache:6379/2")
    get_settings.cache_clear()
    try:
        client = await get_redis_client()
    finally:
        get_settings.cache_clear()

    assert client is not None
    assert fake_from_url.call_args.args[0] == "redis://cache:6379/2"


@pytest.mark.asyncio
async def test_redis_connection_pooling(fake_from_url):
    """Second call reuses the singleton instead of reconnecting."""
    redis1 = await get_redis_client("redis://localhost:6379/0")
    redis2 = await get_redis_client("redis://localhost:6379/0")

    assert redis1 is redis2
    assert fake_from_url.call_count == 1


@pytest.mark.asyncio
async def test_redis_not_configured():
    """No URL anywhere: caching disabled, no exception."""
    from libs.common.settings import get_settings

    get_settings.cache_clear()
    try:
        assert await get_redis_client() is None
    finally:
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_redis_error_handling():
    """Unreachable server returns None and trips the failure flag."""
    broken = AsyncMock()
    broken.ping.side_effect = redis.ConnectionError("connection refused")

    with patch.object(redis_module.redis, "from_url", return_value=broken) as mocked:
        assert await get_redis_client("redis://localhost:6390/0") is None
        # flag set: no second connection attempt
        assert await get_redis_client("redis://localhost:6390/0") is None

    assert mocked.call_count == 1


@pytest.mark.asyncio
async def test_reset_allows_reconnect(fake_from_url):
    """After reset, a previously failed client may connect again."""
    redis_module._connection_failed = True
    assert await get_redis_client("redis://localhost:6379/0") is None

    await reset_redis_client()

    assert await get_redis_client("redis://localhost:6379/0") is not None


@pytest.mark.asyncio
async def test_close_redis_client(fake_from_url):
    """Closing drops the singleton so the next call reconnects."""
    await get_redis_client("redis://localhost:6379/0")
    await close_redis_client()

    assert redis_module._redis_client is None
    await get_redis_client("redis://localhost:6379/0")
    assert fake_from_url.call_count == 2
