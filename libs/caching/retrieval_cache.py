"""
Read-through cache for hybrid retrieval results.

Entries map (normalized question, top_k) to the final ordered candidate
list as JSON, written with SETEX. Entries are immutable once written and
expire on their own; ingestion does not invalidate them.

Redis problems never fail a retrieval: a read error counts as a miss and a
write error is logged and dropped.
"""

import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog

from sitechat.models import RetrievalCandidate

logger = structlog.get_logger(__name__)

KEY_PREFIX = "cache:retrieval"


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    writes: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate overall cache hit rate."""
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


def normalize_question(question: str) -> str:
    return question.strip().lower()


def make_cache_key(question: str, top_k: int) -> str:
    """``cache:retrieval:<md5 of trimmed lower-cased question>:k<top_k>``."""
    question_hash = hashlib.md5(normalize_question(question).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}:{question_hash}:k{top_k}"


class RetrievalCache:
    """
    Usage:
        cache = RetrievalCache(await get_redis_client(), ttl_seconds=3600)
        cached = await cache.get(question, top_k)
        if cached is None:
            results = await retrieve(...)
            await cache.set(question, top_k, results)

    With ``redis_client=None`` every lookup is a miss and writes are no-ops.
    """

    def __init__(self, redis_client: Optional[redis.Redis], ttl_seconds: int = 3600):
        self._redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self._stats = CacheStats()
        if redis_client is None:
            logger.warning("Retrieval cache running without Redis, caching disabled")

    @property
    def enabled(self) -> bool:
        return self._redis_client is not None

    async def get(self, question: str, top_k: int) -> Optional[List[RetrievalCandidate]]:
        self._stats.total_requests += 1
        if self._redis_client is None:
            self._stats.misses += 1
            return None

        key = make_cache_key(question, top_k)
        try:
            cached = await self._redis_client.get(key)
        except redis.RedisError as e:
            self._stats.errors += 1
            self._stats.misses += 1
            logger.error("Error reading retrieval cache", error=str(e), cache_key=key)
            return None

        if cached is None:
            self._stats.misses += 1
            logger.info("Cache miss", query_preview=question[:50])
            return None

        try:
            candidates = [RetrievalCandidate.model_validate(item) for item in json.loads(cached)]
        except ValueError as e:
            self._stats.errors += 1
            self._stats.misses += 1
            logger.error("Corrupt retrieval cache entry", error=str(e), cache_key=key)
            return None

        self._stats.hits += 1
        logger.info("Cache hit", query_preview=question[:50], results=len(candidates))
        return candidates

    async def set(self, question: str, top_k: int, candidates: List[RetrievalCandidate]) -> None:
        if self._redis_client is None:
            return

        key = make_cache_key(question, top_k)
        payload = json.dumps([c.model_dump(mode="json") for c in candidates])
        try:
            await self._redis_client.setex(key, self.ttl_seconds, payload)
        except redis.RedisError as e:
            self._stats.errors += 1
            logger.error("Failed to cache retrieval results", error=str(e), cache_key=key)
            return

        self._stats.writes += 1
        logger.debug("Retrieval results cached", cache_key=key, ttl_seconds=self.ttl_seconds, results=len(candidates))

    async def clear(self) -> int:
        """Delete every retrieval entry; returns the number of keys removed."""
        if self._redis_client is None:
            return 0

        deleted = 0
        try:
            async for key in self._redis_client.scan_iter(match=f"{KEY_PREFIX}:*", count=500):
                deleted += await self._redis_client.delete(key)
        except redis.RedisError as e:
            logger.error("Failed to clear retrieval cache", error=str(e))
            raise

        logger.info("Retrieval cache cleared", keys_deleted=deleted)
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {**asdict(self._stats), "hit_rate": self._stats.hit_rate, "enabled": self.enabled}
        if self._redis_client is not None:
            try:
                keys = 0
                async for _ in self._redis_client.scan_iter(match=f"{KEY_PREFIX}:*", count=500):
                    keys += 1
                stats["keys"] = keys
            except redis.RedisError as e:
                logger.warning("Could not count retrieval cache keys", error=str(e))
        return stats
