"""
Caching utilities for the site chatbot.

- Redis client management (pooled, singleton, graceful degradation)
- Retrieval result cache keyed by normalized question and top_k
"""

from libs.caching.redis_client import close_redis_client, get_redis_client, reset_redis_client
from libs.caching.retrieval_cache import CacheStats, RetrievalCache, make_cache_key

__all__ = [
    "CacheStats",
    "RetrievalCache",
    "close_redis_client",
    "get_redis_client",
    "make_cache_key",
    "reset_redis_client",
]
