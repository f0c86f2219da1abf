"""
Caching utilities for the insight engine.

This module provides:
- Redis client management
- Session cache contract with in-memory and Redis stores
- Similarity cache for vector search results
"""

from libs.caching.redis_client import get_redis_client
from libs.caching.session_cache import InMemorySessionCache, SessionCachePort
from libs.caching.redis_session_cache import RedisSessionCache
from libs.caching.semantic_cache import VectorResultCache

__all__ = [
    "get_redis_client",
    "InMemorySessionCache",
    "RedisSessionCache",
    "SessionCachePort",
    "VectorResultCache",
]
