"""Storage layer - PostgreSQL and key-value caches."""

from litharvest.storage.cache import CacheBackend, MemoryCache, RedisCache, build_cache
from litharvest.storage.database import Database

__all__ = ["CacheBackend", "Database", "MemoryCache", "RedisCache", "build_cache"]
