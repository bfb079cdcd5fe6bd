"""Response caching."""

from .manager import CacheEntry, CacheManager, CacheStats

__all__ = ["CacheEntry", "CacheManager", "CacheStats"]
