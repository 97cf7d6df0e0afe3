"""
TargetGraph Caching

In-memory TTL + LRU cache shared by the source clients and the query
planner. Entries are scoped to the process; graphs themselves are never
cached across runs.
"""

import json
import hashlib
import time
import asyncio
from typing import Dict, Any, Optional, Callable, Awaitable
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    """Cache configuration settings."""
    enabled: bool = True
    max_entries: int = 500
    ttl_seconds: float = 300.0

    @classmethod
    def from_config(cls, config) -> 'CacheConfig':
        return cls(
            enabled=bool(config.get('cache_enabled', True)),
            max_entries=int(config.get('cache_max_entries', 500)),
            ttl_seconds=float(config.get('cache_ttl_ms', 300000)) / 1000.0,
        )


class CacheKey:
    """Generate consistent cache keys for different data types."""

    @staticmethod
    def source_call(source: str, operation: str, params: Dict[str, Any]) -> str:
        """Generate cache key for a source client call."""
        param_str = json.dumps(params, sort_keys=True, default=str)
        content = f"src:{source}:{operation}:{param_str}"
        return f"targetgraph:{hashlib.md5(content.encode()).hexdigest()}"

    @staticmethod
    def query_plan(normalized_query: str) -> str:
        """Generate cache key for a resolved query plan."""
        content = f"plan:{normalized_query}"
        return f"targetgraph:{hashlib.md5(content.encode()).hexdigest()}"

    @staticmethod
    def literature(disease: str, symbol: str, drug_hint: Optional[str]) -> str:
        content = f"lit:{disease.lower()}::{symbol.upper()}::{(drug_hint or '').lower()}"
        return f"targetgraph:{hashlib.md5(content.encode()).hexdigest()}"


class MemoryCache:
    """In-memory cache with TTL expiry and LRU eviction."""

    def __init__(self, max_size: int = 500, default_ttl: float = 300.0):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.cache: Dict[str, Dict[str, Any]] = {}
        self.access_times: Dict[str, float] = {}
        self.lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache, or None when absent or expired."""
        async with self.lock:
            entry = self.cache.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = time.monotonic()
            if now > entry['expires_at']:
                self._drop(key)
                self._misses += 1
                return None

            self.access_times[key] = now
            self._hits += 1
            return entry['value']

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache."""
        async with self.lock:
            now = time.monotonic()
            ttl = self.default_ttl if ttl is None else ttl

            if len(self.cache) >= self.max_size and key not in self.cache:
                self._evict_lru()

            self.cache[key] = {
                'value': value,
                'expires_at': now + ttl,
                'created_at': now
            }
            self.access_times[key] = now

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]],
                          ttl: Optional[float] = None,
                          cache_if: Optional[Callable[[Any], bool]] = None) -> Any:
        """
        Return the cached value or await ``loader`` and store its result.

        ``cache_if`` decides whether a loaded value is worth storing; empty
        fallback answers are usually not.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await loader()
        if cache_if is None or cache_if(value):
            await self.set(key, value, ttl)
        return value

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        async with self.lock:
            if key in self.cache:
                self._drop(key)
                return True
            return False

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self.lock:
            self.cache.clear()
            self.access_times.clear()

    def _drop(self, key: str) -> None:
        self.cache.pop(key, None)
        self.access_times.pop(key, None)

    def _evict_lru(self) -> None:
        """Evict least recently used entry."""
        if not self.access_times:
            return

        lru_key = min(self.access_times, key=self.access_times.__getitem__)
        self._drop(lru_key)

    async def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        async with self.lock:
            now = time.monotonic()
            expired_count = sum(
                1 for entry in self.cache.values()
                if now > entry['expires_at']
            )
            lookups = self._hits + self._misses

            return {
                'size': len(self.cache),
                'max_size': self.max_size,
                'expired_entries': expired_count,
                'hit_rate': (self._hits / lookups) if lookups else 0.0
            }


class NullCache(MemoryCache):
    """Cache that never stores anything (cache_enabled=false)."""

    def __init__(self):
        super().__init__(max_size=1, default_ttl=0.0)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        return None


def build_cache(config) -> MemoryCache:
    """Create the cache described by a Config."""
    cache_config = CacheConfig.from_config(config)
    if not cache_config.enabled:
        return NullCache()
    return MemoryCache(max_size=cache_config.max_entries, default_ttl=cache_config.ttl_seconds)
